"""
Window generation for batched table scans.

A job never touches a whole table at once. It walks the ordering key in
disjoint, closed windows so that one window's rows are the only rows in
flight and each window can be committed on its own.

Two traversal orders are supported:

- descending: start at the current maximum key and walk down, clamping the
  last window to the range start. Used by column migrations.
- ascending by cursor: ask for "up to N rows with key > last seen key" until
  a page comes back empty. Used by reconciliation, and tolerant of rows
  inserted above the scan point while the job runs.
"""

from dataclasses import dataclass
from typing import Callable, Iterator, List, Sequence, TypeVar

Row = TypeVar("Row")


@dataclass(frozen=True)
class BatchWindow:
    """Closed interval [low, high] over the ordering key."""

    low: int
    high: int

    def __post_init__(self):
        if self.high < self.low:
            raise ValueError(f"Invalid window [{self.low}, {self.high}]")

    @property
    def size(self) -> int:
        return self.high - self.low + 1

    def __contains__(self, key: int) -> bool:
        return self.low <= key <= self.high

    def __str__(self) -> str:
        return f"[{self.low}, {self.high}]"


def _check_size(window_size: int) -> None:
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")


def descending_windows(range_start: int, range_end: int, window_size: int) -> Iterator[BatchWindow]:
    """
    Yield windows from range_end down to range_start.

    The final window's lower bound is clamped to range_start. An empty range
    (range_end < range_start) yields nothing.
    """
    _check_size(window_size)
    current_max = range_end
    while current_max >= range_start:
        low = max(current_max - window_size + 1, range_start)
        yield BatchWindow(low, current_max)
        current_max = low - 1


def window_count(range_start: int, range_end: int, window_size: int) -> int:
    """Number of windows a range splits into."""
    _check_size(window_size)
    if range_end < range_start:
        return 0
    span = range_end - range_start + 1
    return (span + window_size - 1) // window_size


def scan_by_cursor(
    fetch_page: Callable[[int, int], Sequence[Row]],
    batch_size: int,
    after: int = 0,
    key: Callable[[Row], int] = lambda row: row.id,
) -> Iterator[List[Row]]:
    """
    Yield pages of rows in ascending key order.

    Args:
        fetch_page: Callable(after, limit) returning up to `limit` rows with
            key > after, ordered by key
        batch_size: Maximum rows per page
        after: Exclusive starting cursor (0 scans from the beginning)
        key: Extracts the ordering key from a row

    The cursor advances to the last key of each page, so the pages are
    disjoint and a restart from any yielded cursor neither repeats nor
    skips a row.
    """
    _check_size(batch_size)
    cursor = after
    while True:
        rows = list(fetch_page(cursor, batch_size))
        if not rows:
            return
        last = key(rows[-1])
        if last <= cursor:
            raise ValueError(
                f"fetch_page returned non-increasing key {last} after cursor {cursor}"
            )
        yield rows
        cursor = last
