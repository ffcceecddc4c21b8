"""
Bounded concurrency executor.

Runs one callable over a fixed list of inputs on a thread pool while keeping
at most `max_concurrency` calls in flight. Results come back in input order
and one failing call never cancels its siblings.
"""

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskOutcome(Generic[T, R]):
    """Result of one task: either a value or the exception it raised."""

    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_bounded(
    items: Sequence[T],
    fn: Callable[[T], R],
    max_concurrency: int,
) -> List[TaskOutcome]:
    """
    Execute fn(item) for every item with at most max_concurrency in flight.

    Args:
        items: Inputs, one task each
        fn: Work to run per input
        max_concurrency: Ceiling on concurrently running tasks

    Returns:
        One TaskOutcome per input, in input order
    """
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

    total = len(items)
    if total == 0:
        return []

    outcomes: List[Optional[TaskOutcome]] = [None] * total
    pending: Dict[Future, int] = {}
    next_index = 0

    with ThreadPoolExecutor(max_workers=min(max_concurrency, total)) as executor:
        while next_index < total or pending:
            while next_index < total and len(pending) < max_concurrency:
                future = executor.submit(fn, items[next_index])
                pending[future] = next_index
                next_index += 1

            done, _ = wait(set(pending), return_when=FIRST_COMPLETED)
            for future in done:
                index = pending.pop(future)
                error = future.exception()
                if error is None:
                    outcomes[index] = TaskOutcome(items[index], value=future.result())
                else:
                    outcomes[index] = TaskOutcome(items[index], error=error)

    return outcomes
