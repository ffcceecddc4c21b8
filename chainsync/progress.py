"""
Progress tracking for windowed jobs.

Progress is measured over the key space covered so far, not over rows, so a
sparse table still reaches 100%. Lines are throttled to one per 0.1
percentage points to keep logs readable on very large ranges.
"""

from dataclasses import dataclass
from typing import Optional

import psutil

from .logger import StructuredLogger, get_logger

MIN_PROGRESS_DELTA = 0.1


def memory_usage_mb() -> float:
    """Current resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / 1024 / 1024


@dataclass
class ProgressState:
    processed_span: int = 0
    total_span: int = 0
    last_printed_percent: float = -1.0
    current_boundary: Optional[int] = None

    @property
    def percent(self) -> float:
        if self.total_span <= 0:
            return 100.0
        span = min(self.processed_span, self.total_span)
        return span / self.total_span * 100.0


class ProgressTracker:
    """Throttled progress reporting plus the job's resumability boundary."""

    def __init__(
        self,
        total_span: int,
        label: str = "job",
        logger: Optional[StructuredLogger] = None,
        min_delta: float = MIN_PROGRESS_DELTA,
    ):
        self.label = label
        self.logger = logger or get_logger()
        self.min_delta = min_delta
        self.state = ProgressState(total_span=max(total_span, 0))
        self.emitted = 0

    @property
    def current_boundary(self) -> Optional[int]:
        return self.state.current_boundary

    def advance(self, boundary: int, processed_span: int) -> bool:
        """
        Record that everything up to `boundary` has been committed.

        Args:
            boundary: Last key value fully processed (the resume point)
            processed_span: Keys covered so far, measured from the scan start

        Returns:
            True if a progress line was emitted
        """
        self.state.current_boundary = boundary
        self.state.processed_span = processed_span

        percent = self.state.percent
        if percent - self.state.last_printed_percent < self.min_delta:
            return False

        self.state.last_printed_percent = percent
        self.emitted += 1
        self.logger.info(
            f"{self.label} progress: {percent:.1f}%",
            boundary=boundary,
            memory_mb=round(memory_usage_mb(), 1),
        )
        return True

    def finish(self, rows_processed: int, **summary):
        """Emit the final 100% line with the job totals."""
        self.state.processed_span = self.state.total_span
        self.logger.info(
            f"{self.label} completed: {rows_processed} rows processed (100.0%)",
            boundary=self.state.current_boundary,
            **summary,
        )
