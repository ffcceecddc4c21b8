"""
Exception taxonomy for backfill and reconciliation jobs.

Fatal errors abort the job and map to a non-zero exit code.
OracleError is a per-row failure that the sync path turns into a skip.
"""

from typing import Optional


class ChainsyncError(Exception):
    """Base class for all chainsync errors."""
    pass


class FatalJobError(ChainsyncError):
    """Raised when a job must stop. No partial window is left written."""

    def __init__(self, message: str, window=None):
        super().__init__(message)
        self.window = window


class ValidationAbortError(FatalJobError):
    """A row in the window failed pre-commit validation."""

    def __init__(self, row_id: int, window, raw_value: Optional[str] = None):
        super().__init__(
            f"ABORTING: Found invalid code value at id {row_id} in window {window}",
            window=window,
        )
        self.row_id = row_id
        self.raw_value = raw_value


class CommitError(FatalJobError):
    """The window's transaction could not be opened or committed."""
    pass


class StoreUnavailableError(FatalJobError):
    """The target store could not be reached at startup."""
    pass


class OracleError(ChainsyncError):
    """The node query failed: transport, timeout, bad status or bad payload."""
    pass
