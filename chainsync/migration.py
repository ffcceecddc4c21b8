"""
Code-to-text backfill for TransactionDetails.

Converting the `code` column from JSON to text in one ALTER statement needs
the whole table in memory. This job does the same conversion in descending
id windows instead, writing the unquoted string into `codetext`.

Each window is handled in one transaction:

1. BatchValidator reads every row in the window. A value that is neither
   `{}` nor a quoted JSON string aborts the whole job before anything in
   that window is written.
2. WindowCommitter converts the window with a single set-based UPDATE.

Any validation or commit failure is fatal. Already committed windows stay
committed and the job resumes below them on the next run.
"""

import json
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import CommitError, FatalJobError, ValidationAbortError
from .logger import StructuredLogger, get_logger
from .progress import ProgressTracker
from .targets import CODE_TO_TEXT, ReconciliationTarget
from .windows import BatchWindow, descending_windows, window_count

DEFAULT_BATCH_SIZE = 500
EMPTY_OBJECT = "{}"

_PENDING = "codetext IS NULL AND code IS NOT NULL AND code <> '{}'"

_SELECT_WINDOW = {
    "postgresql": (
        'SELECT id, CAST(code AS text) AS code FROM "TransactionDetails" '
        "WHERE id >= :low AND id <= :high ORDER BY id DESC"
    ),
    "default": (
        'SELECT id, code FROM "TransactionDetails" '
        "WHERE id >= :low AND id <= :high ORDER BY id DESC"
    ),
}

_UPDATE_WINDOW = {
    "postgresql": (
        'UPDATE "TransactionDetails" SET codetext = CASE '
        "WHEN code IS NULL OR CAST(code AS jsonb) = CAST('{}' AS jsonb) THEN NULL "
        "ELSE CAST(code AS jsonb) #>> '{}' END "
        "WHERE id >= :low AND id <= :high"
    ),
    "sqlite": (
        'UPDATE "TransactionDetails" SET codetext = CASE '
        "WHEN code IS NULL OR code = '{}' THEN NULL "
        "ELSE json_extract(code, '$') END "
        "WHERE id >= :low AND id <= :high"
    ),
}

_SELECT_VERIFY = {
    "postgresql": (
        'SELECT id, CAST(code AS text) AS code, codetext FROM "TransactionDetails" '
        "WHERE id >= :low AND id <= :high"
    ),
    "default": (
        'SELECT id, code, codetext FROM "TransactionDetails" '
        "WHERE id >= :low AND id <= :high"
    ),
}

_MAX_PENDING = {
    "postgresql": (
        'SELECT COALESCE(MAX(id), 0) FROM "TransactionDetails" '
        "WHERE codetext IS NULL AND code IS NOT NULL "
        "AND CAST(code AS jsonb) <> CAST('{}' AS jsonb)"
    ),
    "default": f'SELECT COALESCE(MAX(id), 0) FROM "TransactionDetails" WHERE {_PENDING}',
}


def _sql(statements: dict, conn: Connection) -> str:
    dialect = conn.dialect.name
    if dialect in statements:
        return statements[dialect]
    if "default" in statements:
        return statements["default"]
    raise FatalJobError(f"Unsupported database dialect for code-to-text: {dialect}")


def is_valid_code(raw: Optional[str]) -> bool:
    """NULL, the empty object, or a quoted JSON string."""
    if raw is None:
        return True
    if raw == EMPTY_OBJECT:
        return True
    return len(raw) >= 2 and raw[0] == '"' and raw[-1] == '"'


def find_resume_boundary(engine: Engine) -> int:
    """
    Highest id still waiting for conversion, or 0 if none.

    Windows above this id are already converted, so a restarted job starts
    here and walks down without repeating committed work.
    """
    with engine.connect() as conn:
        return int(conn.execute(text(_sql(_MAX_PENDING, conn))).scalar() or 0)


class BatchValidator:
    """Read-only pass that gates a window before it is written."""

    def validate(self, conn: Connection, window: BatchWindow) -> int:
        """
        Check every row in the window.

        Returns:
            Number of rows inspected

        Raises:
            ValidationAbortError: On the first row with an unexpected shape
        """
        rows = conn.execute(
            text(_sql(_SELECT_WINDOW, conn)), {"low": window.low, "high": window.high}
        )
        inspected = 0
        for row_id, raw in rows:
            inspected += 1
            if not is_valid_code(raw):
                raise ValidationAbortError(row_id, window, raw_value=raw)
        return inspected


class WindowCommitter:
    """Set-based conversion of one window."""

    def commit(self, conn: Connection, window: BatchWindow) -> int:
        result = conn.execute(
            text(_sql(_UPDATE_WINDOW, conn)), {"low": window.low, "high": window.high}
        )
        return result.rowcount


@dataclass
class MigrationSummary:
    start_id: int
    end_id: int
    processed: int = 0
    windows: int = 0
    boundary: Optional[int] = None

    @property
    def nothing_to_do(self) -> bool:
        return self.end_id < self.start_id


class CodeToTextMigration:
    """Descending, validated, window-at-a-time conversion of `code` to `codetext`."""

    def __init__(
        self,
        engine: Engine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        logger: Optional[StructuredLogger] = None,
        validator: Optional[BatchValidator] = None,
        committer: Optional[WindowCommitter] = None,
        target: ReconciliationTarget = CODE_TO_TEXT,
    ):
        self.engine = engine
        self.batch_size = batch_size
        self.logger = logger or get_logger()
        self.validator = validator or BatchValidator()
        self.committer = committer or WindowCommitter()
        self.target = target

    def find_resume_boundary(self) -> int:
        return find_resume_boundary(self.engine)

    def process_window(self, window: BatchWindow) -> int:
        """
        Validate then convert one window inside a single transaction.

        Raises:
            ValidationAbortError: If a row has an unexpected shape
            CommitError: If the transaction fails
        """
        try:
            with self.engine.begin() as conn:
                self.validator.validate(conn, window)
                self.logger.debug("About to update batch", low=window.low, high=window.high)
                processed = self.committer.commit(conn, window)
        except FatalJobError:
            raise
        except SQLAlchemyError as e:
            raise CommitError(f"Failed to convert window {window}: {e}", window=window) from e

        self.logger.debug(f"Processed {processed} records in this batch", window=str(window))
        return processed

    def run(self, start_id: int = 1, end_id: Optional[int] = None) -> MigrationSummary:
        """
        Convert every row with start_id <= id <= end_id, highest ids first.

        Args:
            start_id: Lowest id to convert
            end_id: Highest id to convert (default: resume boundary)

        Raises:
            FatalJobError: On any validation or commit failure
        """
        if end_id is None:
            end_id = self.find_resume_boundary()

        summary = MigrationSummary(start_id=start_id, end_id=end_id)
        if summary.nothing_to_do:
            self.logger.info(
                "No transaction details found; nothing to update",
                start_id=start_id,
                end_id=end_id,
            )
            return summary

        total = end_id - start_id + 1
        tracker = ProgressTracker(total, label=self.target.name, logger=self.logger)
        self.logger.info(
            f"Starting to process transactions from ID {end_id} down to {start_id}",
            total=total,
            batch_size=self.batch_size,
            windows=window_count(start_id, end_id, self.batch_size),
        )

        for window in descending_windows(start_id, end_id, self.batch_size):
            try:
                processed = self.process_window(window)
            except ValidationAbortError as e:
                self.logger.critical(
                    "Migration failed: invalid code value, entire backfill halted",
                    error=e,
                    window=str(window),
                    row_id=e.row_id,
                )
                raise
            except FatalJobError as e:
                self.logger.critical(
                    "Migration failed: window could not be committed, entire backfill halted",
                    error=e,
                    window=str(window),
                )
                raise

            summary.processed += processed
            summary.windows += 1
            summary.boundary = window.low - 1
            tracker.advance(summary.boundary, end_id - summary.boundary)

        tracker.finish(summary.processed, windows=summary.windows)
        return summary


@dataclass
class VerificationResult:
    checked: int = 0
    mismatched: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.mismatched


def _expected_codetext(raw: Optional[str]) -> Optional[str]:
    if raw is None or raw == EMPTY_OBJECT:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, str) else None


def verify_conversion(
    engine: Engine,
    batch_size: int = DEFAULT_BATCH_SIZE,
    logger: Optional[StructuredLogger] = None,
    max_reported: int = 100,
) -> VerificationResult:
    """
    Compare `codetext` against the decoded `code` for every row.

    Walks the table in the same descending windows as the migration so
    memory stays bounded. Returns the ids (up to max_reported) that differ.
    """
    logger = logger or get_logger()
    with engine.connect() as conn:
        max_id = int(conn.execute(
            text('SELECT COALESCE(MAX(id), 0) FROM "TransactionDetails"')
        ).scalar() or 0)

    result = VerificationResult()
    mismatches = 0
    for window in descending_windows(1, max_id, batch_size):
        with engine.connect() as conn:
            rows = conn.execute(
                text(_sql(_SELECT_VERIFY, conn)),
                {"low": window.low, "high": window.high},
            )
            for row_id, raw, codetext in rows:
                result.checked += 1
                if codetext != _expected_codetext(raw):
                    mismatches += 1
                    if len(result.mismatched) < max_reported:
                        result.mismatched.append(row_id)

    if mismatches:
        logger.error(
            "Code-to-text verification found inconsistent rows",
            mismatches=mismatches,
            sample=result.mismatched[:10],
        )
    else:
        logger.info("Code-to-text verification passed", checked=result.checked)
    return result
