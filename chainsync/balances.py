"""
Balance reconciliation against the node.

Walks the Balances table in ascending id pages, asks the node for each
row's current balance with bounded concurrency, and writes the answers for
a page in one transaction. A row whose query fails, or that is out of scope
(non-fungible rows carrying a token id), is skipped and left untouched; it
is picked up again on the next run. Writing the same balance twice leaves
the same state, so re-running the job is the retry mechanism.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import DEFAULT_BALANCE_BATCH_SIZE, DEFAULT_CONCURRENCY
from .database import Balance, get_session
from .errors import CommitError, OracleError
from .executor import run_bounded
from .logger import StructuredLogger, get_logger
from .oracle import NodeClient, details_code, format_balance, format_decimal
from .progress import ProgressTracker
from .targets import ALL_BALANCES, ReconciliationTarget, recent_balances
from .windows import BatchWindow, scan_by_cursor

_UPDATE_BALANCE = 'UPDATE "Balances" SET balance = :balance, "updatedAt" = :updated_at WHERE id = :id'


class SkipReason(str, Enum):
    OUT_OF_SCOPE = "out_of_scope"
    FETCH_FAILED = "fetch_failed"


@dataclass(frozen=True)
class RowTask:
    """What the node needs to answer for one balance row."""

    id: int
    account: str
    chain_id: int
    module: str
    has_token_id: bool = False

    def to_query(self) -> dict:
        return {"chain": str(self.chain_id), "code": details_code(self.module, self.account)}


@dataclass
class OracleResult:
    row_id: int
    value: Optional[str] = None
    skip: Optional[SkipReason] = None
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.skip is None


@dataclass
class SyncSummary:
    target: str
    processed: int = 0
    updated: int = 0
    skipped_out_of_scope: int = 0
    skipped_failed: int = 0
    windows: int = 0
    last_cursor: int = 0
    duration_seconds: float = 0.0

    @property
    def skipped(self) -> int:
        return self.skipped_out_of_scope + self.skipped_failed


def find_resume_cursor(
    engine: Engine,
    since: datetime,
    target: ReconciliationTarget = ALL_BALANCES,
) -> int:
    """
    Last id of the contiguous run of rows written at or after `since`.

    Pages are committed in ascending id order, so the first eligible row
    still older than `since` is where the previous run stopped (or a row it
    skipped). Rows above it touched by the indexer in the meantime do not
    move the cursor. Token-id rows are never written and are ignored.
    Returns the highest eligible id when every row is newer, 0 for an empty
    table.
    """
    clauses = [Balance.has_token_id.is_(False), *target.clauses()]
    with get_session(engine) as session:
        first_stale = session.execute(
            select(func.min(Balance.id)).where(Balance.updated_at < since, *clauses)
        ).scalar()
        if first_stale is not None:
            return int(first_stale) - 1
        return int(session.execute(select(func.max(Balance.id)).where(*clauses)).scalar() or 0)


class BalanceSync:
    """Ascending-cursor reconciliation of the balance column."""

    def __init__(
        self,
        engine: Engine,
        client: NodeClient,
        target: ReconciliationTarget = ALL_BALANCES,
        batch_size: int = DEFAULT_BALANCE_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.engine = engine
        self.client = client
        self.target = target
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.logger = logger or get_logger()
        self.clock = clock

    def fetch_page(self, after: int, limit: int) -> List[RowTask]:
        """Up to `limit` eligible rows with id > after, ordered by id."""
        stmt = (
            select(Balance)
            .where(Balance.id > after, *self.target.clauses())
            .order_by(Balance.id)
            .limit(limit)
        )
        with get_session(self.engine) as session:
            return [
                RowTask(
                    id=row.id,
                    account=row.account,
                    chain_id=row.chain_id,
                    module=row.module,
                    has_token_id=bool(row.has_token_id),
                )
                for row in session.execute(stmt).scalars()
            ]

    def max_key(self, after: int = 0) -> int:
        stmt = select(func.max(Balance.id)).where(Balance.id > after, *self.target.clauses())
        with get_session(self.engine) as session:
            return int(session.execute(stmt).scalar() or 0)

    def resolve(self, task: RowTask) -> OracleResult:
        """Ask the node for one row. Never raises for node-side problems."""
        if task.has_token_id:
            return OracleResult(task.id, skip=SkipReason.OUT_OF_SCOPE)

        try:
            response = self.client.query(task.to_query())
            balance = format_balance(response)
        except OracleError as e:
            self.logger.error(
                f"Failed to fetch balance for account {task.account} on chain {task.chain_id}",
                error=e,
                row_id=task.id,
                module=task.module,
            )
            return OracleResult(task.id, skip=SkipReason.FETCH_FAILED, error=str(e))

        return OracleResult(task.id, value=format_decimal(balance))

    def resolve_window(self, tasks: List[RowTask]) -> List[OracleResult]:
        """Fan the window's rows out to the node under the concurrency ceiling."""
        results = []
        for outcome in run_bounded(tasks, self.resolve, self.concurrency):
            if outcome.ok:
                results.append(outcome.value)
                continue
            task = outcome.item
            self.logger.error(
                f"Unexpected error resolving balance for account {task.account} on chain {task.chain_id}",
                error=outcome.error,
                row_id=task.id,
            )
            results.append(OracleResult(task.id, skip=SkipReason.FETCH_FAILED, error=str(outcome.error)))
        return results

    def commit_window(self, window: BatchWindow, results: List[OracleResult]) -> int:
        """
        Apply every resolved value of a window in one transaction.

        Returns:
            Number of rows written

        Raises:
            CommitError: If the transaction fails; nothing from the window lands
        """
        now = self.clock()
        params = [
            {"id": r.row_id, "balance": r.value, "updated_at": now}
            for r in results
            if r.resolved
        ]
        if not params:
            return 0

        try:
            with self.engine.begin() as conn:
                conn.execute(text(_UPDATE_BALANCE), params)
        except SQLAlchemyError as e:
            raise CommitError(f"Failed to commit balances for window {window}: {e}", window=window) from e
        return len(params)

    def run(self, after: int = 0) -> SyncSummary:
        """
        Reconcile every eligible row with id > after.

        Args:
            after: Exclusive start cursor (0 = whole table)

        Raises:
            CommitError: If a window cannot be committed
        """
        started = time.monotonic()
        summary = SyncSummary(target=self.target.name, last_cursor=after)
        self.logger.info(
            f"Starting {self.target.name} sync",
            scope=self.target.description,
            after=after,
            batch_size=self.batch_size,
            concurrency=self.concurrency,
        )

        top = self.max_key(after)
        if top <= after:
            self.logger.info(f"No {self.target.name} rows to process", after=after)
            summary.duration_seconds = round(time.monotonic() - started, 2)
            return summary

        tracker = ProgressTracker(top - after, label=self.target.name, logger=self.logger)
        pages = scan_by_cursor(self.fetch_page, self.batch_size, after=after, key=lambda t: t.id)
        for page in pages:
            window = BatchWindow(page[0].id, page[-1].id)
            results = self.resolve_window(page)
            try:
                updated = self.commit_window(window, results)
            except CommitError as e:
                self.logger.critical(
                    f"{self.target.name} sync failed: commit error, entire backfill halted",
                    error=e,
                    window=str(window),
                    last_cursor=summary.last_cursor,
                )
                raise

            summary.windows += 1
            summary.processed += len(page)
            summary.updated += updated
            for r in results:
                if r.skip == SkipReason.OUT_OF_SCOPE:
                    summary.skipped_out_of_scope += 1
                elif r.skip == SkipReason.FETCH_FAILED:
                    summary.skipped_failed += 1
            summary.last_cursor = window.high

            self.logger.debug(
                f"Processed {summary.processed} balances, updated {summary.updated}",
                window=str(window),
            )
            tracker.advance(window.high, min(window.high, top) - after)

        summary.duration_seconds = round(time.monotonic() - started, 2)
        tracker.finish(
            summary.processed,
            updated=summary.updated,
            skipped_out_of_scope=summary.skipped_out_of_scope,
            skipped_failed=summary.skipped_failed,
            duration_seconds=summary.duration_seconds,
        )
        return summary


def sync_balances(
    engine: Engine,
    client: NodeClient,
    after: int = 0,
    **kwargs,
) -> SyncSummary:
    """Reconcile the whole Balances table."""
    return BalanceSync(engine, client, target=ALL_BALANCES, **kwargs).run(after=after)


def sync_recent_balances(
    engine: Engine,
    client: NodeClient,
    lookback_minutes: int = 10,
    now: Optional[datetime] = None,
    **kwargs,
) -> SyncSummary:
    """Reconcile fungible balances touched within the last `lookback_minutes`."""
    target = recent_balances(lookback_minutes, now=now)
    return BalanceSync(engine, client, target=target, **kwargs).run()
