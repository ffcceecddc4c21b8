"""
Reconciliation targets.

A target names the table and column a job repairs, the key it is scanned
by, and which rows are eligible. Targets are fixed for the lifetime of a job.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.sql.elements import ColumnElement

from .database import Balance, TransactionDetail


@dataclass(frozen=True)
class ReconciliationTarget:
    name: str
    table: str
    key_column: str
    value_column: str
    description: str
    predicate: Callable[[], List[ColumnElement]] = field(default=lambda: [], compare=False)

    def clauses(self) -> List[ColumnElement]:
        return list(self.predicate())


CODE_TO_TEXT = ReconciliationTarget(
    name="code-to-text",
    table=TransactionDetail.__tablename__,
    key_column="id",
    value_column="codetext",
    description="every transaction detail row",
)

ALL_BALANCES = ReconciliationTarget(
    name="balances",
    table=Balance.__tablename__,
    key_column="id",
    value_column="balance",
    description="every balance row; token-id rows are skipped as out of scope",
)


def recent_balances(lookback_minutes: int, now: Optional[datetime] = None) -> ReconciliationTarget:
    """Fungible balances whose row was touched within the lookback window."""
    if now is None:
        now = datetime.now()
    cutoff = now - timedelta(minutes=lookback_minutes)
    return ReconciliationTarget(
        name="recent-balances",
        table=Balance.__tablename__,
        key_column="id",
        value_column="balance",
        description=f"fungible balances updated after {cutoff.isoformat(timespec='seconds')}",
        predicate=lambda: [Balance.has_token_id.is_(False), Balance.updated_at > cutoff],
    )
