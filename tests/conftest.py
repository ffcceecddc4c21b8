"""
Pytest configuration and shared fixtures.
"""

import re
import threading
import time
from datetime import datetime
from typing import Dict, Iterable, Optional

import pytest
from sqlalchemy import insert

from chainsync.database import Balance, TransactionDetail, get_session, init_database
from chainsync.errors import OracleError
from chainsync.logger import get_logger, reset_logger
from chainsync.oracle import OracleResponse

_ACCOUNT_RE = re.compile(r'\.details "(.*)"\)$')


@pytest.fixture(autouse=True)
def logger(tmp_path):
    """Fresh global logger writing under tmp_path, console off."""
    reset_logger()
    log = get_logger(log_dir=tmp_path / "logs", enable_console=False)
    yield log
    reset_logger()


@pytest.fixture
def events(logger):
    """Every LogEvent the logger emits during the test."""
    captured = []
    logger.add_middleware(captured.append)
    return captured


@pytest.fixture
def engine(tmp_path):
    """SQLite store with the backfill tables created."""
    engine = init_database(tmp_path / "chainsync.db")
    yield engine
    engine.dispose()


@pytest.fixture
def seed_codes(engine):
    """Insert TransactionDetails rows from an {id: code} mapping."""
    def _seed(codes: Dict[int, Optional[str]]):
        rows = [{"id": row_id, "code": code} for row_id, code in codes.items()]
        with engine.begin() as conn:
            conn.execute(insert(TransactionDetail.__table__), rows)
    return _seed


@pytest.fixture
def seed_balances(engine):
    """Insert Balances rows; each dict may override any column."""
    def _seed(rows: Iterable[dict]):
        with get_session(engine) as session:
            for row in rows:
                values = {
                    "account": f"k:{row['id']}",
                    "chain_id": 0,
                    "module": "coin",
                    "has_token_id": False,
                    "balance": "0",
                    "created_at": datetime(2024, 1, 1),
                    "updated_at": datetime(2024, 1, 1),
                }
                values.update(row)
                session.add(Balance(**values))
            session.commit()
    return _seed


def read_codetext(engine) -> Dict[int, Optional[str]]:
    with get_session(engine) as session:
        return {row.id: row.codetext for row in session.query(TransactionDetail).all()}


def read_balances(engine) -> Dict[int, Balance]:
    with get_session(engine) as session:
        rows = session.query(Balance).order_by(Balance.id).all()
        session.expunge_all()
        return {row.id: row for row in rows}


class FakeNode:
    """
    Stand-in for NodeClient.

    balances maps account -> balance result; accounts in `failing` raise
    OracleError and accounts in `statuses` return that non-success status.
    """

    def __init__(self, balances=None, failing=(), statuses=None, delay: float = 0.0):
        self.balances = dict(balances or {})
        self.failing = set(failing)
        self.statuses = dict(statuses or {})
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.peak = 0
        self.closed = False
        self._lock = threading.Lock()

    def query(self, request):
        account = _ACCOUNT_RE.search(request["code"]).group(1)
        with self._lock:
            self.calls.append((request["chain"], account))
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if account in self.failing:
                raise OracleError(f"Node query timed out on chain {request['chain']}")
            if account in self.statuses:
                return OracleResponse(status=self.statuses[account], result={"message": "boom"})
            return OracleResponse(status="success", result={"balance": self.balances.get(account, 0)})
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self):
        self.closed = True
