"""
Database schema and connection management.

Uses SQLAlchemy against PostgreSQL in production and SQLite for local runs
and tests. Only the tables the backfill jobs touch are modelled here; the
indexer owns the rest of the schema.
"""

from datetime import datetime
from pathlib import Path
from typing import Union

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import StoreUnavailableError
from .retry import RetryError, exponential_backoff

Base = declarative_base()


class Balance(Base):
    """Cached account balance for one module on one chain."""

    __tablename__ = "Balances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account = Column(String, nullable=False)
    chain_id = Column("chainId", Integer, nullable=False)
    module = Column(String, nullable=False)
    has_token_id = Column("hasTokenId", Boolean, nullable=False, default=False)
    token_id = Column("tokenId", String, nullable=True)
    balance = Column(String, nullable=False, default="0")  # decimal string
    created_at = Column("createdAt", DateTime, nullable=False, default=datetime.now)
    updated_at = Column("updatedAt", DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class TransactionDetail(Base):
    """Transaction payload row. `code` holds the legacy JSON encoding."""

    __tablename__ = "TransactionDetails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(Text, nullable=True)  # raw JSON: '"(coin.transfer ...)"' or '{}'
    codetext = Column(Text, nullable=True)


def database_url(target: Union[str, Path]) -> str:
    """Accept a SQLAlchemy URL or a filesystem path to a SQLite file."""
    if isinstance(target, Path) or "://" not in str(target):
        return f"sqlite:///{target}"
    return str(target)


def get_engine(target: Union[str, Path], **kwargs) -> Engine:
    """
    Create an engine for the target store.

    Args:
        target: SQLAlchemy URL or path to SQLite database file
    """
    return create_engine(database_url(target), future=True, **kwargs)


def init_database(target: Union[str, Path]) -> Engine:
    """
    Create the backfill tables if they do not exist.

    Args:
        target: SQLAlchemy URL or path to SQLite database file

    Returns:
        The engine used to create the tables
    """
    if isinstance(target, Path) or "://" not in str(target):
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(target)
    Base.metadata.create_all(engine)
    return engine


def get_session(target: Union[str, Path, Engine]):
    """
    Get database session.

    Args:
        target: Engine, SQLAlchemy URL or path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    engine = target if isinstance(target, Engine) else get_engine(target)
    Session = sessionmaker(bind=engine, future=True)
    return Session()


def check_connection(engine: Engine, max_retries: int = 3, base_delay: float = 1.0) -> None:
    """
    Verify the store answers before a job starts.

    Raises:
        StoreUnavailableError: If the store is still unreachable after retries
    """
    @exponential_backoff(
        max_retries=max_retries,
        base_delay=base_delay,
        exceptions=(OperationalError,),
    )
    def _ping():
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    try:
        _ping()
    except RetryError as e:
        raise StoreUnavailableError(
            f"Failed to connect to database {engine.url.render_as_string(hide_password=True)}: {e}"
        ) from e
