"""
Job configuration.

Settings are read from the environment once by the CLI and handed to each
job explicitly. Nothing here is cached at module level.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional
from urllib.parse import quote_plus

DEFAULT_CONCURRENCY = 50
DEFAULT_BALANCE_BATCH_SIZE = 1000
DEFAULT_CODE_BATCH_SIZE = 500
DEFAULT_LOOKBACK_MINUTES = 10
DEFAULT_NODE_TIMEOUT = 15.0


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one job invocation."""

    database_url: str
    node_url: str = "http://localhost:1848"
    network_id: str = "mainnet01"
    concurrency: int = DEFAULT_CONCURRENCY
    balance_batch_size: int = DEFAULT_BALANCE_BATCH_SIZE
    code_batch_size: int = DEFAULT_CODE_BATCH_SIZE
    lookback_minutes: int = DEFAULT_LOOKBACK_MINUTES
    node_timeout: float = DEFAULT_NODE_TIMEOUT
    monitoring_url: Optional[str] = None
    instance_name: Optional[str] = None
    error_report_api_key: Optional[str] = None
    graphql_port: str = "3001"
    log_level: str = "INFO"
    log_dir: Path = field(default_factory=lambda: Path("logs"))

    @property
    def monitoring_endpoint(self) -> str:
        """Endpoint label attached to every failure report."""
        return f"http://localhost:{self.graphql_port}/graphql"

    def missing_monitoring_vars(self) -> List[str]:
        missing = []
        if not self.monitoring_url:
            missing.append("MONITORING_URL")
        if not self.instance_name:
            missing.append("INSTANCE_NAME")
        if not self.error_report_api_key:
            missing.append("ERROR_REPORT_API_KEY")
        return missing


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _clean(env.get(name))
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{name} must be >= 1, got {value}")
    return value


def build_database_url(env: Mapping[str, str]) -> str:
    """
    Resolve the target store URL.

    DATABASE_URL wins. Otherwise a PostgreSQL URL is assembled from
    DB_HOST, DB_PORT, DB_USER, DB_PASSWORD and DB_NAME.
    """
    url = _clean(env.get("DATABASE_URL"))
    if url:
        return url

    host = _clean(env.get("DB_HOST"))
    name = _clean(env.get("DB_NAME"))
    if not host or not name:
        raise ValueError("DATABASE_URL or DB_HOST and DB_NAME must be set")

    port = _clean(env.get("DB_PORT")) or "5432"
    user = _clean(env.get("DB_USER")) or "postgres"
    password = env.get("DB_PASSWORD") or ""
    auth = quote_plus(user)
    if password:
        auth += ":" + quote_plus(password)
    return f"postgresql+psycopg2://{auth}@{host}:{port}/{name}"


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env: Mapping to read from (default: os.environ)

    Raises:
        ValueError: If a required variable is missing or malformed
    """
    if env is None:
        env = os.environ

    timeout_raw = _clean(env.get("NODE_TIMEOUT_SECONDS"))
    try:
        node_timeout = float(timeout_raw) if timeout_raw else DEFAULT_NODE_TIMEOUT
    except ValueError:
        raise ValueError(f"NODE_TIMEOUT_SECONDS must be a number, got {timeout_raw!r}")

    return Settings(
        database_url=build_database_url(env),
        node_url=(_clean(env.get("NODE_API_URL")) or "http://localhost:1848").rstrip("/"),
        network_id=_clean(env.get("SYNC_NETWORK")) or "mainnet01",
        concurrency=_int(env, "SYNC_CONCURRENCY", DEFAULT_CONCURRENCY),
        balance_batch_size=_int(env, "BALANCE_BATCH_SIZE", DEFAULT_BALANCE_BATCH_SIZE),
        code_batch_size=_int(env, "CODE_BATCH_SIZE", DEFAULT_CODE_BATCH_SIZE),
        lookback_minutes=_int(env, "RECENT_LOOKBACK_MINUTES", DEFAULT_LOOKBACK_MINUTES),
        node_timeout=node_timeout,
        monitoring_url=_clean(env.get("MONITORING_URL")),
        instance_name=_clean(env.get("INSTANCE_NAME")),
        error_report_api_key=_clean(env.get("ERROR_REPORT_API_KEY")),
        graphql_port=_clean(env.get("GRAPHQL_API_PORT")) or "3001",
        log_level=(_clean(env.get("LOG_LEVEL")) or "INFO").upper(),
        log_dir=Path(_clean(env.get("LOG_DIR")) or "logs"),
    )
