"""chainsync: windowed backfill and balance reconciliation for a Chainweb indexer."""

__version__ = "0.3.0"
