"""
Infrastructure package for the credit ledger.

Centralizes database connectivity concerns (connection factory, pooling,
bootstrap schema). Keep this layer focused on I/O and resource management,
decoupled from ledger logic.
"""

from credit_ledger.infrastructure.db_factory import (
    PoolManager,
    build_dsn,
    get_sync_connection,
    get_sync_pool,
)
from credit_ledger.infrastructure.schema import ensure_schema

__all__ = [
    "PoolManager",
    "build_dsn",
    "ensure_schema",
    "get_sync_connection",
    "get_sync_pool",
]
