"""
Infrastructure package for tsmigrate.

Centralizes database connectivity concerns (DSN, pooling, connection retry).
Keep this layer focused on I/O and resource management, decoupled from
phase/orchestrator logic.
"""

from tsmigrate.infrastructure.db_factory import (
    PoolManager,
    build_dsn,
    get_sync_connection,
    get_sync_pool,
)

__all__ = [
    "PoolManager",
    "build_dsn",
    "get_sync_connection",
    "get_sync_pool",
]
