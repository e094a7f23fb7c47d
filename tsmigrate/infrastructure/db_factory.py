"""
Database connection factory utilities for tsmigrate.

Provides centralized management of the PostgreSQL connection pool used by the
TimescaleDB backend. The PoolManager singleton ensures the pool is closed on
application exit.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import atexit
import threading
from typing import Optional

import psycopg
from psycopg import Connection, sql
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tsmigrate.config import Settings, get_settings
from tsmigrate.utils.logging import get_logger

log = get_logger(__name__)


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


def apply_statement_timeout(conn: Connection, timeout_ms: int) -> None:
    """
    Set the session statement timeout on ``conn``; 0 disables it.

    Leaves the connection idle so it can be used as a pool ``configure`` hook.
    """
    conn.execute(sql.SQL("SET statement_timeout = {}").format(sql.Literal(int(timeout_ms))))
    conn.commit()


class PoolManager:
    """
    Thread-safe singleton for managing the database connection pool.

    Handles lifecycle management with automatic cleanup via atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        """Create or return the singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._sync_pool: Optional[ConnectionPool] = None
                # Register cleanup on exit
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_sync_pool(self, min_size: int = 1, max_size: Optional[int] = None) -> ConnectionPool:
        """
        Get or create the synchronous connection pool.

        Parameters
        ----------
        min_size : int
            Minimum number of idle connections to keep.
        max_size : int, optional
            Maximum total connections in the pool. Defaults to
            ``DB_POOL_MAX_SIZE``.

        Returns
        -------
        ConnectionPool
            The managed sync pool instance.
        """
        with self._lock:
            if self._sync_pool is None:
                settings = get_settings()
                timeout_ms = settings.db_statement_timeout_ms

                def _configure(conn: Connection) -> None:
                    apply_statement_timeout(conn, timeout_ms)

                self._sync_pool = ConnectionPool(
                    conninfo=build_dsn(settings),
                    min_size=min_size,
                    max_size=max(max_size or settings.db_pool_max_size, min_size),
                    configure=_configure,
                    open=True,
                )
            return self._sync_pool

    def close_all(self) -> None:
        """
        Close the managed pool and release resources.

        This is called automatically on exit via atexit hook.
        """
        with self._lock:
            if self._sync_pool is not None:
                try:
                    self._sync_pool.close()
                except psycopg.Error as exc:
                    log.warning("Pool close failed", extra={"error": str(exc)})
                finally:
                    self._sync_pool = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def get_sync_connection() -> Connection:
    """
    Acquire a dedicated synchronous connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    Use this for one-off checks such as ``tsmigrate info``. Prefer the pool for
    repeated use.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(build_dsn())


def get_sync_pool(min_size: int = 1, max_size: Optional[int] = None) -> ConnectionPool:
    """Get or create the synchronous connection pool via PoolManager."""
    manager = PoolManager()
    return manager.get_sync_pool(min_size=min_size, max_size=max_size)


__all__ = [
    "PoolManager",
    "apply_statement_timeout",
    "build_dsn",
    "get_sync_connection",
    "get_sync_pool",
]
