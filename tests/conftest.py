"""
Pytest configuration for tsmigrate.

Provides fixtures for:
- A migration config with fast retries
- An in-memory backend seeded with a Zabbix-style history table
- Database connection management for integration tests
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Generator, List

import psycopg
import pytest

from tsmigrate.config import MigrationConfig, Settings
from tsmigrate.domain.models import Record, to_clock
from tsmigrate.storage.memory import InMemoryBackend

SOURCE_TABLE = "history_uint"

# StartTime every unit test plans from; the backend's transaction clock sits
# just before it so activation rounds up onto it.
START_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
ACTIVATION_TIME = START_TIME - timedelta(milliseconds=600)

HISTORY_DAYS = 35
SAMPLE_STEP_SECONDS = 6 * 3600
ITEM_IDS = (101, 102, 103)

INITIAL_CONFIG = {
    "db_extension": "",
    "hk_history_global": 0,
    "hk_trends_global": 0,
    "compression_status": 0,
    "compress_older": "",
}


def make_records(start_clock: int, end_clock: int, step: int, items=ITEM_IDS) -> List[Record]:
    """One sample per item every ``step`` seconds in ``[start_clock, end_clock)``."""
    return [
        Record(itemid=itemid, clock=clock, value=clock % 1000, ns=0)
        for clock in range(start_clock, end_clock, step)
        for itemid in items
    ]


def history_records() -> List[Record]:
    end = to_clock(START_TIME)
    start = end - HISTORY_DAYS * 86400
    return make_records(start, end, SAMPLE_STEP_SECONDS)


@pytest.fixture
def migration_config() -> MigrationConfig:
    """Default layout and window plan, with retries that do not sleep."""
    return MigrationConfig(retry_backoff_seconds=0.0, lock_timeout_ms=200)


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(now=lambda: ACTIVATION_TIME, config=INITIAL_CONFIG)


@pytest.fixture
def seeded_backend(backend: InMemoryBackend) -> InMemoryBackend:
    """Backend holding a live ``history_uint`` with five weeks of samples."""
    backend.create_table(SOURCE_TABLE, history_records())
    return backend


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "tsmigrate_test"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if a TimescaleDB-enabled database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            row = conn.execute(
                "SELECT 1 FROM pg_extension WHERE extname = 'timescaledb'"
            ).fetchone()
        return row is not None
    except psycopg.Error:
        return False


@pytest.fixture(scope="session")
def db_connection(
    test_dsn: str, db_connection_available: bool
) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a session-scoped autocommit connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("TimescaleDB not available for integration tests")

    conn = psycopg.connect(test_dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()
