"""
Integration tests for the migration against a real TimescaleDB instance.

These tests verify that:
1. A seeded history table is converted into a compressed hypertable
2. Writes arriving mid-migration survive the cutover exactly once
3. A completed migration can be rolled back to the original table

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Generator

import psycopg
import pytest
from psycopg import sql
from psycopg_pool import ConnectionPool

from scripts import generate_data
from tsmigrate.config import DEFAULT_CUTOVER_CONFIG, MigrationConfig
from tsmigrate.domain.models import MigrationPhase
from tsmigrate.orchestrator import MigrationOrchestrator
from tsmigrate.storage.timescale import TRIGGER_FUNCTION, TimescaleBackend

SOURCE_TABLE = "history_uint_it"
CONFIG_TABLE = "tsmigrate_it_config"
STATE_TABLE = "tsmigrate_it_state"
SEED_ROWS = 5_000
SEED_ITEMS = 20
SEED_DAYS = 35
LATE_ROWS = 2

pytestmark = pytest.mark.skipif(
    os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
    reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable TimescaleDB",
)


def _drop_all(conn: psycopg.Connection, config: MigrationConfig) -> None:
    names = config.table_names(SOURCE_TABLE)
    for table in (names.source, names.target, names.buffer, names.old, CONFIG_TABLE, STATE_TABLE):
        conn.execute(sql.SQL("DROP TABLE IF EXISTS {} CASCADE").format(sql.Identifier(table)))


@pytest.fixture
def migration_config() -> MigrationConfig:
    return MigrationConfig(retry_backoff_seconds=0.0, lock_timeout_ms=2000)


@pytest.fixture
def seeded_table(
    db_connection: psycopg.Connection, test_dsn: str, tmp_path: Path, migration_config: MigrationConfig
) -> Generator[str, None, None]:
    _drop_all(db_connection, migration_config)
    db_connection.execute(
        sql.SQL(
            "CREATE TABLE {} (db_extension varchar(32) NOT NULL DEFAULT '', "
            "hk_history_global integer NOT NULL DEFAULT 0, hk_trends_global integer NOT NULL DEFAULT 0, "
            "compression_status integer NOT NULL DEFAULT 0, compress_older varchar(32) NOT NULL DEFAULT '')"
        ).format(sql.Identifier(CONFIG_TABLE))
    )
    db_connection.execute(sql.SQL("INSERT INTO {} DEFAULT VALUES").format(sql.Identifier(CONFIG_TABLE)))

    csv_path = tmp_path / "history.csv"
    generate_data._generate_rows_csv(
        csv_path, rows=SEED_ROWS, items=SEED_ITEMS, days=SEED_DAYS, batch_size=1_000, seed=123
    )
    generate_data._copy_into_db(test_dsn, SOURCE_TABLE, csv_path)
    try:
        yield SOURCE_TABLE
    finally:
        _drop_all(db_connection, migration_config)


@pytest.fixture
def pool(test_dsn: str) -> Generator[ConnectionPool, None, None]:
    pool = ConnectionPool(test_dsn, min_size=1, max_size=4, open=True)
    try:
        yield pool
    finally:
        pool.close()


@pytest.fixture
def orchestrator(seeded_table: str, pool: ConnectionPool, migration_config: MigrationConfig) -> MigrationOrchestrator:
    backend = TimescaleBackend(pool, state_table=STATE_TABLE, config_table=CONFIG_TABLE)
    return MigrationOrchestrator(backend, seeded_table, migration_config)


def _count(conn: psycopg.Connection, table: str, since_clock: int = 0) -> int:
    row = conn.execute(
        sql.SQL("SELECT count(*) FROM {} WHERE clock >= %s").format(sql.Identifier(table)),
        (since_clock,),
    ).fetchone()
    return int(row[0])


def _insert_late_rows(conn: psycopg.Connection, clock: int) -> None:
    conn.execute(
        sql.SQL("INSERT INTO {} (itemid, clock, value, ns) VALUES (%s, %s, %s, %s)").format(
            sql.Identifier(SOURCE_TABLE)
        ),
        (9_999, clock, 1, 0),
    )
    conn.execute(
        sql.SQL("INSERT INTO {} (itemid, clock, value, ns) VALUES (%s, %s, %s, %s)").format(
            sql.Identifier(SOURCE_TABLE)
        ),
        (9_999, clock + 1, 2, 0),
    )


class TestOnlineMigration:
    """Full migration of a seeded table."""

    def test_migration_builds_a_compressed_hypertable(
        self,
        orchestrator: MigrationOrchestrator,
        db_connection: psycopg.Connection,
        migration_config: MigrationConfig,
    ) -> None:
        paused = orchestrator.run(stop_before=MigrationPhase.SWAPPING)
        assert paused.phase is MigrationPhase.SWAPPING

        # writes after StartTime only reach the new table through the buffer
        _insert_late_rows(db_connection, paused.plan.end_clock + 5)
        state = orchestrator.run()

        names = state.names
        horizon_start = state.plan.windows[0].start_clock
        assert state.phase is MigrationPhase.COMPLETE
        assert state.rows_drained == LATE_ROWS
        assert _count(db_connection, names.source) == _count(db_connection, names.old, horizon_start)

        hypertables = db_connection.execute(
            "SELECT count(*) FROM timescaledb_information.hypertables WHERE hypertable_name = %s",
            (names.source,),
        ).fetchone()
        compressed = db_connection.execute(
            "SELECT count(*) FROM timescaledb_information.chunks "
            "WHERE hypertable_name = %s AND is_compressed",
            (names.source,),
        ).fetchone()
        config_row = db_connection.execute(
            sql.SQL("SELECT db_extension, compression_status FROM {}").format(sql.Identifier(CONFIG_TABLE))
        ).fetchone()
        assert hypertables[0] == 1
        assert compressed[0] > 0
        assert config_row == (DEFAULT_CUTOVER_CONFIG["db_extension"], DEFAULT_CUTOVER_CONFIG["compression_status"])
        leftover_function = db_connection.execute(
            "SELECT to_regproc(%s) IS NOT NULL", (TRIGGER_FUNCTION,)
        ).fetchone()
        assert leftover_function == (False,)

    def test_rollback_restores_the_original_table(
        self, orchestrator: MigrationOrchestrator, db_connection: psycopg.Connection
    ) -> None:
        original_rows = _count(db_connection, SOURCE_TABLE)
        state = orchestrator.run()
        _insert_late_rows(db_connection, state.plan.end_clock + 5)

        carried = orchestrator.rollback()

        config_row = db_connection.execute(
            sql.SQL("SELECT db_extension FROM {}").format(sql.Identifier(CONFIG_TABLE))
        ).fetchone()
        assert carried == LATE_ROWS
        assert _count(db_connection, SOURCE_TABLE) == original_rows + LATE_ROWS
        assert config_row == ("",)
        assert orchestrator.backend.load_state() is None
