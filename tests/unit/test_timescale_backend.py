"""
TimescaleBackend statement sequencing, checked against a scripted connection.

The fake pool hands out one connection that records every statement and
answers queries whose text contains a registered fragment. Composed queries
are matched on their repr, which lists each SQL fragment and identifier.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg
import pytest

from tsmigrate.domain.models import MigrationPhase, MigrationState, TableNames
from tsmigrate.exceptions import StorageError
from tsmigrate.storage.timescale import TRIGGER_FUNCTION, TRIGGER_NAME, TimescaleBackend

NAMES = TableNames.for_source("history_uint")
COPIED_ROWS = 84


class _FakeCursor:
    def __init__(self, rows: Sequence[Tuple[Any, ...]], rowcount: int) -> None:
        self._rows = list(rows)
        self.rowcount = rowcount

    def fetchone(self) -> Optional[Tuple[Any, ...]]:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> List[Tuple[Any, ...]]:
        return list(self._rows)


class _FakeConnection:
    def __init__(self) -> None:
        self.statements: List[Tuple[str, Any]] = []
        self.responses: Dict[str, Tuple[Sequence[Tuple[Any, ...]], int]] = {}
        self.errors: Dict[str, Exception] = {}

    def respond(self, fragment: str, rows: Sequence[Tuple[Any, ...]] = (), rowcount: int = -1) -> None:
        self.responses[fragment] = (rows, rowcount)

    def execute(self, query: Any, params: Any = None) -> _FakeCursor:
        text = query if isinstance(query, str) else repr(query)
        self.statements.append((text, params))
        for fragment, exc in self.errors.items():
            if fragment in text:
                raise exc
        for fragment, (rows, rowcount) in self.responses.items():
            if fragment in text:
                return _FakeCursor(rows, rowcount)
        return _FakeCursor((), -1)

    def texts(self) -> List[str]:
        return [text for text, _ in self.statements]


class _FakePool:
    def __init__(self, conn: _FakeConnection) -> None:
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


@pytest.fixture
def conn() -> _FakeConnection:
    return _FakeConnection()


@pytest.fixture
def backend(conn: _FakeConnection) -> TimescaleBackend:
    return TimescaleBackend(_FakePool(conn))  # type: ignore[arg-type]


def _position(texts: List[str], fragment: str) -> int:
    return next(i for i, text in enumerate(texts) if fragment in text)


def test_copy_rows_clears_the_window_then_inserts(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    conn.respond("INSERT INTO ", rowcount=COPIED_ROWS)

    rows = backend.copy_rows("history_uint", "history_uint_new", "clock", 100, 200)

    texts = conn.texts()
    assert rows == COPIED_ROWS
    assert len(texts) == 2
    assert "DELETE FROM " in texts[0] and "Identifier('history_uint_new')" in texts[0]
    assert "INSERT INTO " in texts[1] and "Identifier('history_uint')" in texts[1]
    assert all(params == (100, 200) for _, params in conn.statements)


def test_psycopg_errors_become_storage_errors(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    conn.errors["DELETE FROM "] = psycopg.OperationalError("server closed the connection unexpectedly")

    with pytest.raises(StorageError, match="server closed the connection"):
        backend.copy_rows("history_uint", "history_uint_new", "clock", 100, 200)


def test_schema_qualified_names_are_split(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    backend.drop_table("zabbix.history_uint_tmp")

    assert "Identifier('zabbix', 'history_uint_tmp')" in conn.texts()[0]


def test_activate_returns_the_clock_after_the_trigger(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    moment = datetime(2024, 3, 1, 11, 59, 59, 400000, tzinfo=timezone.utc)
    conn.respond("clock_timestamp()", rows=[(moment,)])

    start_time = backend.activate_interceptor("history_uint", "history_uint_tmp")

    texts = conn.texts()
    trigger = _position(texts, "CREATE TRIGGER")
    assert start_time == moment
    assert _position(texts, "(LIKE ") < trigger < _position(texts, "clock_timestamp()")
    assert f"Identifier('{TRIGGER_NAME}')" in texts[trigger]
    assert "Literal('history_uint_tmp')" in texts[trigger]


def test_swap_renames_updates_config_and_state_in_order(
    backend: TimescaleBackend, conn: _FakeConnection
) -> None:
    conn.respond("to_regclass", rows=[(False,)])
    state = MigrationState(names=NAMES, phase=MigrationPhase.DRAINING)

    backend.swap_tables(NAMES, {"db_extension": "timescaledb"}, lock_timeout_ms=250, state=state)

    texts = conn.texts()
    assert "lock_timeout" in texts[0] and "Literal('250ms')" in texts[0]
    assert "LOCK TABLE " in texts[1]
    renames = [i for i, text in enumerate(texts) if "RENAME TO" in text]
    assert len(renames) == 2
    assert "Identifier('history_uint_old')" in texts[renames[0]]
    assert "Identifier('history_uint_new')" in texts[renames[1]]
    config_update = _position(texts, "UPDATE ")
    state_write = _position(texts, "ON CONFLICT (id)")
    assert renames[1] < config_update < state_write
    assert conn.statements[config_update][1] == ["timescaledb"]


def test_swap_refuses_an_existing_old_table(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    conn.respond("to_regclass", rows=[(True,)])
    state = MigrationState(names=NAMES, phase=MigrationPhase.DRAINING)

    with pytest.raises(StorageError, match="history_uint_old"):
        backend.swap_tables(NAMES, {}, lock_timeout_ms=250, state=state)

    assert not any("RENAME TO" in text for text in conn.texts())


def test_drain_records_the_drained_count(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    conn.respond("SELECT b.* FROM ", rowcount=4)
    state = MigrationState(names=NAMES, phase=MigrationPhase.COMPLETE)

    rows = backend.drain_buffer(
        NAMES.buffer, NAMES.source, "clock", ("itemid", "clock", "ns"), 0, 100, state
    )

    texts = conn.texts()
    assert rows == 4
    assert state.rows_drained == 4
    assert _position(texts, "SELECT b.* FROM ") < _position(texts, "DROP TABLE ") < _position(
        texts, "ON CONFLICT (id)"
    )


def test_list_segments_returns_chunk_names(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    chunks = [("_timescaledb_internal._hyper_1_1_chunk",), ("_timescaledb_internal._hyper_1_2_chunk",)]
    conn.respond("show_chunks", rows=chunks)

    segments = backend.list_segments("history_uint_new", 1_700_000_000)

    assert segments == [name for (name,) in chunks]
    assert conn.statements[0][1] == ("history_uint_new", 1_700_000_000)


def test_compressed_chunk_is_skipped(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    conn.respond("is_compressed", rows=[(True,)])

    compressed = backend.compress_segment("_timescaledb_internal._hyper_1_1_chunk")

    assert compressed is False
    assert not any("compress_chunk" in text for text in conn.texts())


def test_load_state_without_a_row(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    assert backend.load_state() is None
    assert "CREATE TABLE IF NOT EXISTS " in conn.texts()[0]


def test_load_state_parses_the_json_row(backend: TimescaleBackend, conn: _FakeConnection) -> None:
    saved = MigrationState(names=NAMES, phase=MigrationPhase.COPYING)
    conn.respond("SELECT state FROM ", rows=[(saved.model_dump(mode="json"),)])

    state = backend.load_state()

    assert state is not None
    assert state.phase is MigrationPhase.COPYING
    assert state.names == NAMES


def test_config_store_can_be_disabled(conn: _FakeConnection) -> None:
    backend = TimescaleBackend(_FakePool(conn), config_table=None)  # type: ignore[arg-type]

    assert backend.read_config(["db_extension"]) == {}
    assert conn.statements == []


def test_deactivate_drops_the_trigger_and_its_function(
    backend: TimescaleBackend, conn: _FakeConnection
) -> None:
    backend.deactivate_interceptor("history_uint_old")

    texts = conn.texts()
    assert "DROP TRIGGER IF EXISTS " in texts[0]
    assert "DROP FUNCTION IF EXISTS " in texts[1]
    assert f"Identifier('{TRIGGER_FUNCTION}')" in texts[1]
