"""
TimescaleDB storage backend.

Implements the StorageBackend protocol with psycopg 3 over a psycopg_pool
ConnectionPool:

- the write interceptor is a row-level AFTER INSERT trigger that re-inserts
  NEW into the buffer inside the writer's transaction
- the target is a hypertable partitioned on the integer time column, with
  native compression segmented and ordered per the migration config
- segments are TimescaleDB chunks, listed with ``show_chunks`` and compressed
  with ``compress_chunk``
- the migration state is a single JSONB row in its own table, written in the
  same transaction as the swap and the drain

Every psycopg error is re-raised as StorageError so the phases only deal with
the migration's own exception hierarchy.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, List, Mapping, Optional, Sequence

import psycopg
from psycopg import Connection, sql
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from tsmigrate.domain.models import MigrationState, TableNames
from tsmigrate.exceptions import StorageError
from tsmigrate.storage.abstract import AbstractStorageBackend
from tsmigrate.utils.logging import get_logger

log = get_logger(__name__)

TRIGGER_FUNCTION = "tsmigrate_duplicate_rows"
TRIGGER_NAME = "tsmigrate_dup_data"

# create_hypertable needs an explicit interval for integer time columns
_INITIAL_CHUNK_SECONDS = int(timedelta(days=7).total_seconds())

_TRIGGER_FUNCTION_DDL = sql.SQL(
    """
    CREATE OR REPLACE FUNCTION {function}() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
      EXECUTE format('INSERT INTO %s SELECT ($1).*', TG_ARGV[0]) USING NEW;
      RETURN NEW;
    END;
    $$
    """
).format(function=sql.Identifier(TRIGGER_FUNCTION))


def _ident(name: str) -> sql.Identifier:
    """Identifier for a possibly schema-qualified table name."""
    return sql.Identifier(*name.split(".", 1))


def _bare(name: str) -> sql.Identifier:
    """Unqualified identifier, as ALTER TABLE ... RENAME TO requires."""
    return sql.Identifier(name.rsplit(".", 1)[-1])


def _columns(columns: Sequence[str]) -> sql.Composed:
    return sql.SQL(", ").join(sql.Identifier(col) for col in columns)


def _keys_match(left: str, right: str, columns: Sequence[str]) -> sql.Composed:
    return sql.SQL(" AND ").join(
        sql.SQL("{}.{} = {}.{}").format(
            sql.Identifier(left), sql.Identifier(col), sql.Identifier(right), sql.Identifier(col)
        )
        for col in columns
    )


class TimescaleBackend(AbstractStorageBackend):
    """
    StorageBackend on PostgreSQL with the TimescaleDB extension.

    Parameters
    ----------
    pool : ConnectionPool
        Pool the backend borrows connections from. Each public call runs in
        its own transaction on one connection.
    state_table : str
        Table holding the single-row migration state.
    config_table : str, optional
        Application configuration table updated at cutover. None disables the
        configuration store.
    """

    name: str = "timescaledb"

    def __init__(
        self,
        pool: ConnectionPool,
        state_table: str = "tsmigrate_state",
        config_table: Optional[str] = "config",
    ) -> None:
        self.pool = pool
        self.state_table = state_table
        self.config_table = config_table
        self._state_table_ready = False

    @contextmanager
    def _transaction(self) -> Generator[Connection, None, None]:
        """Borrow a connection; commit on success, roll back and translate on error."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            raise StorageError(str(exc).strip() or type(exc).__name__) from exc

    def _exists(self, conn: Connection, name: str) -> bool:
        row = conn.execute("SELECT to_regclass(%s) IS NOT NULL", (name,)).fetchone()
        return bool(row and row[0])

    def _set_lock_timeout(self, conn: Connection, lock_timeout_ms: int) -> None:
        conn.execute(
            sql.SQL("SET LOCAL lock_timeout = {}").format(sql.Literal(f"{int(lock_timeout_ms)}ms"))
        )

    # ------------------------------------------------------------------
    # State store
    # ------------------------------------------------------------------

    def _ensure_state_table(self, conn: Connection) -> None:
        if self._state_table_ready:
            return
        conn.execute(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {} ("
                "id boolean PRIMARY KEY DEFAULT true CHECK (id), "
                "state jsonb NOT NULL, "
                "updated_at timestamptz NOT NULL DEFAULT now())"
            ).format(_ident(self.state_table))
        )
        self._state_table_ready = True

    def _write_state(self, conn: Connection, state: MigrationState) -> None:
        self._ensure_state_table(conn)
        state.touch()
        conn.execute(
            sql.SQL(
                "INSERT INTO {} (id, state, updated_at) VALUES (true, %s, now()) "
                "ON CONFLICT (id) DO UPDATE SET state = EXCLUDED.state, updated_at = now()"
            ).format(_ident(self.state_table)),
            (Jsonb(state.model_dump(mode="json")),),
        )

    def _delete_state(self, conn: Connection) -> None:
        self._ensure_state_table(conn)
        conn.execute(sql.SQL("DELETE FROM {}").format(_ident(self.state_table)))

    def load_state(self) -> Optional[MigrationState]:
        with self._transaction() as conn:
            self._ensure_state_table(conn)
            row = conn.execute(
                sql.SQL("SELECT state FROM {} WHERE id").format(_ident(self.state_table))
            ).fetchone()
        if row is None:
            return None
        return MigrationState.model_validate(row[0])

    def save_state(self, state: MigrationState) -> None:
        with self._transaction() as conn:
            self._write_state(conn, state)

    def clear_state(self) -> None:
        with self._transaction() as conn:
            self._delete_state(conn)

    # ------------------------------------------------------------------
    # Table identity
    # ------------------------------------------------------------------

    def table_exists(self, name: str) -> bool:
        with self._transaction() as conn:
            return self._exists(conn, name)

    def count_rows(
        self,
        name: str,
        time_column: Optional[str] = None,
        start_clock: Optional[int] = None,
        end_clock: Optional[int] = None,
    ) -> int:
        query = sql.SQL("SELECT count(*) FROM {}").format(_ident(name))
        conditions: List[sql.Composable] = []
        params: List[int] = []
        if time_column is not None and start_clock is not None:
            conditions.append(sql.SQL("{} >= %s").format(sql.Identifier(time_column)))
            params.append(start_clock)
        if time_column is not None and end_clock is not None:
            conditions.append(sql.SQL("{} < %s").format(sql.Identifier(time_column)))
            params.append(end_clock)
        if conditions:
            query = sql.SQL("{} WHERE {}").format(query, sql.SQL(" AND ").join(conditions))
        with self._transaction() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row[0]) if row else 0

    def drop_table(self, name: str) -> None:
        with self._transaction() as conn:
            conn.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(_ident(name)))

    # ------------------------------------------------------------------
    # Write interceptor
    # ------------------------------------------------------------------

    def activate_interceptor(self, source: str, buffer: str) -> datetime:
        with self._transaction() as conn:
            conn.execute(_TRIGGER_FUNCTION_DDL)
            conn.execute(
                sql.SQL("CREATE TABLE {} (LIKE {} INCLUDING DEFAULTS)").format(
                    _ident(buffer), _ident(source)
                )
            )
            conn.execute(
                sql.SQL("DROP TRIGGER IF EXISTS {} ON {}").format(
                    sql.Identifier(TRIGGER_NAME), _ident(source)
                )
            )
            conn.execute(
                sql.SQL(
                    "CREATE TRIGGER {} AFTER INSERT ON {} FOR EACH ROW EXECUTE FUNCTION {}({})"
                ).format(
                    sql.Identifier(TRIGGER_NAME),
                    _ident(source),
                    sql.Identifier(TRIGGER_FUNCTION),
                    sql.Literal(buffer),
                )
            )
            # read once the trigger holds its lock: every row committed before
            # this instant is already in the source table
            row = conn.execute("SELECT clock_timestamp()").fetchone()
        assert row is not None
        return row[0]

    def deactivate_interceptor(self, source: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                sql.SQL("DROP TRIGGER IF EXISTS {} ON {}").format(
                    sql.Identifier(TRIGGER_NAME), _ident(source)
                )
            )
            # one migration at a time, so no other trigger uses the function
            conn.execute(
                sql.SQL("DROP FUNCTION IF EXISTS {}()").format(sql.Identifier(TRIGGER_FUNCTION))
            )

    def interceptor_active(self, source: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM pg_trigger WHERE tgrelid = to_regclass(%s) "
                "AND tgname = %s)",
                (source, TRIGGER_NAME),
            ).fetchone()
        return bool(row and row[0])

    # ------------------------------------------------------------------
    # Target storage capability
    # ------------------------------------------------------------------

    def create_partitioned_table(self, name: str, like: str, time_column: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                sql.SQL("CREATE TABLE {} (LIKE {} INCLUDING DEFAULTS)").format(
                    _ident(name), _ident(like)
                )
            )
            conn.execute(
                "SELECT create_hypertable(%s::regclass, %s::name, chunk_time_interval => %s)",
                (name, time_column, _INITIAL_CHUNK_SECONDS),
            )

    def set_partition_interval(self, name: str, interval: timedelta) -> None:
        with self._transaction() as conn:
            conn.execute(
                "SELECT set_chunk_time_interval(%s::regclass, %s)",
                (name, int(interval.total_seconds())),
            )

    def enable_compression(self, name: str, segment_by: str, order_by: Sequence[str]) -> None:
        with self._transaction() as conn:
            conn.execute(
                sql.SQL(
                    "ALTER TABLE {} SET (timescaledb.compress, "
                    "timescaledb.compress_segmentby = {}, timescaledb.compress_orderby = {})"
                ).format(_ident(name), sql.Literal(segment_by), sql.Literal(",".join(order_by)))
            )

    def copy_rows(
        self, source: str, target: str, time_column: str, start_clock: int, end_clock: int
    ) -> int:
        time_col = sql.Identifier(time_column)
        with self._transaction() as conn:
            conn.execute(
                sql.SQL("DELETE FROM {} WHERE {} >= %s AND {} < %s").format(
                    _ident(target), time_col, time_col
                ),
                (start_clock, end_clock),
            )
            cur = conn.execute(
                sql.SQL("INSERT INTO {} SELECT * FROM {} WHERE {} >= %s AND {} < %s").format(
                    _ident(target), _ident(source), time_col, time_col
                ),
                (start_clock, end_clock),
            )
            return cur.rowcount

    def list_segments(self, name: str, older_than_clock: int) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT c::text FROM show_chunks(%s::regclass, older_than => %s) AS c",
                (name, older_than_clock),
            ).fetchall()
        return [row[0] for row in rows]

    def compress_segment(self, segment_id: str, if_not_compressed: bool = True) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT is_compressed FROM timescaledb_information.chunks "
                "WHERE format('%%I.%%I', chunk_schema, chunk_name)::regclass = %s::regclass",
                (segment_id,),
            ).fetchone()
            if row is not None and row[0] and if_not_compressed:
                return False
            conn.execute(
                "SELECT compress_chunk(%s::regclass, if_not_compressed => %s)",
                (segment_id, if_not_compressed),
            )
        return True

    def create_index(self, name: str, columns: Sequence[str]) -> str:
        index_name = f"{name.rsplit('.', 1)[-1]}_{'_'.join(columns)}_idx"
        with self._transaction() as conn:
            conn.execute(
                sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} ({})").format(
                    sql.Identifier(index_name), _ident(name), _columns(columns)
                )
            )
        return index_name

    # ------------------------------------------------------------------
    # Configuration store
    # ------------------------------------------------------------------

    def read_config(self, keys: Sequence[str]) -> Dict[str, Any]:
        if self.config_table is None or not keys:
            return {}
        with self._transaction() as conn:
            row = conn.execute(
                sql.SQL("SELECT {} FROM {} LIMIT 1").format(_columns(keys), _ident(self.config_table))
            ).fetchone()
        if row is None:
            return {key: None for key in keys}
        return dict(zip(keys, row))

    def _update_config(self, conn: Connection, values: Mapping[str, Any]) -> None:
        if self.config_table is None or not values:
            return
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(key)) for key in values
        )
        conn.execute(
            sql.SQL("UPDATE {} SET {}").format(_ident(self.config_table), assignments),
            list(values.values()),
        )

    # ------------------------------------------------------------------
    # Cutover
    # ------------------------------------------------------------------

    def swap_tables(
        self,
        names: TableNames,
        config_updates: Mapping[str, Any],
        lock_timeout_ms: int,
        state: MigrationState,
    ) -> None:
        with self._transaction() as conn:
            self._set_lock_timeout(conn, lock_timeout_ms)
            conn.execute(
                sql.SQL("LOCK TABLE {}, {} IN ACCESS EXCLUSIVE MODE").format(
                    _ident(names.source), _ident(names.target)
                )
            )
            if self._exists(conn, names.old):
                raise StorageError(f'relation "{names.old}" already exists')
            conn.execute(
                sql.SQL("ALTER TABLE {} RENAME TO {}").format(_ident(names.source), _bare(names.old))
            )
            conn.execute(
                sql.SQL("ALTER TABLE {} RENAME TO {}").format(
                    _ident(names.target), _bare(names.source)
                )
            )
            self._update_config(conn, config_updates)
            self._write_state(conn, state)

    def drain_buffer(
        self,
        buffer: str,
        live: str,
        time_column: str,
        key_columns: Sequence[str],
        dedupe_start_clock: int,
        dedupe_end_clock: int,
        state: MigrationState,
    ) -> int:
        time_col = sql.Identifier(time_column)
        with self._transaction() as conn:
            cur = conn.execute(
                sql.SQL(
                    "INSERT INTO {live} SELECT b.* FROM {buffer} AS b "
                    "WHERE NOT (b.{t} >= %s AND b.{t} < %s "
                    "AND EXISTS (SELECT 1 FROM {live} AS l WHERE {match}))"
                ).format(
                    live=_ident(live),
                    buffer=_ident(buffer),
                    t=time_col,
                    match=_keys_match("l", "b", key_columns),
                ),
                (dedupe_start_clock, dedupe_end_clock),
            )
            rows = cur.rowcount
            conn.execute(sql.SQL("DROP TABLE {}").format(_ident(buffer)))
            state.rows_drained = rows
            self._write_state(conn, state)
        return rows

    def rollback_swap(
        self,
        names: TableNames,
        parked_name: str,
        config_restore: Mapping[str, Any],
        key_columns: Sequence[str],
        lock_timeout_ms: int,
    ) -> int:
        with self._transaction() as conn:
            self._set_lock_timeout(conn, lock_timeout_ms)
            conn.execute(
                sql.SQL("LOCK TABLE {}, {} IN ACCESS EXCLUSIVE MODE").format(
                    _ident(names.source), _ident(names.old)
                )
            )
            if self._exists(conn, parked_name):
                raise StorageError(f'relation "{parked_name}" already exists')
            cur = conn.execute(
                sql.SQL(
                    "INSERT INTO {old} SELECT m.* FROM {live} AS m "
                    "WHERE NOT EXISTS (SELECT 1 FROM {old} AS o WHERE {match})"
                ).format(
                    old=_ident(names.old),
                    live=_ident(names.source),
                    match=_keys_match("o", "m", key_columns),
                ),
            )
            carried = cur.rowcount
            conn.execute(
                sql.SQL("ALTER TABLE {} RENAME TO {}").format(_ident(names.source), _bare(parked_name))
            )
            conn.execute(
                sql.SQL("ALTER TABLE {} RENAME TO {}").format(_ident(names.old), _bare(names.source))
            )
            self._update_config(conn, config_restore)
            self._delete_state(conn)
        return carried


__all__ = ["TRIGGER_FUNCTION", "TRIGGER_NAME", "TimescaleBackend"]
