"""
In-memory storage backend for tsmigrate.

A thread-safe, process-local model of the storage the migration runs against:
plain tables, row-level insert triggers, time-partitioned segments with a
compressed flag, a key-value configuration store and a JSON state slot. Every
public operation runs under a single re-entrant lock and applies its changes
to a working copy first, so an injected failure leaves nothing behind, the
same way a rolled-back transaction would.

Used by the unit tests and anywhere the protocol needs to be exercised
without a database.
"""

from __future__ import annotations

import itertools
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    Callable,
    DefaultDict,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from tsmigrate.domain.models import MigrationState, Record, TableNames
from tsmigrate.exceptions import StorageError
from tsmigrate.storage.abstract import AbstractStorageBackend

_SEGMENT_RE = re.compile(r"^_hyper_(\d+)_(-?\d+)_chunk$")


@dataclass
class _Table:
    oid: int
    rows: List[Record] = field(default_factory=list)
    time_column: Optional[str] = None
    partition_seconds: Optional[int] = None
    compression: Optional[Tuple[str, Tuple[str, ...]]] = None
    compressed: Set[int] = field(default_factory=set)
    indexes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    trigger_buffer: Optional[str] = None

    def chunk_of(self, record: Record) -> int:
        assert self.time_column is not None and self.partition_seconds
        return getattr(record, self.time_column) // self.partition_seconds


def _key(record: Record, columns: Sequence[str]) -> Tuple[Any, ...]:
    return tuple(getattr(record, col) for col in columns)


def _in_range(record: Record, time_column: str, start: Optional[int], end: Optional[int]) -> bool:
    clock = getattr(record, time_column)
    if start is not None and clock < start:
        return False
    if end is not None and clock >= end:
        return False
    return True


class InMemoryBackend(AbstractStorageBackend):
    """
    Process-local StorageBackend.

    Parameters
    ----------
    now : callable, optional
        Clock used as the database's transaction time. Defaults to UTC now.
    config : mapping, optional
        Initial contents of the configuration store.
    """

    name: str = "memory"

    def __init__(
        self,
        now: Optional[Callable[[], datetime]] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._tables: Dict[str, _Table] = {}
        self._oids = itertools.count(1)
        self._state_json: Optional[str] = None
        self.config: Dict[str, Any] = dict(config or {})
        self._failures: DefaultDict[str, List[BaseException]] = defaultdict(list)
        self._hooks: DefaultDict[str, List[Callable[[], None]]] = defaultdict(list)
        self.compression_log: List[Tuple[str, int]] = []

    # ------------------------------------------------------------------
    # Test and application helpers
    # ------------------------------------------------------------------

    def create_table(self, name: str, records: Iterable[Record] = ()) -> None:
        with self._lock:
            if name in self._tables:
                raise StorageError(f'relation "{name}" already exists')
            self._tables[name] = _Table(oid=next(self._oids), rows=list(records))

    def insert(self, name: str, records: Iterable[Record]) -> None:
        """
        Application write path. Fires the table's insert trigger; if the
        trigger cannot write its buffer the whole insert fails.
        """
        rows = list(records)
        with self._lock:
            table = self._table(name)
            buffer = None
            if table.trigger_buffer is not None:
                if table.trigger_buffer not in self._tables:
                    raise StorageError(
                        f'relation "{table.trigger_buffer}" does not exist (insert trigger on "{name}")'
                    )
                buffer = self._tables[table.trigger_buffer]
            table.rows.extend(rows)
            if buffer is not None:
                buffer.rows.extend(rows)

    def rows(self, name: str) -> List[Record]:
        with self._lock:
            return list(self._table(name).rows)

    def table_names(self) -> List[str]:
        with self._lock:
            return sorted(self._tables)

    def compressed_ranges(self, name: str) -> List[Tuple[int, int]]:
        """Clock ranges ``[start, end)`` of the compressed segments of ``name``."""
        with self._lock:
            table = self._table(name)
            size = table.partition_seconds or 0
            return [(k * size, (k + 1) * size) for k in sorted(table.compressed)]

    def indexes(self, name: str) -> Dict[str, Tuple[str, ...]]:
        with self._lock:
            return dict(self._table(name).indexes)

    def inject_failure(
        self, operation: str, error: Optional[BaseException] = None, times: int = 1
    ) -> None:
        """Make the next ``times`` calls of ``operation`` fail before committing."""
        for _ in range(times):
            self._failures[operation].append(
                error or StorageError(f"injected failure in {operation}")
            )

    def add_hook(self, operation: str, callback: Callable[[], None]) -> None:
        """Run ``callback`` when ``operation`` starts, before the lock is taken."""
        self._hooks[operation].append(callback)

    def _run_hooks(self, operation: str) -> None:
        for callback in list(self._hooks.get(operation, ())):
            callback()

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _table(self, name: str) -> _Table:
        try:
            return self._tables[name]
        except KeyError:
            raise StorageError(f'relation "{name}" does not exist') from None

    def _table_by_oid(self, oid: int) -> _Table:
        for table in self._tables.values():
            if table.oid == oid:
                return table
        raise StorageError(f"no table with oid {oid}")

    # ------------------------------------------------------------------
    # State store
    # ------------------------------------------------------------------

    def load_state(self) -> Optional[MigrationState]:
        with self._lock:
            if self._state_json is None:
                return None
            return MigrationState.model_validate_json(self._state_json)

    def save_state(self, state: MigrationState) -> None:
        with self._lock:
            self._maybe_fail("save_state")
            state.touch()
            self._state_json = state.model_dump_json()

    def clear_state(self) -> None:
        with self._lock:
            self._state_json = None

    # ------------------------------------------------------------------
    # Table identity
    # ------------------------------------------------------------------

    def table_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._tables

    def count_rows(
        self,
        name: str,
        time_column: Optional[str] = None,
        start_clock: Optional[int] = None,
        end_clock: Optional[int] = None,
    ) -> int:
        with self._lock:
            rows = self._table(name).rows
            if time_column is None:
                return len(rows)
            return sum(1 for r in rows if _in_range(r, time_column, start_clock, end_clock))

    def drop_table(self, name: str) -> None:
        with self._lock:
            self._tables.pop(name, None)

    # ------------------------------------------------------------------
    # Write interceptor
    # ------------------------------------------------------------------

    def activate_interceptor(self, source: str, buffer: str) -> datetime:
        self._run_hooks("activate_interceptor")
        with self._lock:
            table = self._table(source)
            if buffer in self._tables:
                raise StorageError(f'relation "{buffer}" already exists')
            self._maybe_fail("activate_interceptor")
            self._tables[buffer] = _Table(oid=next(self._oids))
            table.trigger_buffer = buffer
            return self._now()

    def deactivate_interceptor(self, source: str) -> None:
        with self._lock:
            self._table(source).trigger_buffer = None

    def interceptor_active(self, source: str) -> bool:
        with self._lock:
            table = self._tables.get(source)
            return table is not None and table.trigger_buffer is not None

    # ------------------------------------------------------------------
    # Target storage capability
    # ------------------------------------------------------------------

    def create_partitioned_table(self, name: str, like: str, time_column: str) -> None:
        with self._lock:
            self._table(like)
            if name in self._tables:
                raise StorageError(f'relation "{name}" already exists')
            self._tables[name] = _Table(
                oid=next(self._oids),
                time_column=time_column,
                partition_seconds=int(timedelta(days=7).total_seconds()),
            )

    def set_partition_interval(self, name: str, interval: timedelta) -> None:
        with self._lock:
            table = self._table(name)
            if table.time_column is None:
                raise StorageError(f'table "{name}" is not partitioned')
            seconds = int(interval.total_seconds())
            if seconds <= 0:
                raise StorageError("partition interval must be positive")
            table.partition_seconds = seconds

    def enable_compression(self, name: str, segment_by: str, order_by: Sequence[str]) -> None:
        with self._lock:
            table = self._table(name)
            if table.time_column is None:
                raise StorageError(f'table "{name}" is not partitioned')
            table.compression = (segment_by, tuple(order_by))

    def copy_rows(
        self, source: str, target: str, time_column: str, start_clock: int, end_clock: int
    ) -> int:
        self._run_hooks("copy_rows")
        with self._lock:
            src = self._table(source)
            dst = self._table(target)
            kept = [r for r in dst.rows if not _in_range(r, time_column, start_clock, end_clock)]
            copied = [r for r in src.rows if _in_range(r, time_column, start_clock, end_clock)]
            self._maybe_fail("copy_rows")
            dst.rows = kept + copied
            return len(copied)

    def list_segments(self, name: str, older_than_clock: int) -> List[str]:
        with self._lock:
            table = self._table(name)
            if table.time_column is None or not table.partition_seconds:
                raise StorageError(f'table "{name}" is not a hypertable')
            size = table.partition_seconds
            chunks = {table.chunk_of(r) for r in table.rows}
            return [
                f"_hyper_{table.oid}_{k}_chunk"
                for k in sorted(chunks)
                if (k + 1) * size <= older_than_clock
            ]

    def compress_segment(self, segment_id: str, if_not_compressed: bool = True) -> bool:
        self._run_hooks("compress_segment")
        match = _SEGMENT_RE.match(segment_id)
        if match is None:
            raise StorageError(f'"{segment_id}" is not a chunk')
        oid, chunk = int(match.group(1)), int(match.group(2))
        with self._lock:
            table = self._table_by_oid(oid)
            if table.compression is None:
                raise StorageError("compression not enabled on hypertable")
            if chunk in table.compressed:
                if if_not_compressed:
                    return False
                raise StorageError(f'chunk "{segment_id}" is already compressed')
            self._maybe_fail("compress_segment")
            table.compressed.add(chunk)
            assert table.partition_seconds is not None
            self.compression_log.append((segment_id, (chunk + 1) * table.partition_seconds))
            return True

    def create_index(self, name: str, columns: Sequence[str]) -> str:
        with self._lock:
            table = self._table(name)
            index_name = f"{name}_{'_'.join(columns)}_idx"
            self._maybe_fail("create_index")
            table.indexes.setdefault(index_name, tuple(columns))
            return index_name

    # ------------------------------------------------------------------
    # Configuration store
    # ------------------------------------------------------------------

    def read_config(self, keys: Sequence[str]) -> Dict[str, Any]:
        with self._lock:
            return {key: self.config.get(key) for key in keys}

    # ------------------------------------------------------------------
    # Cutover
    # ------------------------------------------------------------------

    def _acquire(self, lock_timeout_ms: int) -> None:
        timeout = lock_timeout_ms / 1000.0 if lock_timeout_ms > 0 else -1
        if not self._lock.acquire(timeout=timeout):
            raise StorageError("canceling statement due to lock timeout")

    def swap_tables(
        self,
        names: TableNames,
        config_updates: Mapping[str, Any],
        lock_timeout_ms: int,
        state: MigrationState,
    ) -> None:
        self._run_hooks("swap_tables")
        self._acquire(lock_timeout_ms)
        try:
            source = self._table(names.source)
            target = self._table(names.target)
            if names.old in self._tables:
                raise StorageError(f'relation "{names.old}" already exists')
            tables = dict(self._tables)
            del tables[names.source]
            del tables[names.target]
            tables[names.old] = source
            tables[names.source] = target
            config = dict(self.config)
            config.update(config_updates)
            state.touch()
            state_json = state.model_dump_json()
            self._maybe_fail("swap_tables")
            self._tables = tables
            self.config = config
            self._state_json = state_json
        finally:
            self._lock.release()

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
        self._run_hooks("drain_buffer")
        with self._lock:
            buffered = self._table(buffer).rows
            live_table = self._table(live)
            present = {
                _key(r, key_columns)
                for r in live_table.rows
                if _in_range(r, time_column, dedupe_start_clock, dedupe_end_clock)
            }
            appended = [
                r
                for r in buffered
                if not (
                    _in_range(r, time_column, dedupe_start_clock, dedupe_end_clock)
                    and _key(r, key_columns) in present
                )
            ]
            state.rows_drained = len(appended)
            state.touch()
            state_json = state.model_dump_json()
            self._maybe_fail("drain_buffer")
            live_table.rows = live_table.rows + appended
            del self._tables[buffer]
            self._state_json = state_json
            return len(appended)

    def rollback_swap(
        self,
        names: TableNames,
        parked_name: str,
        config_restore: Mapping[str, Any],
        key_columns: Sequence[str],
        lock_timeout_ms: int,
    ) -> int:
        self._acquire(lock_timeout_ms)
        try:
            migrated = self._table(names.source)
            old = self._table(names.old)
            if parked_name in self._tables:
                raise StorageError(f'relation "{parked_name}" already exists')
            present = {_key(r, key_columns) for r in old.rows}
            carried = [
                r
                for r in migrated.rows
                if _key(r, key_columns) not in present
            ]
            tables = dict(self._tables)
            del tables[names.old]
            tables[parked_name] = migrated
            tables[names.source] = old
            config = dict(self.config)
            config.update(config_restore)
            self._maybe_fail("rollback_swap")
            old.rows = old.rows + carried
            self._tables = tables
            self.config = config
            self._state_json = None
            return len(carried)
        finally:
            self._lock.release()


__all__ = ["InMemoryBackend"]
