"""
Storage backend interfaces for tsmigrate.

The migration phases only ever talk to a StorageBackend: the live source
table, the side buffer, the partitioned/compressed target, the configuration
store and the persisted migration state all sit behind it. Concrete backends
(TimescaleDB, in-memory) implement the StorageBackend protocol; the
AbstractStorageBackend ABC is available for class-based implementations.
"""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from tsmigrate.domain.models import MigrationState, TableNames


@runtime_checkable
class MigrationStateStore(Protocol):
    """Durable home of the single active migration's phase markers."""

    def load_state(self) -> Optional[MigrationState]:
        ...

    def save_state(self, state: MigrationState) -> None:
        ...

    def clear_state(self) -> None:
        ...


@runtime_checkable
class StorageBackend(MigrationStateStore, Protocol):
    """
    Everything the migration needs from the database.

    Methods that change table identities (``swap_tables``, ``drain_buffer``,
    ``rollback_swap``) persist the given state in the same transaction, so the
    phase marker can never disagree with what actually committed.
    """

    # Table identity
    def table_exists(self, name: str) -> bool:
        ...

    def count_rows(
        self,
        name: str,
        time_column: Optional[str] = None,
        start_clock: Optional[int] = None,
        end_clock: Optional[int] = None,
    ) -> int:
        ...

    def drop_table(self, name: str) -> None:
        ...

    # Write interceptor
    def activate_interceptor(self, source: str, buffer: str) -> datetime:
        """
        Create ``buffer`` like ``source`` and tee every insert on ``source``
        into it. Returns the activation instant (StartTime) as seen by the
        database, captured in the activating transaction.
        """
        ...

    def deactivate_interceptor(self, source: str) -> None:
        ...

    def interceptor_active(self, source: str) -> bool:
        ...

    # Target storage capability
    def create_partitioned_table(self, name: str, like: str, time_column: str) -> None:
        ...

    def set_partition_interval(self, name: str, interval: timedelta) -> None:
        ...

    def enable_compression(self, name: str, segment_by: str, order_by: Sequence[str]) -> None:
        ...

    def copy_rows(
        self, source: str, target: str, time_column: str, start_clock: int, end_clock: int
    ) -> int:
        """Replace the ``[start_clock, end_clock)`` range of ``target`` with the source rows."""
        ...

    def list_segments(self, name: str, older_than_clock: int) -> List[str]:
        ...

    def compress_segment(self, segment_id: str, if_not_compressed: bool = True) -> bool:
        ...

    def create_index(self, name: str, columns: Sequence[str]) -> str:
        ...

    # Configuration store
    def read_config(self, keys: Sequence[str]) -> Dict[str, Any]:
        ...

    # Cutover
    def swap_tables(
        self,
        names: TableNames,
        config_updates: Mapping[str, Any],
        lock_timeout_ms: int,
        state: MigrationState,
    ) -> None:
        ...

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
        """
        Append the buffered rows to ``live`` and drop ``buffer`` in one
        transaction. Rows whose time falls in the dedupe range and whose key is
        already present in ``live`` are skipped.
        """
        ...

    def rollback_swap(
        self,
        names: TableNames,
        parked_name: str,
        config_restore: Mapping[str, Any],
        key_columns: Sequence[str],
        lock_timeout_ms: int,
    ) -> int:
        """
        Rename live -> ``parked_name`` and old -> live, restore the config
        values and copy over every row of the live table that the old table
        lacks. The migration state is cleared in the same transaction.
        """
        ...


class AbstractStorageBackend(abc.ABC):
    """
    Optional ABC helper for class-based backends.

    Subclasses implement the primitive operations; the state store trio is
    shared by both concrete backends.
    """

    name: str

    @abc.abstractmethod
    def load_state(self) -> Optional[MigrationState]:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def save_state(self, state: MigrationState) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def clear_state(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def table_exists(self, name: str) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def activate_interceptor(self, source: str, buffer: str) -> datetime:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    def copy_rows(
        self, source: str, target: str, time_column: str, start_clock: int, end_clock: int
    ) -> int:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def swap_tables(
        self,
        names: TableNames,
        config_updates: Mapping[str, Any],
        lock_timeout_ms: int,
        state: MigrationState,
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


__all__ = [
    "AbstractStorageBackend",
    "MigrationStateStore",
    "StorageBackend",
]
