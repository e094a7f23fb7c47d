"""
Cutover coordinator: swaps the migrated table in and replays the buffer.

The swap renames live -> old and target -> live and flips the configuration
flags in one transaction, persisting the DRAINING marker alongside. After it
commits the tee is removed from the old table and the buffered rows are
appended to the new live table, again in a single transaction that also
records COMPLETE.
"""

from __future__ import annotations

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import MigrationPhase, MigrationState
from tsmigrate.exceptions import DrainError, MigrationStateError, StorageError, SwapError
from tsmigrate.phases.interceptor import WriteInterceptor
from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.utils.logging import get_logger
from tsmigrate.utils.profiler import profile_block
from tsmigrate.utils.retry import retrying

log = get_logger(__name__)


class CutoverCoordinator:
    def __init__(
        self,
        backend: StorageBackend,
        interceptor: WriteInterceptor,
        config: MigrationConfig,
    ) -> None:
        self.backend = backend
        self.interceptor = interceptor
        self.config = config

    def swap(self, state: MigrationState) -> MigrationState:
        """
        Atomically exchange table identities and apply the cutover config.

        The previous values of the configuration keys are captured first so a
        rollback can restore them.

        Returns
        -------
        MigrationState
            The committed state, in phase DRAINING.

        Raises
        ------
        SwapError
            If the transaction did not commit. Nothing was renamed and the
            migration can be swapped again.
        """
        names = state.names
        cfg = self.config
        try:
            snapshot = self.backend.read_config(list(cfg.cutover_config)) if cfg.cutover_config else {}
            committed = state.model_copy(deep=True)
            committed.phase = MigrationPhase.DRAINING
            committed.config_snapshot = snapshot
            committed.last_error = None
            with profile_block("swap") as stats:
                self.backend.swap_tables(names, cfg.cutover_config, cfg.lock_timeout_ms, committed)
        except StorageError as exc:
            raise SwapError(f"swap of {names.source} and {names.target} rolled back: {exc}") from exc

        log.info(
            f"[SWAP] {names.source} -> {names.old}, {names.target} -> {names.source}",
            extra={
                "source": names.source,
                "old": names.old,
                "config": dict(cfg.cutover_config),
                "duration": round(stats.duration_seconds, 3),
            },
        )
        return committed

    def drain(self, state: MigrationState) -> MigrationState:
        """
        Stop the tee and append the buffered rows to the live table.

        Buffered rows that fall inside the copied range and already exist in
        the live table were captured by both the copier and the tee; they are
        skipped. The append, the buffer drop and the COMPLETE marker commit
        together, and a failed drain is retried in full.
        """
        if state.plan is None:
            raise MigrationStateError("cannot drain a migration without a plan")
        names = state.names
        cfg = self.config
        plan = state.plan

        try:
            if self.interceptor.is_active(names.old):
                self.interceptor.deactivate(names.old)
            committed = state.model_copy(deep=True)
            committed.phase = MigrationPhase.COMPLETE
            committed.last_error = None
            with profile_block("drain") as stats:
                for attempt in retrying(cfg.retry_attempts, cfg.retry_backoff_seconds, (StorageError,)):
                    with attempt:
                        rows = self.backend.drain_buffer(
                            names.buffer,
                            names.source,
                            cfg.time_column,
                            cfg.key_columns,
                            plan.start_clock,
                            plan.end_clock,
                            committed,
                        )
        except StorageError as exc:
            raise DrainError(f"drain of {names.buffer} into {names.source} failed: {exc}") from exc

        committed.rows_drained = rows
        log.info(
            f"[DRAIN] {rows} buffered rows appended to {names.source}",
            extra={
                "buffer": names.buffer,
                "rows": rows,
                "duration": round(stats.duration_seconds, 3),
                "throughput_rps": round(stats.throughput(rows), 2),
            },
        )
        return committed

    def rollback(self, state: MigrationState) -> int:
        """
        Reverse a completed cutover: the old table becomes live again and the
        migrated table is parked under the target name.

        Every row of the migrated table that the old table does not have is
        carried over, whatever its clock, and the configuration flags are
        restored from the snapshot taken before the swap. The migration state
        is cleared in the same transaction.
        """
        if state.plan is None:
            raise MigrationStateError("cannot roll back a migration without a plan")
        names = state.names
        cfg = self.config
        try:
            carried = self.backend.rollback_swap(
                names,
                parked_name=names.target,
                config_restore=state.config_snapshot,
                key_columns=cfg.key_columns,
                lock_timeout_ms=cfg.lock_timeout_ms,
            )
        except StorageError as exc:
            raise SwapError(f"rollback of {names.source} rolled back: {exc}") from exc
        log.info(
            f"[ROLLBACK] {names.old} -> {names.source}, {names.source} -> {names.target}",
            extra={"source": names.source, "carried_rows": carried},
        )
        return carried


__all__ = ["CutoverCoordinator"]
