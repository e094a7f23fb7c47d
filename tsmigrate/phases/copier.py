"""
Bulk copier: moves historical rows into the target one window at a time.

A window copy first clears the window's range in the target and then inserts
the source rows, so re-running a partially copied window never duplicates
data.
"""

from __future__ import annotations

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import MigrationWindow
from tsmigrate.exceptions import CopyError, StorageError
from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.utils.logging import get_logger
from tsmigrate.utils.retry import retrying

log = get_logger(__name__)


class BulkCopier:
    def __init__(self, backend: StorageBackend, config: MigrationConfig) -> None:
        self.backend = backend
        self.config = config

    def prepare_target(self, source: str, target: str) -> None:
        """
        Create the partitioned target shaped like ``source`` and apply the
        partition interval and compression layout.

        Every step is safe to repeat, so a crash halfway through preparation is
        finished off on the next run.
        """
        cfg = self.config
        try:
            if not self.backend.table_exists(target):
                self.backend.create_partitioned_table(target, like=source, time_column=cfg.time_column)
            self.backend.set_partition_interval(target, cfg.partition_interval)
            self.backend.enable_compression(target, cfg.segment_by, cfg.order_by)
        except StorageError as exc:
            raise CopyError(f"could not prepare target {target}: {exc}") from exc
        log.info(
            f"[TARGET] {target} ready",
            extra={
                "target": target,
                "partition_interval": str(cfg.partition_interval),
                "segment_by": cfg.segment_by,
                "order_by": list(cfg.order_by),
            },
        )

    def copy_window(self, window: MigrationWindow, source: str, target: str) -> int:
        """
        Copy every source row with time in ``[window.start, window.end)``.

        Transient storage failures are retried in place; once the retry budget
        is spent a CopyError is raised and the window stays uncopied.

        Returns
        -------
        int
            Number of rows inserted into the target.
        """
        cfg = self.config
        try:
            for attempt in retrying(cfg.retry_attempts, cfg.retry_backoff_seconds, (StorageError,)):
                with attempt:
                    rows = self.backend.copy_rows(
                        source, target, cfg.time_column, window.start_clock, window.end_clock
                    )
        except StorageError as exc:
            raise CopyError(
                f"copy of window {window.index} {window.describe()} failed: {exc}",
                window_index=window.index,
            ) from exc
        return rows


__all__ = ["BulkCopier"]
