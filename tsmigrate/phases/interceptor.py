"""
Write interceptor: tees every insert on the live table into the buffer.

The tee runs inside the writer's own transaction (a row-level AFTER INSERT
trigger on TimescaleDB), so a row lands in both tables or in neither.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.utils.logging import get_logger

log = get_logger(__name__)


def ceil_to_second(moment: datetime) -> datetime:
    """Round up to the next whole second; StartTime is always whole seconds."""
    if moment.microsecond == 0:
        return moment
    return moment.replace(microsecond=0) + timedelta(seconds=1)


class WriteInterceptor:
    """Installs and removes the buffer tee on a source table."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend

    def activate(self, source: str, buffer: str) -> datetime:
        """
        Create ``buffer`` and start forwarding inserts on ``source`` to it.

        Returns StartTime: the activation instant rounded up to the whole
        second. Rows stamped inside the activating second are therefore
        copied by the bulk copier; if they also reach the buffer the drain
        skips them.
        """
        activated_at = self.backend.activate_interceptor(source, buffer)
        start_time = ceil_to_second(activated_at)
        log.info(
            f"[INTERCEPTOR] {source} -> {buffer} active",
            extra={"source": source, "buffer": buffer, "start_time": start_time.isoformat()},
        )
        return start_time

    def deactivate(self, source: str) -> None:
        self.backend.deactivate_interceptor(source)
        log.info(f"[INTERCEPTOR] removed from {source}", extra={"source": source})

    def is_active(self, source: str) -> bool:
        return self.backend.interceptor_active(source)


__all__ = ["WriteInterceptor", "ceil_to_second"]
