"""
Compactor: compresses target segments that are safely in the past.

Compression is requested for every segment older than a cutoff and skips the
ones already compressed, so the same cutoff can be applied any number of
times. A failing segment is retried on its own and never stops the others.
"""

from __future__ import annotations

from datetime import datetime
from typing import List

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import to_clock
from tsmigrate.exceptions import CompressionError, StorageError
from tsmigrate.phases.abstract import PhaseResult
from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.utils.logging import get_logger
from tsmigrate.utils.profiler import profile_block
from tsmigrate.utils.retry import retrying

log = get_logger(__name__)


class Compactor:
    def __init__(self, backend: StorageBackend, config: MigrationConfig) -> None:
        self.backend = backend
        self.config = config

    def compress(self, target: str, older_than: datetime) -> PhaseResult:
        """
        Compress every uncompressed segment of ``target`` lying entirely
        before ``older_than``.

        Raises
        ------
        CompressionError
            After all segments were attempted, listing the ones that still
            failed once their retries ran out.
        """
        cfg = self.config
        cutoff_clock = to_clock(older_than)

        try:
            for attempt in retrying(cfg.retry_attempts, cfg.retry_backoff_seconds, (StorageError,)):
                with attempt:
                    segments = self.backend.list_segments(target, cutoff_clock)
        except StorageError as exc:
            raise CompressionError(
                f"could not list segments of {target} older than {older_than.isoformat()}: {exc}",
                older_than=older_than,
            ) from exc

        compressed = 0
        failed: List[str] = []
        with profile_block(f"compress:{target}") as stats:
            for segment_id in segments:
                try:
                    for attempt in retrying(
                        cfg.retry_attempts, cfg.retry_backoff_seconds, (StorageError,)
                    ):
                        with attempt:
                            if self.backend.compress_segment(segment_id, if_not_compressed=True):
                                compressed += 1
                except StorageError as exc:
                    log.warning(
                        f"[COMPRESS] segment {segment_id} failed",
                        extra={"segment": segment_id, "error": str(exc)},
                    )
                    failed.append(segment_id)

        if failed:
            raise CompressionError(
                f"{len(failed)} of {len(segments)} segments of {target} older than "
                f"{older_than.isoformat()} could not be compressed",
                segment_ids=tuple(failed),
                older_than=older_than,
            )

        return PhaseResult(
            step=f"compress<{older_than.isoformat()}",
            rows=compressed,
            duration_seconds=stats.duration_seconds,
            notes=f"{compressed} of {len(segments)} segments newly compressed",
            extra={"segments": len(segments), "older_than": older_than.isoformat()},
        )


__all__ = ["Compactor"]
