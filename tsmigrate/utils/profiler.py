"""
Profiling utilities for tsmigrate.

Times the long-running steps of a migration (window copies, compaction runs,
the drain) so progress lines can report durations and throughput:
- Wall-clock time (perf_counter) and the wall-clock start instant
- CPU usage of the coordinating process (psutil)
- Resident memory at the end of the block (psutil)

Usage examples:
    from tsmigrate.utils.profiler import profile_block

    with profile_block("copy:2") as stats:
        rows = copier.copy_window(window)

    log.info(f"copied {rows} rows in {stats.duration_seconds:.2f}s")
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    started_at: Optional[datetime] = field(default=None)
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    rss_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)

    def throughput(self, rows: int) -> float:
        """Rows per second over the measured block, 0.0 when nothing was timed."""
        return rows / self.duration_seconds if self.duration_seconds > 0 else 0.0


@contextlib.contextmanager
def profile_block(label: str) -> Generator[ProfileStats, None, None]:
    """
    Context manager to time a block of code.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.

    Notes
    -----
    Stats are filled in even when the block raises, so a failed step can still
    report how long it ran before failing.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    # CPU percent needs a priming call
    process.cpu_percent(interval=None)

    stats.started_at = datetime.now(timezone.utc)
    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        stats.cpu_percent = process.cpu_percent(interval=None)
        stats.rss_bytes = process.memory_info().rss


__all__ = ["ProfileStats", "profile_block"]
