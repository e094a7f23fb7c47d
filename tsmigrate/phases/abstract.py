"""
Result contract shared by the migration phases.

Phase components return a PhaseResult so the orchestrator can log, report and
persist every step the same way.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TypedDict


class PhaseResult(TypedDict, total=False):
    """
    Metrics for one executed step (a window copy, a compaction run, ...).

    Fields are optional; the reporter tolerates missing values.
    """

    step: str
    rows: int
    duration_seconds: float
    throughput_rows_per_sec: float
    cpu_percent: Optional[float]
    rss_bytes: Optional[int]
    error: Optional[str]
    notes: Optional[str]
    extra: Dict[str, Any]


__all__ = ["PhaseResult"]
