"""
Domain models for tsmigrate.

Defines the row shape being migrated, the time windows the history is copied
in, the frozen plan derived from StartTime, and the persisted state that lets a
migration resume after a crash.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


def to_clock(moment: datetime) -> int:
    """Convert an aware datetime to integer epoch seconds (floor)."""
    return math.floor(moment.timestamp())


def from_clock(clock: int) -> datetime:
    return datetime.fromtimestamp(clock, tz=timezone.utc)


class Record(BaseModel):
    """
    Representation of a single row in a history table.

    The value is carried through untouched; only the key columns are ever
    inspected by the migration.
    """

    itemid: int = Field(..., description="Item the sample belongs to (segment-by key).")
    clock: int = Field(..., description="Sample timestamp in epoch seconds.")
    value: Any = Field(..., description="Opaque sample value.")
    ns: int = Field(0, description="Nanosecond offset within the second.")

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }


class WindowState(str, Enum):
    PLANNED = "planned"
    COPYING = "copying"
    COPIED = "copied"
    COMPRESSING = "compressing"
    COMPRESSED = "compressed"

    @property
    def is_copied(self) -> bool:
        return self in (WindowState.COPIED, WindowState.COMPRESSING, WindowState.COMPRESSED)


class MigrationPhase(str, Enum):
    """
    Migration lifecycle phases.

    State machine transitions:
        IDLE -> PLANNING -> COPYING -> COMPRESSING -> INDEXING
             -> SWAPPING -> DRAINING -> COMPLETE
        Any non-terminal phase ------> FAILED
    """

    IDLE = "idle"
    PLANNING = "planning"
    COPYING = "copying"
    COMPRESSING = "compressing"
    INDEXING = "indexing"
    SWAPPING = "swapping"
    DRAINING = "draining"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationPhase.COMPLETE, MigrationPhase.FAILED)

    @property
    def is_pre_swap(self) -> bool:
        """Whether the source table still carries the live identity."""
        return self in (
            MigrationPhase.IDLE,
            MigrationPhase.PLANNING,
            MigrationPhase.COPYING,
            MigrationPhase.COMPRESSING,
            MigrationPhase.INDEXING,
            MigrationPhase.SWAPPING,
        )

    def can_transition_to(self, target: MigrationPhase) -> bool:
        if self.is_terminal:
            return False
        if target is MigrationPhase.FAILED:
            return True
        return _NEXT_PHASE.get(self) is target


_NEXT_PHASE: Dict[MigrationPhase, MigrationPhase] = {
    MigrationPhase.IDLE: MigrationPhase.PLANNING,
    MigrationPhase.PLANNING: MigrationPhase.COPYING,
    MigrationPhase.COPYING: MigrationPhase.COMPRESSING,
    MigrationPhase.COMPRESSING: MigrationPhase.INDEXING,
    MigrationPhase.INDEXING: MigrationPhase.SWAPPING,
    MigrationPhase.SWAPPING: MigrationPhase.DRAINING,
    MigrationPhase.DRAINING: MigrationPhase.COMPLETE,
}


class MigrationWindow(BaseModel):
    """
    A half-open time range ``[start, end)`` of history copied as one unit.
    """

    index: int = Field(..., description="Position in the plan, 0 is the oldest window.")
    start: datetime
    end: datetime
    state: WindowState = WindowState.PLANNED
    rows_copied: Optional[int] = None

    model_config = {"frozen": True}

    @property
    def start_clock(self) -> int:
        return to_clock(self.start)

    @property
    def end_clock(self) -> int:
        return to_clock(self.end)

    @property
    def width(self) -> timedelta:
        return self.end - self.start

    def with_state(self, state: WindowState, **updates: Any) -> MigrationWindow:
        return self.model_copy(update={"state": state, **updates})

    def same_bounds(self, other: MigrationWindow) -> bool:
        return (self.index, self.start, self.end) == (other.index, other.start, other.end)

    def describe(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


class MigrationPlan(BaseModel):
    """
    The frozen window plan derived from a single StartTime.

    Every boundary is computed from ``start_time`` once; the plan is stored with
    the migration state and never recomputed from the wall clock.
    """

    start_time: datetime
    window_size: timedelta
    horizon: timedelta
    safety_margin: timedelta
    windows: Tuple[MigrationWindow, ...]

    model_config = {"frozen": True}

    @property
    def start_clock(self) -> int:
        return self.windows[0].start_clock

    @property
    def end_clock(self) -> int:
        return self.windows[-1].end_clock

    @property
    def final_window(self) -> MigrationWindow:
        return self.windows[-1]

    def compression_cutoff(self, window: MigrationWindow) -> Optional[datetime]:
        """
        Cutoff to compress at once ``window`` is copied, or None for the final
        window, which stays uncompressed for late writes.
        """
        if window.index == self.final_window.index:
            return None
        return window.end - self.safety_margin

    def replace_window(self, window: MigrationWindow) -> MigrationPlan:
        windows = list(self.windows)
        windows[window.index] = window
        return self.model_copy(update={"windows": tuple(windows)})


class TableNames(BaseModel):
    """The identities bound to one dataset across the migration."""

    source: str
    target: str
    buffer: str
    old: str

    model_config = {"frozen": True}

    @classmethod
    def for_source(
        cls,
        source: str,
        target_suffix: str = "_new",
        buffer_suffix: str = "_tmp",
        old_suffix: str = "_old",
    ) -> TableNames:
        return cls(
            source=source,
            target=f"{source}{target_suffix}",
            buffer=f"{source}{buffer_suffix}",
            old=f"{source}{old_suffix}",
        )


class MigrationState(BaseModel):
    """
    Persisted phase markers for the single active migration.
    """

    names: TableNames
    phase: MigrationPhase = MigrationPhase.IDLE
    plan: Optional[MigrationPlan] = None
    failed_phase: Optional[MigrationPhase] = None
    last_error: Optional[str] = None
    compressed_before: Optional[datetime] = None
    uncompressed_segments: List[str] = Field(default_factory=list)
    index_name: Optional[str] = None
    config_snapshot: Dict[str, Any] = Field(default_factory=dict)
    rows_drained: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def start_time(self) -> Optional[datetime]:
        return self.plan.start_time if self.plan is not None else None

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


__all__ = [
    "MigrationPhase",
    "MigrationPlan",
    "MigrationState",
    "MigrationWindow",
    "Record",
    "TableNames",
    "WindowState",
    "from_clock",
    "to_clock",
]
