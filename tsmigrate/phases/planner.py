"""
Segment planner: splits the lookback horizon into copy windows.

The plan is a pure function of StartTime and the window configuration, so a
restarted migration recomputes exactly the windows it was working on.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import MigrationPlan, MigrationWindow
from tsmigrate.exceptions import MigrationStateError, PlanningError

_ZERO = timedelta(0)


def _whole_seconds(value: timedelta) -> bool:
    return value.microseconds == 0


def plan_windows(
    start_time: datetime,
    window_size: timedelta = timedelta(weeks=1),
    horizon: timedelta = timedelta(weeks=4),
    safety_margin: timedelta = timedelta(days=1),
) -> MigrationPlan:
    """
    Tile ``[start_time - horizon, start_time)`` with windows, oldest first.

    Every window is exactly ``window_size`` wide except the newest one, which
    is cut short at ``start_time`` when the horizon is not a multiple of the
    window size.

    Raises
    ------
    PlanningError
        If the configuration cannot produce a plan.
    """
    validate_window_config(window_size, horizon, safety_margin)
    if start_time.tzinfo is None:
        raise PlanningError("StartTime must be timezone-aware")
    if start_time.microsecond:
        raise PlanningError("StartTime must fall on a whole second")

    windows: List[MigrationWindow] = []
    cursor = start_time - horizon
    while cursor < start_time:
        end = min(cursor + window_size, start_time)
        windows.append(MigrationWindow(index=len(windows), start=cursor, end=end))
        cursor = end

    return MigrationPlan(
        start_time=start_time,
        window_size=window_size,
        horizon=horizon,
        safety_margin=safety_margin,
        windows=tuple(windows),
    )


def validate_window_config(
    window_size: timedelta, horizon: timedelta, safety_margin: timedelta
) -> None:
    if window_size <= _ZERO:
        raise PlanningError(f"window size must be positive, got {window_size}")
    if horizon <= _ZERO:
        raise PlanningError(f"horizon must be positive, got {horizon}")
    if safety_margin < _ZERO:
        raise PlanningError(f"safety margin cannot be negative, got {safety_margin}")
    for label, value in (("window size", window_size), ("horizon", horizon)):
        if not _whole_seconds(value):
            raise PlanningError(f"{label} must be a whole number of seconds, got {value}")


class SegmentPlanner:
    """
    Plans and re-verifies window plans for one MigrationConfig.

    The configuration is validated on construction, before anything touches
    the database.
    """

    def __init__(self, config: MigrationConfig) -> None:
        validate_window_config(config.window_size, config.horizon, config.safety_margin)
        if config.partition_interval <= _ZERO:
            raise PlanningError(
                f"partition interval must be positive, got {config.partition_interval}"
            )
        self.config = config

    def plan(self, start_time: datetime) -> MigrationPlan:
        return plan_windows(
            start_time,
            window_size=self.config.window_size,
            horizon=self.config.horizon,
            safety_margin=self.config.safety_margin,
        )

    def verify(self, plan: MigrationPlan) -> MigrationPlan:
        """
        Recompute a persisted plan from its own StartTime and parameters and
        check the window bounds still agree.
        """
        fresh = plan_windows(
            plan.start_time,
            window_size=plan.window_size,
            horizon=plan.horizon,
            safety_margin=plan.safety_margin,
        )
        if len(fresh.windows) != len(plan.windows) or not all(
            a.same_bounds(b) for a, b in zip(fresh.windows, plan.windows)
        ):
            raise MigrationStateError(
                "persisted window plan does not match the plan recomputed from its StartTime"
            )
        return plan


__all__ = ["SegmentPlanner", "plan_windows", "validate_window_config"]
