from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import WindowState
from tsmigrate.exceptions import MigrationStateError, PlanningError
from tsmigrate.phases.planner import SegmentPlanner, plan_windows

START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WEEK = timedelta(weeks=1)
DAY = timedelta(days=1)

EXPECTED_WEEKLY_WINDOWS = 4
EXPECTED_PARTIAL_WINDOWS = 2


def test_four_week_horizon_gives_four_weekly_windows_oldest_first() -> None:
    plan = plan_windows(START, window_size=WEEK, horizon=4 * WEEK, safety_margin=DAY)

    assert len(plan.windows) == EXPECTED_WEEKLY_WINDOWS
    assert [w.index for w in plan.windows] == [0, 1, 2, 3]
    assert plan.windows[0].start == START - 4 * WEEK
    assert plan.windows[-1].end == START
    assert all(w.width == WEEK for w in plan.windows)
    assert all(w.state is WindowState.PLANNED for w in plan.windows)


def test_windows_are_contiguous_and_disjoint() -> None:
    plan = plan_windows(START, window_size=timedelta(hours=5), horizon=3 * DAY, safety_margin=DAY)

    for previous, current in zip(plan.windows, plan.windows[1:]):
        assert previous.end == current.start
    assert plan.start_clock == plan.windows[0].start_clock
    assert plan.end_clock == int(START.timestamp())


def test_final_window_is_partial_when_horizon_is_not_a_multiple() -> None:
    plan = plan_windows(START, window_size=WEEK, horizon=10 * DAY, safety_margin=DAY)

    assert len(plan.windows) == EXPECTED_PARTIAL_WINDOWS
    assert plan.windows[0].width == WEEK
    assert plan.windows[1].width == 3 * DAY
    assert plan.final_window.end == START


def test_compression_cutoff_lags_window_end_and_skips_final_window() -> None:
    plan = plan_windows(START, window_size=WEEK, horizon=4 * WEEK, safety_margin=DAY)

    assert plan.compression_cutoff(plan.windows[0]) == START - 3 * WEEK - DAY
    assert plan.compression_cutoff(plan.windows[2]) == START - WEEK - DAY
    assert plan.compression_cutoff(plan.final_window) is None


def test_plan_is_a_pure_function_of_start_time() -> None:
    first = plan_windows(START, window_size=WEEK, horizon=4 * WEEK, safety_margin=DAY)
    second = plan_windows(START, window_size=WEEK, horizon=4 * WEEK, safety_margin=DAY)

    assert first == second


@pytest.mark.parametrize(
    ("window_size", "horizon", "margin"),
    [
        (timedelta(0), 4 * WEEK, DAY),
        (-WEEK, 4 * WEEK, DAY),
        (WEEK, timedelta(0), DAY),
        (WEEK, 4 * WEEK, -DAY),
        (timedelta(seconds=1.5), 4 * WEEK, DAY),
    ],
)
def test_invalid_window_config_raises_planning_error(window_size, horizon, margin) -> None:
    with pytest.raises(PlanningError):
        plan_windows(START, window_size=window_size, horizon=horizon, safety_margin=margin)


def test_naive_start_time_is_rejected() -> None:
    with pytest.raises(PlanningError):
        plan_windows(START.replace(tzinfo=None))


def test_segment_planner_validates_config_on_construction() -> None:
    with pytest.raises(PlanningError):
        SegmentPlanner(MigrationConfig(window_size=timedelta(0)))
    with pytest.raises(PlanningError):
        SegmentPlanner(MigrationConfig(partition_interval=timedelta(0)))


def test_verify_accepts_a_persisted_plan_with_progress() -> None:
    planner = SegmentPlanner(MigrationConfig())
    plan = planner.plan(START)
    progressed = plan.replace_window(plan.windows[0].with_state(WindowState.COPIED, rows_copied=10))

    assert planner.verify(progressed) is progressed


def test_verify_rejects_tampered_bounds() -> None:
    planner = SegmentPlanner(MigrationConfig())
    plan = planner.plan(START)
    shifted = plan.windows[1].model_copy(update={"end": plan.windows[1].end + DAY})

    with pytest.raises(MigrationStateError):
        planner.verify(plan.replace_window(shifted))
