from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import (
    MigrationPhase,
    MigrationState,
    TableNames,
    WindowState,
    from_clock,
    to_clock,
)
from tsmigrate.phases.planner import plan_windows
from tsmigrate.storage.memory import InMemoryBackend

START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

LIFECYCLE = [
    MigrationPhase.IDLE,
    MigrationPhase.PLANNING,
    MigrationPhase.COPYING,
    MigrationPhase.COMPRESSING,
    MigrationPhase.INDEXING,
    MigrationPhase.SWAPPING,
    MigrationPhase.DRAINING,
    MigrationPhase.COMPLETE,
]


def test_lifecycle_advances_one_phase_at_a_time() -> None:
    for current, following in zip(LIFECYCLE, LIFECYCLE[1:]):
        assert current.can_transition_to(following)
        assert not following.can_transition_to(current)
    assert not MigrationPhase.COPYING.can_transition_to(MigrationPhase.SWAPPING)


@pytest.mark.parametrize("phase", LIFECYCLE[:-1])
def test_failed_is_reachable_from_every_non_terminal_phase(phase: MigrationPhase) -> None:
    assert phase.can_transition_to(MigrationPhase.FAILED)


@pytest.mark.parametrize("phase", [MigrationPhase.COMPLETE, MigrationPhase.FAILED])
def test_terminal_phases_go_nowhere(phase: MigrationPhase) -> None:
    assert phase.is_terminal
    assert not any(phase.can_transition_to(other) for other in MigrationPhase)


def test_pre_swap_phases() -> None:
    assert MigrationPhase.SWAPPING.is_pre_swap
    assert not MigrationPhase.DRAINING.is_pre_swap
    assert not MigrationPhase.COMPLETE.is_pre_swap


def test_window_states_that_count_as_copied() -> None:
    assert not WindowState.PLANNED.is_copied
    assert not WindowState.COPYING.is_copied
    assert WindowState.COPIED.is_copied
    assert WindowState.COMPRESSING.is_copied
    assert WindowState.COMPRESSED.is_copied


def test_clock_conversion_floors_to_whole_seconds() -> None:
    assert to_clock(START) == 1709294400
    assert to_clock(START.replace(microsecond=999_999)) == 1709294400
    assert from_clock(1709294400) == START


def test_table_names_follow_suffixes() -> None:
    names = TableNames.for_source("history_uint")

    assert names.target == "history_uint_new"
    assert names.buffer == "history_uint_tmp"
    assert names.old == "history_uint_old"
    assert MigrationConfig(buffer_suffix="_buf").table_names("h").buffer == "h_buf"


def test_key_columns_are_segment_by_then_order_by() -> None:
    assert MigrationConfig().key_columns == ("itemid", "clock", "ns")
    assert MigrationConfig(order_by=("itemid", "clock")).key_columns == ("itemid", "clock")


def test_state_survives_the_state_store() -> None:
    backend = InMemoryBackend()
    plan = plan_windows(START)
    state = MigrationState(
        names=TableNames.for_source("history_uint"),
        phase=MigrationPhase.COPYING,
        plan=plan.replace_window(plan.windows[0].with_state(WindowState.COPIED, rows_copied=42)),
        config_snapshot={"db_extension": ""},
    )

    backend.save_state(state)
    loaded = backend.load_state()

    assert loaded is not None
    assert loaded.phase is MigrationPhase.COPYING
    assert loaded.plan == state.plan
    assert loaded.start_time == START
    assert loaded.plan.windows[0].rows_copied == 42
    backend.clear_state()
    assert backend.load_state() is None
