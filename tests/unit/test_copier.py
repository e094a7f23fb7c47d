from __future__ import annotations

import pytest

from tests.conftest import SOURCE_TABLE, START_TIME
from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import Record
from tsmigrate.exceptions import CopyError
from tsmigrate.phases.copier import BulkCopier
from tsmigrate.phases.planner import plan_windows
from tsmigrate.storage.memory import InMemoryBackend

TARGET = "history_uint_new"
SAMPLES_PER_DAY = 4
ITEMS = 3
EXPECTED_ROWS_PER_WEEK = 7 * SAMPLES_PER_DAY * ITEMS


@pytest.fixture
def copier(seeded_backend: InMemoryBackend, migration_config: MigrationConfig) -> BulkCopier:
    copier = BulkCopier(seeded_backend, migration_config)
    copier.prepare_target(SOURCE_TABLE, TARGET)
    return copier


def _window(index: int):
    return plan_windows(START_TIME).windows[index]


def test_prepare_target_applies_partitioning_and_compression(
    seeded_backend: InMemoryBackend, copier: BulkCopier
) -> None:
    table = seeded_backend._tables[TARGET]

    assert table.time_column == "clock"
    assert table.partition_seconds == 86400
    assert table.compression == ("itemid", ("clock", "ns"))


def test_prepare_target_can_be_repeated(seeded_backend: InMemoryBackend, copier: BulkCopier) -> None:
    copier.prepare_target(SOURCE_TABLE, TARGET)

    assert seeded_backend.table_exists(TARGET)


def test_copy_window_copies_exactly_the_half_open_range(
    seeded_backend: InMemoryBackend, copier: BulkCopier
) -> None:
    window = _window(0)

    rows = copier.copy_window(window, SOURCE_TABLE, TARGET)

    copied = seeded_backend.rows(TARGET)
    assert rows == EXPECTED_ROWS_PER_WEEK
    assert len(copied) == rows
    assert all(window.start_clock <= r.clock < window.end_clock for r in copied)


def test_recopying_a_window_does_not_duplicate(
    seeded_backend: InMemoryBackend, copier: BulkCopier
) -> None:
    window = _window(1)
    copier.copy_window(window, SOURCE_TABLE, TARGET)

    again = copier.copy_window(window, SOURCE_TABLE, TARGET)

    assert again == EXPECTED_ROWS_PER_WEEK
    assert seeded_backend.count_rows(TARGET) == EXPECTED_ROWS_PER_WEEK


def test_recopy_clears_partial_output_of_the_window_only(
    seeded_backend: InMemoryBackend, copier: BulkCopier
) -> None:
    first, second = _window(0), _window(1)
    copier.copy_window(first, SOURCE_TABLE, TARGET)
    # leftover of an interrupted copy of the second window
    seeded_backend.insert(TARGET, [Record(itemid=999, clock=second.start_clock, value=0)])

    copier.copy_window(second, SOURCE_TABLE, TARGET)

    assert seeded_backend.count_rows(TARGET) == 2 * EXPECTED_ROWS_PER_WEEK
    assert all(r.itemid != 999 for r in seeded_backend.rows(TARGET))


def test_transient_failures_are_retried(seeded_backend: InMemoryBackend, copier: BulkCopier) -> None:
    seeded_backend.inject_failure("copy_rows", times=2)

    rows = copier.copy_window(_window(2), SOURCE_TABLE, TARGET)

    assert rows == EXPECTED_ROWS_PER_WEEK


def test_exhausted_retries_raise_copy_error(
    seeded_backend: InMemoryBackend, copier: BulkCopier, migration_config: MigrationConfig
) -> None:
    seeded_backend.inject_failure("copy_rows", times=migration_config.retry_attempts)

    with pytest.raises(CopyError) as excinfo:
        copier.copy_window(_window(3), SOURCE_TABLE, TARGET)

    assert excinfo.value.window_index == 3
    assert seeded_backend.count_rows(TARGET) == 0


def test_prepare_target_wraps_storage_errors(
    seeded_backend: InMemoryBackend, migration_config: MigrationConfig
) -> None:
    copier = BulkCopier(seeded_backend, migration_config)

    with pytest.raises(CopyError):
        copier.prepare_target("missing_table", TARGET)
