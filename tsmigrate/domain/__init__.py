"""
Domain package for tsmigrate.

Exports the row, window, plan and state models shared by the phases, the
storage backends and the orchestrator.
"""

from tsmigrate.domain.models import (
    MigrationPhase,
    MigrationPlan,
    MigrationState,
    MigrationWindow,
    Record,
    TableNames,
    WindowState,
    from_clock,
    to_clock,
)

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
