"""
tsmigrate - online migration of live time-series tables to TimescaleDB.

Converts an append-only history table (Zabbix ``history_uint`` style) into a
compressed hypertable while the application keeps writing to it:

- New writes are teed into a side buffer from the moment StartTime is fixed
- History before StartTime is copied window by window, oldest first
- Windows behind the copy are compressed as it advances
- The tables are swapped atomically, then the buffer is replayed

Every phase is persisted, so an interrupted migration resumes where it
stopped.
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from tsmigrate.config import MigrationConfig, Settings, get_settings
from tsmigrate.domain.models import (
    MigrationPhase,
    MigrationPlan,
    MigrationState,
    MigrationWindow,
    Record,
    TableNames,
    WindowState,
)
from tsmigrate.exceptions import (
    CompressionError,
    CopyError,
    DrainError,
    IndexBuildError,
    MigrationError,
    MigrationStateError,
    PlanningError,
    StorageError,
    SwapError,
)
from tsmigrate.orchestrator import MigrationOrchestrator
from tsmigrate.phases.planner import plan_windows
from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.storage.memory import InMemoryBackend
from tsmigrate.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "MigrationConfig",
    "Settings",
    "get_settings",
    # Domain
    "MigrationPhase",
    "MigrationPlan",
    "MigrationState",
    "MigrationWindow",
    "Record",
    "TableNames",
    "WindowState",
    # Errors
    "CompressionError",
    "CopyError",
    "DrainError",
    "IndexBuildError",
    "MigrationError",
    "MigrationStateError",
    "PlanningError",
    "StorageError",
    "SwapError",
    # Orchestration
    "MigrationOrchestrator",
    "plan_windows",
    # Storage
    "InMemoryBackend",
    "StorageBackend",
    # Logging
    "configure_logging",
    "get_logger",
]
