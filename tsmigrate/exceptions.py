"""
Exception hierarchy for tsmigrate.

Exception Hierarchy:
    MigrationError (base)
    +-- StorageError          backend failure (wrapped by the phase errors)
    +-- PlanningError         invalid window configuration, nothing created
    +-- MigrationStateError   invalid transition / foreign migration / leftovers
    +-- CopyError             window copy failed, re-run after clearing output
    +-- CompressionError      segment compression failed, retried per segment
    +-- IndexBuildError       post-load index build failed
    +-- SwapError             rename/config transaction rolled back
    +-- DrainError            buffer replay failed, buffer left in place
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class MigrationError(Exception):
    """Base class for every error raised by the migration core."""


class StorageError(MigrationError):
    """A storage backend operation failed."""


class PlanningError(MigrationError):
    """The window plan cannot be built from the given configuration."""


class MigrationStateError(MigrationError):
    """The persisted migration state does not allow the requested action."""


class CopyError(MigrationError):
    """Copying a window from the source table into the target failed."""

    def __init__(self, message: str, window_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.window_index = window_index


class CompressionError(MigrationError):
    """Compressing one or more target segments failed."""

    def __init__(
        self,
        message: str,
        segment_ids: tuple[str, ...] = (),
        older_than: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.segment_ids = segment_ids
        self.older_than = older_than


class IndexBuildError(MigrationError):
    """Building the secondary index on the target failed."""


class SwapError(MigrationError):
    """The atomic rename/config transaction aborted; nothing was changed."""


class DrainError(MigrationError):
    """Replaying the buffer into the live table failed; the buffer is intact."""


__all__ = [
    "CompressionError",
    "CopyError",
    "DrainError",
    "IndexBuildError",
    "MigrationError",
    "MigrationStateError",
    "PlanningError",
    "StorageError",
    "SwapError",
]
