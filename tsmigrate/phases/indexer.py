"""Indexer: builds the (itemid, clock) lookup index on the loaded target."""

from __future__ import annotations

from typing import Optional, Sequence

from tsmigrate.config import MigrationConfig
from tsmigrate.exceptions import IndexBuildError, StorageError
from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.utils.logging import get_logger

log = get_logger(__name__)


class Indexer:
    def __init__(self, backend: StorageBackend, config: MigrationConfig) -> None:
        self.backend = backend
        self.config = config

    def build_index(self, target: str, columns: Optional[Sequence[str]] = None) -> str:
        """Create the index if it is missing and return its name."""
        keys = tuple(columns or self.config.index_columns)
        try:
            name = self.backend.create_index(target, keys)
        except StorageError as exc:
            raise IndexBuildError(f"index on {target} ({', '.join(keys)}) failed: {exc}") from exc
        log.info(f"[INDEX] {name} on {target}", extra={"index": name, "columns": list(keys)})
        return name


__all__ = ["Indexer"]
