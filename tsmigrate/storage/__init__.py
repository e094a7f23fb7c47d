"""
Storage package for tsmigrate.

The StorageBackend protocol plus its two implementations: TimescaleDB over
psycopg, and an in-memory model used by the tests.
"""

from tsmigrate.storage.abstract import AbstractStorageBackend, MigrationStateStore, StorageBackend
from tsmigrate.storage.memory import InMemoryBackend

__all__ = [
    "AbstractStorageBackend",
    "InMemoryBackend",
    "MigrationStateStore",
    "StorageBackend",
]
