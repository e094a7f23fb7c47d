"""
Utilities package for tsmigrate.

Exports shared helpers for logging, profiling and retries.
Keep this package lightweight and free of domain-specific logic.
"""

from tsmigrate.utils.logging import configure_logging, get_logger
from tsmigrate.utils.profiler import ProfileStats, profile_block
from tsmigrate.utils.retry import retrying

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
    "retrying",
]
