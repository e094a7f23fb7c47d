"""
Retry policy shared by the idempotent migration steps.

Window copies and segment compressions are safe to repeat, so transient
backend failures are retried in place with exponential backoff before the
phase gives up.
"""

from __future__ import annotations

import logging
from typing import Tuple, Type

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tsmigrate.utils.logging import get_logger

log = get_logger(__name__)


def retrying(
    attempts: int,
    backoff_seconds: float,
    retry_on: Tuple[Type[BaseException], ...],
) -> Retrying:
    """
    Build a tenacity Retrying for one step.

    A ``backoff_seconds`` of 0 retries immediately; the last error is re-raised
    once ``attempts`` is exhausted.
    """
    return Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=backoff_seconds, min=0, max=max(backoff_seconds * 30, 0)),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )


__all__ = ["retrying"]
