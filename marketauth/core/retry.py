"""Bounded retry helper for calls into external dependencies."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class DependencyError(Exception):
    """Base class for transient failures of a store or gateway."""

    dependency = "dependency"


class DependencyTimeoutError(DependencyError):
    """The dependency did not answer within its bounded timeout."""


class DependencyUnavailableError(DependencyError):
    """The dependency refused or dropped the call."""


def call_with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    backoff_seconds: float = 0.5,
    retry_on: tuple[type[DependencyError], ...] = (DependencyError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn``, retrying transient ``DependencyError`` failures with linear backoff.

    Only errors matching ``retry_on`` are retried. The last failure is
    re-raised once retries are exhausted so the caller can surface it as a
    502/504.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except DependencyError as exc:
            if attempt >= retries or not isinstance(exc, retry_on):
                raise
            attempt += 1
            LOGGER.warning(
                "dependency_retry",
                extra={"reason": f"{exc.dependency}: {exc}", "outcome": f"attempt_{attempt}"},
            )
            sleep(backoff_seconds * attempt)
