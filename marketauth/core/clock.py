"""Time and randomness providers."""

from __future__ import annotations

import secrets
import time
from threading import Lock
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    """Wall clock in whole epoch seconds."""

    def now(self) -> int:
        return int(time.time())


class FrozenClock:
    """Manually advanced clock used by tests and replay tooling."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._value = start
        self._lock = Lock()

    def now(self) -> int:
        with self._lock:
            return self._value

    def advance(self, seconds: int) -> None:
        with self._lock:
            self._value += seconds


def generate_numeric_code(length: int) -> str:
    """Return a uniformly random numeric code; leading zeros are kept."""
    if length < 4:
        raise ValueError("OTP length must be at least 4 digits")
    return f"{secrets.randbelow(10 ** length):0{length}d}"
