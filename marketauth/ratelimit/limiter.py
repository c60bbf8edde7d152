"""Fixed-window quota counters shared by OTP, login and request screening."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from threading import Lock
from typing import Mapping

from marketauth.core.clock import Clock, SystemClock
from marketauth.core.config import RateLimitConfig, RateLimitPolicy
from marketauth.core.state_db import connect_state_db, store_errors

LOGGER = logging.getLogger(__name__)


class RateLimitScope(StrEnum):
    """Independent counter families."""

    OTP_SEND = "otp-send"
    OTP_VERIFY = "otp-verify"
    LOGIN = "login"
    GENERIC = "generic"
    SUSPICIOUS = "suspicious"


@dataclass(frozen=True)
class Admission:
    """Outcome of a single ``admit`` call."""

    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0


def policies_from_config(config: RateLimitConfig) -> dict[RateLimitScope, RateLimitPolicy]:
    return {
        RateLimitScope.OTP_SEND: config.otp_send,
        RateLimitScope.OTP_VERIFY: config.otp_verify,
        RateLimitScope.LOGIN: config.login,
        RateLimitScope.GENERIC: config.generic,
        RateLimitScope.SUSPICIOUS: config.suspicious,
    }


class RateLimiter:
    """Quota limiter keyed by ``(scope, identifier)``.

    Each ``admit`` is one upsert that either counts the hit or, once the
    ceiling is reached, opens a cooldown. Repeat offenders get an exponentially
    longer cooldown (``penalty_seconds * 2**violations``) capped at
    ``max_penalty_seconds``. The stored count never exceeds the ceiling.
    """

    def __init__(
        self,
        *,
        database_path: Path,
        policies: Mapping[RateLimitScope, RateLimitPolicy],
        clock: Clock | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize limiter storage and policy parameters."""
        self._connection = connect_state_db(database_path, timeout_seconds=timeout_seconds)
        self._lock = Lock()
        self._policies = dict(policies)
        self._clock = clock or SystemClock()

    def admit(self, scope: RateLimitScope, identifier: str) -> Admission:
        """Count one hit for ``identifier`` and report whether it is within quota."""
        policy = self._policies[scope]
        key = self._normalize(identifier)
        now = self._clock.now()
        with self._lock, store_errors():
            row = self._connection.execute(
                """
                INSERT INTO rate_limit_counters(
                  scope, identifier, window_start, count, cooldown_until, violations, updated_at
                ) VALUES (:scope, :identifier, :now, 1, 0, 0, :now)
                ON CONFLICT(scope, identifier) DO UPDATE SET
                  window_start = CASE
                    WHEN cooldown_until > :now THEN window_start
                    WHEN :now - window_start >= :window THEN :now
                    ELSE window_start END,
                  count = CASE
                    WHEN cooldown_until > :now THEN count
                    WHEN :now - window_start >= :window THEN 1
                    WHEN count >= :limit THEN count
                    ELSE count + 1 END,
                  cooldown_until = CASE
                    WHEN cooldown_until > :now THEN cooldown_until
                    WHEN :now - window_start >= :window THEN 0
                    WHEN count >= :limit THEN MAX(
                      window_start + :window,
                      :now + MIN(:max_penalty, :penalty * (1 << MIN(violations, 20)))
                    )
                    ELSE cooldown_until END,
                  violations = CASE
                    WHEN cooldown_until > :now THEN violations
                    WHEN :now - window_start >= :window THEN violations
                    WHEN count >= :limit THEN violations + 1
                    ELSE violations END,
                  updated_at = :now
                RETURNING count, cooldown_until
                """,
                {
                    "scope": str(scope),
                    "identifier": key,
                    "now": now,
                    "window": policy.window_seconds,
                    "limit": policy.limit,
                    "penalty": policy.penalty_seconds,
                    "max_penalty": policy.max_penalty_seconds,
                },
            ).fetchone()
            self._connection.commit()

        cooldown_until = int(row["cooldown_until"] or 0)
        if cooldown_until > now:
            LOGGER.warning(
                "rate_limited",
                extra={"scope": str(scope), "client_ip": key, "outcome": "denied"},
            )
            return Admission(allowed=False, retry_after_seconds=cooldown_until - now)
        return Admission(allowed=True, remaining=max(0, policy.limit - int(row["count"])))

    def peek(self, scope: RateLimitScope, identifier: str) -> Admission:
        """Report the current state without counting a hit."""
        policy = self._policies[scope]
        now = self._clock.now()
        with self._lock, store_errors():
            row = self._connection.execute(
                """
                SELECT window_start, count, cooldown_until
                FROM rate_limit_counters
                WHERE scope = ? AND identifier = ?
                """,
                (str(scope), self._normalize(identifier)),
            ).fetchone()
        if row is None:
            return Admission(allowed=True, remaining=policy.limit)
        cooldown_until = int(row["cooldown_until"] or 0)
        if cooldown_until > now:
            return Admission(allowed=False, retry_after_seconds=cooldown_until - now)
        if now - int(row["window_start"]) >= policy.window_seconds:
            return Admission(allowed=True, remaining=policy.limit)
        return Admission(allowed=True, remaining=max(0, policy.limit - int(row["count"])))

    def reset(self, scope: RateLimitScope, identifier: str) -> None:
        """Drop counter state, e.g. after a successful login."""
        with self._lock, store_errors():
            self._connection.execute(
                "DELETE FROM rate_limit_counters WHERE scope = ? AND identifier = ?",
                (str(scope), self._normalize(identifier)),
            )
            self._connection.commit()

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()

    @staticmethod
    def _normalize(identifier: str) -> str:
        return (identifier or "").strip().lower() or "unknown"
