"""OTP state machine: generate, validate, status and garbage collection."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from marketauth.core.clock import Clock, SystemClock, generate_numeric_code
from marketauth.core.config import OTPConfig
from marketauth.core.logging import mask_target
from marketauth.core.retry import DependencyError, DependencyTimeoutError, call_with_retry
from marketauth.core.security import digests_match, hash_otp_code
from marketauth.core.state_db import StoreTimeoutError
from marketauth.core.targets import VerificationTarget
from marketauth.notifications.gateway import NotificationGateway, NotificationUnavailableError
from marketauth.otp.models import (
    GenerateOutcome,
    GenerateResult,
    OTPStatistics,
    OTPStatus,
    OTPStatusView,
    ValidationOutcome,
    ValidationResult,
)
from marketauth.otp.store import SQLiteOTPStore

LOGGER = logging.getLogger(__name__)

# A validate call re-reads the record when a concurrent writer won the race.
MAX_TRANSITION_ROUNDS = 5


class OTPManager:
    """Owns the ``NoRecord -> Pending -> Verified|Expired|Locked`` lifecycle."""

    def __init__(
        self,
        *,
        store: SQLiteOTPStore,
        gateway: NotificationGateway,
        config: OTPConfig,
        clock: Clock | None = None,
        code_factory: Callable[[int], str] = generate_numeric_code,
        retry_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._config = config
        self._clock = clock or SystemClock()
        self._code_factory = code_factory
        self._retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

    @property
    def config(self) -> OTPConfig:
        return self._config

    def generate(self, target: VerificationTarget) -> GenerateResult:
        """Issue a fresh code for ``target`` unless the resend cooldown is active.

        The record is persisted before the gateway is called, so a failed or
        unconfirmed delivery still leaves a consistent pending record behind
        and the cooldown protects against silent double sends.
        """
        now = self._clock.now()
        code = self._code_factory(self._config.code_length)
        record = self._with_store_retry(
            lambda: self._store.issue(
                target,
                code_hash=self._hash(target, code),
                instance_id=uuid.uuid4().hex,
                now=now,
                ttl_seconds=self._config.ttl_seconds,
                max_attempts=self._config.max_attempts,
                cooldown_seconds=self._config.resend_cooldown_seconds,
            )
        )
        if record is None:
            existing = self._with_store_retry(lambda: self._store.get(target.key))
            last_sent_at = existing.last_sent_at if existing else now
            retry_after = max(1, last_sent_at + self._config.resend_cooldown_seconds - now)
            LOGGER.info(
                "otp_cooldown",
                extra={"target": mask_target(target.value), "outcome": "cooldown"},
            )
            return GenerateResult(
                outcome=GenerateOutcome.COOLDOWN,
                record=existing,
                retry_after_seconds=retry_after,
            )

        delivered, delivery_error = self._deliver(target, code)
        LOGGER.info(
            "otp_issued",
            extra={
                "target": mask_target(target.value),
                "outcome": "delivered" if delivered else f"delivery_{delivery_error}",
            },
        )
        return GenerateResult(
            outcome=GenerateOutcome.ISSUED,
            record=record,
            delivered=delivered,
            delivery_error=delivery_error,
            code=code if self._config.expose_code else "",
        )

    def validate(self, target: VerificationTarget, submitted_code: str) -> ValidationResult:
        """Check ``submitted_code`` against the live record for ``target``.

        Attempts are only consumed by a completed comparison, in the same
        statement that may lock the record.
        """
        submitted_hash = self._hash(target, (submitted_code or "").strip())
        for _ in range(MAX_TRANSITION_ROUNDS):
            now = self._clock.now()
            record = self._with_store_retry(lambda: self._store.get(target.key))
            if record is None:
                return ValidationResult(ValidationOutcome.NOT_FOUND)

            # Past expiry every record answers EXPIRED, whatever it was before.
            if now > record.expires_at:
                if record.status == OTPStatus.PENDING:
                    self._with_store_retry(
                        lambda: self._store.mark_expired(
                            target.key, instance_id=record.instance_id, now=now
                        )
                    )
                return ValidationResult(ValidationOutcome.EXPIRED)

            if record.status == OTPStatus.VERIFIED:
                if digests_match(submitted_hash, record.code_hash):
                    return ValidationResult(ValidationOutcome.ALREADY_VERIFIED)
                return ValidationResult(
                    ValidationOutcome.MISMATCH,
                    attempts_remaining=record.attempts_remaining,
                )
            if record.status == OTPStatus.LOCKED:
                return ValidationResult(ValidationOutcome.LOCKED, attempts_remaining=0)
            if record.status == OTPStatus.EXPIRED:
                return ValidationResult(ValidationOutcome.EXPIRED)

            if record.attempts_remaining <= 0:
                self._with_store_retry(
                    lambda: self._store.mark_locked(target.key, instance_id=record.instance_id)
                )
                continue

            if digests_match(submitted_hash, record.code_hash):
                verified = self._with_store_retry(
                    lambda: self._store.mark_verified(
                        target.key, instance_id=record.instance_id, now=now
                    )
                )
                if verified:
                    LOGGER.info(
                        "otp_verified",
                        extra={"target": mask_target(target.value), "outcome": "verified"},
                    )
                    return ValidationResult(ValidationOutcome.VERIFIED)
                continue

            updated = self._with_store_retry(
                lambda: self._store.consume_attempt(
                    target.key, instance_id=record.instance_id, now=now
                )
            )
            if updated is None:
                continue
            LOGGER.info(
                "otp_mismatch",
                extra={
                    "target": mask_target(target.value),
                    "outcome": str(updated.status),
                },
            )
            return ValidationResult(
                ValidationOutcome.MISMATCH,
                attempts_remaining=updated.attempts_remaining,
            )

        raise StoreTimeoutError("OTP record kept changing during validation")

    def status(self, target: VerificationTarget) -> OTPStatusView | None:
        """Return a read-only projection of the record; never mutates state."""
        record = self._with_store_retry(lambda: self._store.get(target.key))
        if record is None:
            return None
        now = self._clock.now()
        effective = record.status
        if effective == OTPStatus.PENDING and now > record.expires_at:
            effective = OTPStatus.EXPIRED
        cooldown_remaining = max(
            0, record.last_sent_at + self._config.resend_cooldown_seconds - now
        )
        return OTPStatusView(
            exists=True,
            status=effective,
            attempts_remaining=record.attempts_remaining,
            max_attempts=self._config.max_attempts,
            cooldown_remaining=cooldown_remaining,
            expires_in_seconds=(
                max(0, record.expires_at - now) if effective == OTPStatus.PENDING else 0
            ),
            can_resend=cooldown_remaining == 0,
            send_count=record.send_count,
        )

    def cleanup(self) -> int:
        """Delete records past expiry plus the grace window."""
        now = self._clock.now()
        removed = self._with_store_retry(
            lambda: self._store.purge(now=now, grace_seconds=self._config.gc_grace_seconds)
        )
        LOGGER.info("otp_cleanup", extra={"outcome": f"removed_{removed}"})
        return removed

    def statistics(self) -> OTPStatistics:
        now = self._clock.now()
        return self._with_store_retry(lambda: self._store.statistics(now=now))

    def _deliver(self, target: VerificationTarget, code: str) -> tuple[bool, str]:
        # Timeouts are not retried: the provider may already have sent the message.
        try:
            accepted = call_with_retry(
                lambda: self._gateway.send(target.value, code),
                retries=1,
                backoff_seconds=self._retry_backoff_seconds,
                retry_on=(NotificationUnavailableError,),
                sleep=self._sleep,
            )
        except DependencyTimeoutError:
            LOGGER.error(
                "otp_delivery_timeout",
                extra={"target": mask_target(target.value), "outcome": "timeout"},
            )
            return False, "timeout"
        except DependencyError:
            LOGGER.error(
                "otp_delivery_unavailable",
                extra={"target": mask_target(target.value), "outcome": "unavailable"},
            )
            return False, "unavailable"
        return (True, "") if accepted else (False, "rejected")

    def _with_store_retry(self, fn):
        return call_with_retry(
            fn,
            retries=1,
            backoff_seconds=self._retry_backoff_seconds,
            sleep=self._sleep,
        )

    def _hash(self, target: VerificationTarget, code: str) -> str:
        return hash_otp_code(code, target_key=target.key, secret=self._config.hash_secret)
