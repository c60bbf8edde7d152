"""Models for the one-time code state machine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel


class OTPStatus(StrEnum):
    """Lifecycle state of a single issued code."""

    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    LOCKED = "locked"


TERMINAL_OTP_STATUSES = {OTPStatus.VERIFIED, OTPStatus.EXPIRED, OTPStatus.LOCKED}


class OTPRecord(BaseModel):
    """Persisted OTP state; the raw code is never stored."""

    target: str
    channel: str
    code_hash: str
    instance_id: str
    created_at: int
    expires_at: int
    last_sent_at: int
    attempts_remaining: int
    status: OTPStatus
    version: int = 1
    send_count: int = 1
    verified_at: int | None = None


class GenerateOutcome(StrEnum):
    ISSUED = "issued"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class GenerateResult:
    """Result of ``OTPManager.generate``.

    ``delivered`` is False when the gateway rejected the message or could not be
    reached; the record is persisted either way so the cooldown still applies.
    """

    outcome: GenerateOutcome
    record: OTPRecord | None = None
    delivered: bool = False
    delivery_error: str = ""
    retry_after_seconds: int = 0
    code: str = ""


class ValidationOutcome(StrEnum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    LOCKED = "locked"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ValidationResult:
    """Result of ``OTPManager.validate``."""

    outcome: ValidationOutcome
    attempts_remaining: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in {ValidationOutcome.VERIFIED, ValidationOutcome.ALREADY_VERIFIED}


@dataclass(frozen=True)
class OTPStatusView:
    """Read-only projection of a record for client polling."""

    exists: bool
    status: OTPStatus
    attempts_remaining: int
    max_attempts: int
    cooldown_remaining: int
    expires_in_seconds: int
    can_resend: bool
    send_count: int


@dataclass(frozen=True)
class OTPStatistics:
    """Aggregate counts across all OTP records."""

    pending: int
    verified: int
    expired: int
    locked: int
    sent_last_24h: int
