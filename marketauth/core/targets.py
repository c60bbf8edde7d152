"""Canonicalization of phone numbers and emails used as verification targets."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-.()]")
NATIONAL_NUMBER_LENGTH = 10


class TargetChannel(StrEnum):
    """Out-of-band channel a code is delivered over."""

    PHONE = "phone"
    EMAIL = "email"


class TargetValidationError(ValueError):
    """Raised when a phone number or email cannot be canonicalized."""


@dataclass(frozen=True)
class VerificationTarget:
    """Canonical phone number or email that owns an OTP flow."""

    channel: TargetChannel
    value: str

    @property
    def key(self) -> str:
        return f"{self.channel}:{self.value}"

    @staticmethod
    def from_key(key: str) -> "VerificationTarget":
        channel, _, value = key.partition(":")
        return VerificationTarget(channel=TargetChannel(channel), value=value)


def normalize_phone(raw: str, *, default_country_code: str = "91") -> str:
    """Return the E.164 form of a phone number.

    Spaces, dashes, dots and parentheses are accepted as separators, a ``00``
    international prefix is rewritten to ``+`` and a bare national number gets
    ``default_country_code``. Already-canonical input is returned unchanged.
    """
    compact = PHONE_SEPARATORS_RE.sub("", (raw or "").strip())
    if compact.startswith("00"):
        compact = "+" + compact[2:]
    if not compact.startswith("+"):
        if compact.startswith("0") and len(compact) == NATIONAL_NUMBER_LENGTH + 1:
            compact = compact[1:]
        if len(compact) == NATIONAL_NUMBER_LENGTH and compact.isdigit():
            compact = f"+{default_country_code}{compact}"
        else:
            compact = "+" + compact
    if not E164_RE.match(compact):
        raise TargetValidationError("Please provide a valid phone number")
    return compact


def normalize_email(raw: str) -> str:
    """Return trimmed lower-case email or raise ``TargetValidationError``."""
    value = (raw or "").strip().lower()
    if not EMAIL_RE.match(value):
        raise TargetValidationError("Please provide a valid email address")
    return value


def normalize_target(
    *,
    phone: str | None = None,
    email: str | None = None,
    default_country_code: str = "91",
) -> VerificationTarget:
    """Build the canonical target from whichever identifier was supplied.

    Phone wins when both are present, matching the registration flow where a
    phone number is the primary verification channel.
    """
    if phone and phone.strip():
        return VerificationTarget(
            channel=TargetChannel.PHONE,
            value=normalize_phone(phone, default_country_code=default_country_code),
        )
    if email and email.strip():
        return VerificationTarget(channel=TargetChannel.EMAIL, value=normalize_email(email))
    raise TargetValidationError("Phone number or email is required")
