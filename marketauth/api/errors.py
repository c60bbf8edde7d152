"""Shared API error types and helpers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import HTTPException


class ApiErrorCode(StrEnum):
    """Machine-readable API error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_TARGET = "DUPLICATE_TARGET"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"
    NOT_FOUND = "NOT_FOUND"
    OTP_NOT_FOUND = "OTP_NOT_FOUND"
    OTP_COOLDOWN = "OTP_COOLDOWN"
    OTP_MISMATCH = "OTP_MISMATCH"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_LOCKED = "OTP_LOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
    AUTH_TOKEN_REVOKED = "AUTH_TOKEN_REVOKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    FORBIDDEN = "FORBIDDEN"
    VERIFICATION_REQUIRED = "VERIFICATION_REQUIRED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    CROSS_USER_ACCESS_DENIED = "CROSS_USER_ACCESS_DENIED"
    SUSPICIOUS_REQUEST = "SUSPICIOUS_REQUEST"
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"
    DEPENDENCY_TIMEOUT = "DEPENDENCY_TIMEOUT"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class ApiError(HTTPException):
    """HTTP exception carrying stable API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: ApiErrorCode,
        message: str,
        attempts_remaining: int | None = None,
        retry_after_seconds: int | None = None,
    ) -> None:
        """Build an HTTP exception with standard detail structure."""
        detail: dict[str, Any] = {"error_code": str(error_code), "message": message}
        headers: dict[str, str] | None = None
        if attempts_remaining is not None:
            detail["attempts_remaining"] = attempts_remaining
        if retry_after_seconds is not None:
            detail["retry_after_seconds"] = retry_after_seconds
            headers = {"Retry-After": str(retry_after_seconds)}
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


def to_error_payload(detail: Any, status_code: int) -> dict[str, Any]:
    """Normalize HTTP exception detail into stable error payload."""
    if isinstance(detail, dict):
        payload: dict[str, Any] = {
            "error_code": str(detail.get("error_code") or f"HTTP_{status_code}"),
            "message": str(detail.get("message") or detail.get("detail") or "HTTP error"),
        }
        for key in ("attempts_remaining", "retry_after_seconds"):
            if detail.get(key) is not None:
                payload[key] = int(detail[key])
        return payload
    return {
        "error_code": f"HTTP_{status_code}",
        "message": str(detail or "HTTP error"),
    }
