"""Pydantic API response models used in OpenAPI contracts."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    error_code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    attempts_remaining: int | None = Field(
        default=None, description="Wrong-code attempts left before the code locks"
    )
    retry_after_seconds: int | None = Field(
        default=None, description="Seconds until the request may be retried"
    )


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]


class RegisterResponse(BaseModel):
    """Registration result; the code is sent to the primary target."""

    user_id: str
    otp_sent: bool
    channel: str
    destination: str
    expires_in_seconds: int = 0
    otp: str | None = None


class OTPSendResponse(BaseModel):
    """Metadata about an issued code. ``otp`` is only set in development."""

    status: Literal["sent"]
    channel: str
    destination: str
    expires_in_seconds: int
    resend_cooldown_seconds: int
    attempts_remaining: int
    otp: str | None = None


class OTPStatusResponse(BaseModel):
    """Read-only OTP state for client polling."""

    exists: bool
    status: str
    attempts_remaining: int
    max_attempts: int
    cooldown_remaining: int
    expires_in_seconds: int
    can_resend: bool


class AuthSessionResponse(BaseModel):
    """Authentication session response payload."""

    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    user: dict[str, str | bool]


class VerifyOTPResponse(BaseModel):
    """Result of a code check; a session is only issued on the first success."""

    verified: bool = True
    already_verified: bool = False
    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "bearer"
    expires_in: int = 0
    user: dict[str, str | bool] | None = None


class AuthMeResponse(BaseModel):
    """Current user endpoint response payload."""

    user: dict[str, str | bool]


class VerificationStatusResponse(BaseModel):
    """Caller's verification flags and whether identity review is required."""

    requires_identity_verification: bool
    status: str
    is_phone_verified: bool
    is_email_verified: bool
    is_identity_verified: bool


class PasswordChangeResponse(BaseModel):
    """Password change response payload."""

    status: Literal["ok"]
    revoked_sessions: int


class LogoutResponse(BaseModel):
    """Logout response payload."""

    status: Literal["ok"]
    revoked: int = 0


class ResourceResponse(BaseModel):
    """Owned resource payload."""

    resource_type: str
    resource_id: str
    owner_id: str
    data: dict[str, Any]
    updated_at: int


class UserResponse(BaseModel):
    """Public user projection."""

    user: dict[str, str | bool]


class AuditEntryResponse(BaseModel):
    """Single security audit record."""

    entry_id: int
    recorded_at: int
    actor_id: str
    actor_role: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str
    stage: str
    reason: str
    client_ip: str
    method: str
    path: str
    correlation_id: str


class AuditLogResponse(BaseModel):
    """Page of audit records, newest first."""

    items: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int


class OTPStatsResponse(BaseModel):
    """Aggregate OTP counts."""

    pending: int
    verified: int
    expired: int
    locked: int
    sent_last_24h: int


class OTPCleanupResponse(BaseModel):
    """Number of OTP records removed by garbage collection."""

    removed: int
