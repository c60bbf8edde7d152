"""Public API response contracts."""

from marketauth.api.contracts.models import (
    ApiErrorResponse,
    AuditEntryResponse,
    AuditLogResponse,
    AuthMeResponse,
    AuthSessionResponse,
    HealthResponse,
    LogoutResponse,
    OTPCleanupResponse,
    OTPSendResponse,
    OTPStatsResponse,
    OTPStatusResponse,
    PasswordChangeResponse,
    RegisterResponse,
    ResourceResponse,
    UserResponse,
    VerificationStatusResponse,
    VerifyOTPResponse,
)

__all__ = [
    "ApiErrorResponse",
    "AuditEntryResponse",
    "AuditLogResponse",
    "AuthMeResponse",
    "AuthSessionResponse",
    "HealthResponse",
    "LogoutResponse",
    "OTPCleanupResponse",
    "OTPSendResponse",
    "OTPStatsResponse",
    "OTPStatusResponse",
    "PasswordChangeResponse",
    "RegisterResponse",
    "ResourceResponse",
    "UserResponse",
    "VerificationStatusResponse",
    "VerifyOTPResponse",
]
