"""Pydantic models for the accounts domain."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    """Marketplace roles."""

    CUSTOMER = "customer"
    ARTISAN = "artisan"
    DISTRIBUTOR = "distributor"
    ADMIN = "admin"


SELF_SERVICE_ROLES = {Role.CUSTOMER, Role.ARTISAN, Role.DISTRIBUTOR}


class AuthUser(BaseModel):
    """Persisted account; verification flags only change through verification flows."""

    user_id: str
    name: str
    email: str = ""
    phone: str = ""
    password_hash: str
    role: Role = Role.CUSTOMER
    is_active: bool = True
    is_phone_verified: bool = False
    is_email_verified: bool = False
    is_identity_verified: bool = False
    failed_login_count: int = 0
    locked_until: int = 0
    created_at: int = 0

    def is_locked(self, now: int) -> bool:
        return self.locked_until > now

    def public_view(self) -> dict[str, str | bool]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": str(self.role),
            "is_phone_verified": self.is_phone_verified,
            "is_email_verified": self.is_email_verified,
            "is_identity_verified": self.is_identity_verified,
        }


class RefreshTokenRecord(BaseModel):
    """Refresh token persistence record."""

    jti: str
    user_id: str
    token_hash: str
    expires_at: int
    revoked: bool = False
    replaced_by: str = ""


class TokenPair(BaseModel):
    """Access/refresh tokens handed to the client."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class Claims(BaseModel):
    """Verified access token claims; ``role`` is the role at issuance time."""

    user_id: str
    role: Role
    issued_at: int
    expires_at: int
    jti: str


class RegisterRequest(BaseModel):
    """Registration payload."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=120)
    phone: str | None = None
    email: str | None = None
    password: str = Field(min_length=6, max_length=256)
    role: Role = Role.CUSTOMER


class LoginRequest(BaseModel):
    """Password login payload."""

    phone: str | None = None
    email: str | None = None
    password: str = Field(min_length=1)


class TargetRequest(BaseModel):
    """Payload naming a verification target."""

    phone: str | None = None
    email: str | None = None


class VerifyOTPRequest(TargetRequest):
    """Payload for code verification."""

    otp: str = Field(min_length=4, max_length=10)


class RefreshRequest(BaseModel):
    """Refresh request payload."""

    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    """Logout request payload."""

    refresh_token: str | None = None


class ChangePasswordRequest(BaseModel):
    """Password change payload."""

    model_config = ConfigDict(extra="forbid")

    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8, max_length=256)
    confirm_password: str = Field(min_length=1)
