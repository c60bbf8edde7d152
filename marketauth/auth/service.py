"""Account service: registration, login, OTP verification and sessions."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from marketauth.api.contracts import (
    AuthSessionResponse,
    OTPSendResponse,
    OTPStatusResponse,
    RegisterResponse,
    VerificationStatusResponse,
    VerifyOTPResponse,
)
from marketauth.api.errors import ApiError, ApiErrorCode
from marketauth.auth.models import (
    SELF_SERVICE_ROLES,
    AuthUser,
    ChangePasswordRequest,
    LoginRequest,
    RegisterRequest,
    Role,
    TokenPair,
)
from marketauth.auth.repository import AuthRepository, DuplicateTargetError
from marketauth.auth.tokens import (
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuer,
    TokenRevokedError,
)
from marketauth.core.clock import Clock, SystemClock
from marketauth.core.config import AppConfig
from marketauth.core.logging import mask_target
from marketauth.core.security import hash_password, verify_password
from marketauth.core.targets import (
    TargetChannel,
    TargetValidationError,
    VerificationTarget,
    normalize_target,
)
from marketauth.otp.manager import OTPManager
from marketauth.otp.models import GenerateOutcome, GenerateResult, ValidationOutcome
from marketauth.ratelimit.limiter import RateLimiter, RateLimitScope
from marketauth.resources.models import OwnedResource, ResourceType
from marketauth.resources.repository import ResourceRepository

LOGGER = logging.getLogger(__name__)

PROFILE_RESOURCE_FOR_ROLE = {
    Role.ARTISAN: ResourceType.ARTISAN,
    Role.DISTRIBUTOR: ResourceType.DISTRIBUTOR,
}
FLAG_FOR_CHANNEL = {
    TargetChannel.PHONE: "is_phone_verified",
    TargetChannel.EMAIL: "is_email_verified",
}


class AuthService:
    """Translates account flows into typed domain calls and API errors."""

    def __init__(
        self,
        *,
        repo: AuthRepository,
        issuer: TokenIssuer,
        otp_manager: OTPManager,
        limiter: RateLimiter,
        resources: ResourceRepository,
        config: AppConfig,
        clock: Clock | None = None,
    ) -> None:
        """Initialize service dependencies."""
        self._repo = repo
        self._issuer = issuer
        self._otp = otp_manager
        self._limiter = limiter
        self._resources = resources
        self._config = config
        self._clock = clock or SystemClock()

    def bootstrap_admin_user(self) -> None:
        """Ensure bootstrap admin user exists from environment values."""
        if not self._config.auth.admin_email or not self._config.auth.admin_password:
            return
        if self._repo.get_user_by_email(self._config.auth.admin_email) is not None:
            return
        self._repo.upsert_user(
            AuthUser(
                user_id=uuid.uuid4().hex,
                name="Administrator",
                email=self._config.auth.admin_email.strip().lower(),
                password_hash=hash_password(self._config.auth.admin_password),
                role=Role.ADMIN,
                is_email_verified=True,
                is_identity_verified=True,
                created_at=self._clock.now(),
            )
        )
        LOGGER.info("bootstrap_admin_created", extra={"outcome": "created"})

    def _target(self, phone: str | None, email: str | None) -> VerificationTarget:
        try:
            return normalize_target(
                phone=phone,
                email=email,
                default_country_code=self._config.security.default_country_code,
            )
        except TargetValidationError as exc:
            raise ApiError(
                status_code=400, error_code=ApiErrorCode.VALIDATION_ERROR, message=str(exc)
            ) from exc

    def _admit(self, scope: RateLimitScope, *identifiers: str) -> None:
        """Count one hit per identifier; the first denial wins."""
        for identifier in identifiers:
            admission = self._limiter.admit(scope, identifier)
            if not admission.allowed:
                raise ApiError(
                    status_code=429,
                    error_code=ApiErrorCode.RATE_LIMITED,
                    message="Too many requests, retry later",
                    retry_after_seconds=max(1, admission.retry_after_seconds),
                )

    def register(self, req: RegisterRequest, *, client_ip: str) -> RegisterResponse:
        """Create an unverified account and send a code to its primary target."""
        if req.role not in SELF_SERVICE_ROLES:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message=f"Role {req.role} cannot be self-assigned",
            )
        if not req.phone and not req.email:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message="Phone number or email is required",
            )
        phone_target = self._target(req.phone, None) if req.phone else None
        email_target = self._target(None, req.email) if req.email else None
        primary = self._target(req.phone, req.email)

        self._admit(RateLimitScope.OTP_SEND, client_ip, primary.key)

        now = self._clock.now()
        user = AuthUser(
            user_id=uuid.uuid4().hex,
            name=req.name.strip(),
            phone=phone_target.value if phone_target else "",
            email=email_target.value if email_target else "",
            password_hash=hash_password(req.password),
            role=req.role,
            created_at=now,
        )
        try:
            self._repo.create_user(user)
        except DuplicateTargetError as exc:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.DUPLICATE_TARGET,
                message="User with this phone or email already exists",
            ) from exc

        profile_type = PROFILE_RESOURCE_FOR_ROLE.get(user.role)
        if profile_type is not None:
            self._resources.upsert(
                OwnedResource(
                    resource_type=profile_type,
                    resource_id=uuid.uuid4().hex,
                    owner_id=user.user_id,
                    data={"business_name": user.name},
                    created_at=now,
                    updated_at=now,
                )
            )
        LOGGER.info(
            "user_registered",
            extra={"actor_id": user.user_id, "target": mask_target(primary.value), "outcome": "created"},
        )

        result = self._otp.generate(primary)
        issued = result.outcome == GenerateOutcome.ISSUED
        return RegisterResponse(
            user_id=user.user_id,
            otp_sent=issued and result.delivered,
            channel=str(primary.channel),
            destination=mask_target(primary.value),
            expires_in_seconds=self._otp.config.ttl_seconds if issued else 0,
            otp=result.code or None,
        )

    def send_otp(
        self, phone: str | None, email: str | None, *, client_ip: str, resend: bool = False
    ) -> OTPSendResponse:
        """Issue a code for a registered, not yet verified target."""
        target = self._target(phone, email)
        self._admit(RateLimitScope.OTP_SEND, client_ip, target.key)

        user = self._repo.get_user_by_target(target)
        if user is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.NOT_FOUND,
                message="No account is registered for this target",
            )
        if getattr(user, FLAG_FOR_CHANNEL[target.channel]):
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.ALREADY_VERIFIED,
                message=f"This {target.channel} is already verified",
            )
        if resend and self._otp.status(target) is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.OTP_NOT_FOUND,
                message="No code was sent to this target yet",
            )

        return self._to_send_response(target, self._otp.generate(target))

    def _to_send_response(self, target: VerificationTarget, result: GenerateResult) -> OTPSendResponse:
        config = self._otp.config
        if result.outcome == GenerateOutcome.COOLDOWN:
            raise ApiError(
                status_code=429,
                error_code=ApiErrorCode.OTP_COOLDOWN,
                message="Please wait before requesting another code",
                retry_after_seconds=result.retry_after_seconds,
            )
        if not result.delivered:
            # The record is persisted; the cooldown applies before another send.
            timed_out = result.delivery_error == "timeout"
            raise ApiError(
                status_code=504 if timed_out else 502,
                error_code=(
                    ApiErrorCode.DEPENDENCY_TIMEOUT if timed_out else ApiErrorCode.DEPENDENCY_UNAVAILABLE
                ),
                message="The code could not be delivered",
                retry_after_seconds=config.resend_cooldown_seconds,
            )
        return OTPSendResponse(
            status="sent",
            channel=str(target.channel),
            destination=mask_target(target.value),
            expires_in_seconds=config.ttl_seconds,
            resend_cooldown_seconds=config.resend_cooldown_seconds,
            attempts_remaining=config.max_attempts,
            otp=result.code or None,
        )

    def verify_otp(
        self, phone: str | None, email: str | None, otp: str, *, client_ip: str
    ) -> VerifyOTPResponse:
        """Check a submitted code; success verifies the channel and opens a session."""
        target = self._target(phone, email)
        self._admit(RateLimitScope.OTP_VERIFY, client_ip, target.key)

        result = self._otp.validate(target, otp)
        if result.outcome == ValidationOutcome.MISMATCH:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.OTP_MISMATCH,
                message="Invalid code",
                attempts_remaining=result.attempts_remaining or 0,
            )
        if result.outcome == ValidationOutcome.EXPIRED:
            raise ApiError(
                status_code=410,
                error_code=ApiErrorCode.OTP_EXPIRED,
                message="The code has expired, request a new one",
            )
        if result.outcome == ValidationOutcome.LOCKED:
            raise ApiError(
                status_code=423,
                error_code=ApiErrorCode.OTP_LOCKED,
                message="Too many wrong codes, request a new one",
                attempts_remaining=0,
            )
        if result.outcome == ValidationOutcome.NOT_FOUND:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.OTP_NOT_FOUND,
                message="No code was sent to this target",
            )

        if result.outcome == ValidationOutcome.ALREADY_VERIFIED:
            # A replayed code confirms nothing new; sessions come from login.
            return VerifyOTPResponse(verified=True, already_verified=True)

        user = self._repo.get_user_by_target(target)
        if user is None or not user.is_active:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.NOT_FOUND,
                message="No account is registered for this target",
            )
        user = self._repo.set_verification_flag(user.user_id, FLAG_FOR_CHANNEL[target.channel]) or user
        session = self._session(user, self._issuer.issue(user))
        return VerifyOTPResponse(**session.model_dump(), verified=True)

    def otp_status(self, phone: str | None, email: str | None) -> OTPStatusResponse:
        target = self._target(phone, email)
        view = self._otp.status(target)
        if view is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.OTP_NOT_FOUND,
                message="No code was sent to this target",
            )
        return OTPStatusResponse(
            exists=view.exists,
            status=str(view.status),
            attempts_remaining=view.attempts_remaining,
            max_attempts=view.max_attempts,
            cooldown_remaining=view.cooldown_remaining,
            expires_in_seconds=view.expires_in_seconds,
            can_resend=view.can_resend,
        )

    def login(self, req: LoginRequest, *, client_ip: str) -> AuthSessionResponse:
        """Authenticate credentials and issue access/refresh token pair."""
        target = self._target(req.phone, req.email)
        self._admit(RateLimitScope.LOGIN, client_ip, target.key)

        invalid = ApiError(
            status_code=401,
            error_code=ApiErrorCode.AUTH_INVALID_CREDENTIALS,
            message="Invalid credentials",
        )
        user = self._repo.get_user_by_target(target)
        if user is None or not user.is_active:
            raise invalid

        now = self._clock.now()
        if user.is_locked(now):
            raise self._locked(user.locked_until - now)

        if not verify_password(req.password, user.password_hash):
            updated = self._repo.record_login_failure(
                user.user_id,
                now=now,
                threshold=self._config.security.login_lockout_threshold,
                lock_seconds=self._config.security.login_lockout_seconds,
            )
            LOGGER.warning(
                "login_failed",
                extra={"actor_id": user.user_id, "client_ip": client_ip, "outcome": "denied"},
            )
            if updated is not None and updated.is_locked(now):
                raise self._locked(updated.locked_until - now)
            raise invalid

        self._repo.reset_login_failures(user.user_id)
        self._limiter.reset(RateLimitScope.LOGIN, target.key)
        return self._session(user, self._issuer.issue(user))

    @staticmethod
    def _locked(retry_after: int) -> ApiError:
        return ApiError(
            status_code=423,
            error_code=ApiErrorCode.ACCOUNT_LOCKED,
            message="Account temporarily locked after repeated failed logins",
            retry_after_seconds=max(1, retry_after),
        )

    def refresh(self, refresh_token: str) -> AuthSessionResponse:
        """Validate refresh token and rotate token pair."""
        try:
            user, pair = self._issuer.refresh(refresh_token)
        except TokenRevokedError as exc:
            raise ApiError(
                status_code=401, error_code=ApiErrorCode.AUTH_TOKEN_REVOKED, message=str(exc)
            ) from exc
        except TokenExpiredError as exc:
            raise ApiError(
                status_code=401, error_code=ApiErrorCode.AUTH_TOKEN_EXPIRED, message=str(exc)
            ) from exc
        except TokenInvalidError as exc:
            raise ApiError(
                status_code=401, error_code=ApiErrorCode.AUTH_TOKEN_INVALID, message=str(exc)
            ) from exc
        return self._session(user, pair)

    def logout(self, refresh_token: str | None) -> int:
        """Revoke provided refresh token when available."""
        if not refresh_token:
            return 0
        return 1 if self._issuer.revoke(refresh_token) else 0

    def logout_all(self, user_id: str) -> int:
        return self._issuer.revoke_all(user_id)

    def change_password(self, user: AuthUser, req: ChangePasswordRequest, *, client_ip: str) -> int:
        """Replace the password and end every session; returns revoked refresh tokens."""
        self._admit(RateLimitScope.LOGIN, client_ip, f"password:{user.user_id}")
        if req.confirm_password != req.new_password:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message="Password confirmation does not match new password",
            )
        if not verify_password(req.current_password, user.password_hash):
            LOGGER.warning(
                "password_change_failed",
                extra={"actor_id": user.user_id, "client_ip": client_ip, "outcome": "denied"},
            )
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message="Current password is incorrect",
            )
        if verify_password(req.new_password, user.password_hash):
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message="New password must differ from the current one",
            )

        if self._repo.set_password_hash(user.user_id, hash_password(req.new_password)) is None:
            raise self._user_not_found()
        revoked = self._issuer.revoke_all(user.user_id)
        LOGGER.info(
            "password_changed",
            extra={"actor_id": user.user_id, "client_ip": client_ip, "outcome": f"revoked_{revoked}"},
        )
        return revoked

    @staticmethod
    def verification_status(user: AuthUser) -> VerificationStatusResponse:
        """Summarize the caller's flags; only sellers need identity review."""
        requires_identity = user.role in PROFILE_RESOURCE_FOR_ROLE
        if not requires_identity:
            status = "not_required"
        elif user.is_identity_verified:
            status = "verified"
        else:
            status = "pending"
        return VerificationStatusResponse(
            requires_identity_verification=requires_identity,
            status=status,
            is_phone_verified=user.is_phone_verified,
            is_email_verified=user.is_email_verified,
            is_identity_verified=user.is_identity_verified,
        )

    def get_user(self, user_id: str) -> AuthUser:
        user = self._repo.get_user(user_id)
        if user is None or not user.is_active:
            raise self._user_not_found()
        return user

    @staticmethod
    def _user_not_found() -> ApiError:
        return ApiError(status_code=404, error_code=ApiErrorCode.NOT_FOUND, message="user not found")

    def manual_verify_identity(self, user_id: str, *, admin_id: str) -> AuthUser:
        """Admin-only identity (KYC) approval."""
        self.get_user(user_id)
        user = self._repo.set_verification_flag(user_id, "is_identity_verified")
        if user is None:
            raise self._user_not_found()
        LOGGER.info(
            "identity_verified",
            extra={"actor_id": admin_id, "resource_id": user_id, "outcome": "verified"},
        )
        return user

    def change_role(self, user_id: str, role: Role, *, admin_id: str) -> AuthUser:
        """Change a user's role and end their sessions so new tokens carry it."""
        self.get_user(user_id)
        user = self._repo.set_role(user_id, role)
        if user is None:
            raise self._user_not_found()
        self._issuer.revoke_all(user_id)
        LOGGER.info(
            "role_changed",
            extra={"actor_id": admin_id, "resource_id": user_id, "outcome": str(role)},
        )
        return user

    def deactivate_user(self, user_id: str, *, admin_id: str) -> None:
        self.get_user(user_id)
        self._repo.deactivate_user(user_id)
        self._issuer.revoke_all(user_id)
        LOGGER.info(
            "user_deactivated",
            extra={"actor_id": admin_id, "resource_id": user_id, "outcome": "deactivated"},
        )

    @staticmethod
    def _session(user: AuthUser, pair: TokenPair) -> AuthSessionResponse:
        payload: dict[str, Any] = pair.model_dump()
        return AuthSessionResponse(**payload, user=user.public_view())
