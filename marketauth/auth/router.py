"""Authentication API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from marketauth.api.contracts import (
    ApiErrorResponse,
    AuthMeResponse,
    AuthSessionResponse,
    LogoutResponse,
    OTPSendResponse,
    OTPStatusResponse,
    PasswordChangeResponse,
    RegisterResponse,
    VerificationStatusResponse,
    VerifyOTPResponse,
)
from marketauth.api.http_setup import client_ip_of
from marketauth.auth.models import (
    ChangePasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TargetRequest,
    VerifyOTPRequest,
)
from marketauth.auth.service import AuthService
from marketauth.pipeline.context import RequestContext
from marketauth.pipeline.pipeline import PipelineFactory, guard
from marketauth.resources.models import ResourceType

_OTP_ERRORS = {
    400: {"model": ApiErrorResponse},
    404: {"model": ApiErrorResponse},
    429: {"model": ApiErrorResponse},
    502: {"model": ApiErrorResponse},
    504: {"model": ApiErrorResponse},
}


def create_auth_router(service: AuthService, pipelines: PipelineFactory) -> APIRouter:
    """Build authentication router with registration, OTP and session endpoints."""
    router = APIRouter(tags=["auth"])
    profile_guard = guard(pipelines.build(action="read", resource_type=ResourceType.USER))
    logout_all_guard = guard(pipelines.build(action="update", resource_type=ResourceType.USER))
    password_guard = guard(pipelines.build(action="update", resource_type=ResourceType.USER))

    @router.post(
        "/auth/register",
        status_code=201,
        response_model=RegisterResponse,
        responses=_OTP_ERRORS,
    )
    def register(req: RegisterRequest, request: Request) -> RegisterResponse:
        """Create an account and send the first verification code."""
        return service.register(req, client_ip=client_ip_of(request))

    @router.post(
        "/auth/login",
        response_model=AuthSessionResponse,
        responses={401: {"model": ApiErrorResponse}, 423: {"model": ApiErrorResponse}, 429: {"model": ApiErrorResponse}},
    )
    def login(req: LoginRequest, request: Request) -> AuthSessionResponse:
        """Authenticate user and return token pair."""
        return service.login(req, client_ip=client_ip_of(request))

    @router.post("/auth/send-otp", response_model=OTPSendResponse, responses=_OTP_ERRORS)
    def send_otp(req: TargetRequest, request: Request) -> OTPSendResponse:
        """Send a verification code to a registered phone or email."""
        return service.send_otp(req.phone, req.email, client_ip=client_ip_of(request))

    @router.post("/auth/resend-otp", response_model=OTPSendResponse, responses=_OTP_ERRORS)
    def resend_otp(req: TargetRequest, request: Request) -> OTPSendResponse:
        """Replace the previous code once the cooldown has passed."""
        return service.send_otp(req.phone, req.email, client_ip=client_ip_of(request), resend=True)

    @router.post(
        "/auth/verify-otp",
        response_model=VerifyOTPResponse,
        responses={
            **_OTP_ERRORS,
            410: {"model": ApiErrorResponse},
            423: {"model": ApiErrorResponse},
        },
    )
    def verify_otp(req: VerifyOTPRequest, request: Request) -> VerifyOTPResponse:
        """Check a code and return a session on success."""
        return service.verify_otp(req.phone, req.email, req.otp, client_ip=client_ip_of(request))

    @router.get(
        "/auth/otp-status",
        response_model=OTPStatusResponse,
        responses={400: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
    )
    def otp_status(
        phone: str | None = Query(default=None),
        email: str | None = Query(default=None),
    ) -> OTPStatusResponse:
        """Poll the state of the current code without consuming an attempt."""
        return service.otp_status(phone, email)

    @router.post(
        "/auth/refresh-token",
        response_model=AuthSessionResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def refresh(req: RefreshRequest) -> AuthSessionResponse:
        """Rotate refresh token and issue new session tokens."""
        return service.refresh(req.refresh_token)

    @router.post("/auth/logout", response_model=LogoutResponse)
    def logout(req: LogoutRequest) -> LogoutResponse:
        """Invalidate supplied refresh token."""
        return LogoutResponse(status="ok", revoked=service.logout(req.refresh_token))

    @router.post(
        "/auth/logout-all",
        response_model=LogoutResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def logout_all(ctx: RequestContext = Depends(logout_all_guard)) -> LogoutResponse:
        """Revoke every refresh token of the caller."""
        return LogoutResponse(status="ok", revoked=service.logout_all(ctx.actor_id))

    @router.get(
        "/auth/profile",
        response_model=AuthMeResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def profile(ctx: RequestContext = Depends(profile_guard)) -> AuthMeResponse:
        """Return the caller's live account state."""
        return AuthMeResponse(user=service.get_user(ctx.actor_id).public_view())

    @router.get(
        "/auth/verification/status",
        response_model=VerificationStatusResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def verification_status(ctx: RequestContext = Depends(profile_guard)) -> VerificationStatusResponse:
        """Report which verifications the caller has completed."""
        return service.verification_status(service.get_user(ctx.actor_id))

    @router.post(
        "/auth/change-password",
        response_model=PasswordChangeResponse,
        responses={
            400: {"model": ApiErrorResponse},
            401: {"model": ApiErrorResponse},
            429: {"model": ApiErrorResponse},
        },
    )
    def change_password(
        req: ChangePasswordRequest,
        request: Request,
        ctx: RequestContext = Depends(password_guard),
    ) -> PasswordChangeResponse:
        """Replace the caller's password; every session must log in again."""
        revoked = service.change_password(
            service.get_user(ctx.actor_id), req, client_ip=client_ip_of(request)
        )
        return PasswordChangeResponse(status="ok", revoked_sessions=revoked)

    return router
