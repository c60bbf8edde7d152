"""Ordered authorization pipeline and its FastAPI dependency."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from marketauth.api.errors import ApiError, ApiErrorCode
from marketauth.api.http_setup import client_ip_of
from marketauth.auth.models import Role
from marketauth.auth.repository import AuthRepository
from marketauth.auth.tokens import TokenIssuer
from marketauth.core.config import SecurityConfig
from marketauth.core.logging import CORRELATION_ID_CTX
from marketauth.core.retry import DependencyError, DependencyTimeoutError
from marketauth.pipeline.audit import SecurityAuditLog
from marketauth.pipeline.context import Denial, RequestContext
from marketauth.pipeline.stages import (
    AuthenticateToken,
    AuthorizeRoles,
    DetectMaliciousRequests,
    PreventCrossUserAccess,
    RequireIdentityVerification,
    RequirePermission,
    SecurityAuditLogger,
    Stage,
    ValidateResourceOwnership,
)
from marketauth.ratelimit.limiter import RateLimiter
from marketauth.resources.models import ResourceType
from marketauth.resources.repository import OwnershipResolver

LOGGER = logging.getLogger(__name__)


class PipelineConfigurationError(RuntimeError):
    """Raised at startup when a pipeline cannot be assembled safely."""


@dataclass(frozen=True)
class PipelineResult:
    context: RequestContext
    denial: Denial | None = None

    @property
    def allowed(self) -> bool:
        return self.denial is None


class AuthorizationPipeline:
    """Strict left-to-right fold over checks, closed by the audit logger.

    The first denial stops the fold; the audit logger records the terminal
    outcome either way.
    """

    def __init__(self, checks: Sequence[Stage], audit: SecurityAuditLogger) -> None:
        if not checks or not isinstance(checks[0], AuthenticateToken):
            raise PipelineConfigurationError("A pipeline must start with AuthenticateToken")
        if not isinstance(audit, SecurityAuditLogger):
            raise PipelineConfigurationError("A pipeline must end with SecurityAuditLogger")
        positions = [stage.position for stage in checks]
        if any(later <= earlier for earlier, later in zip(positions, positions[1:])):
            names = ", ".join(stage.name for stage in checks)
            raise PipelineConfigurationError(f"Stages are out of order: {names}")
        if positions[-1] >= audit.position:
            raise PipelineConfigurationError("The audit logger must be the last stage")
        self._checks = tuple(checks)
        self._audit = audit

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self._checks) + (self._audit.name,)

    def run(self, ctx: RequestContext) -> PipelineResult:
        for stage in self._checks:
            try:
                outcome = stage(ctx)
            except Exception as exc:
                self._record_failure(ctx, stage.name, exc)
                raise
            if isinstance(outcome, Denial):
                self._audit.record(ctx, outcome)
                return PipelineResult(context=ctx, denial=outcome)
            ctx = outcome
        return PipelineResult(context=self._audit(ctx))

    def _record_failure(self, ctx: RequestContext, stage_name: str, exc: Exception) -> None:
        if isinstance(exc, DependencyTimeoutError):
            denial = Denial(stage_name, 504, ApiErrorCode.DEPENDENCY_TIMEOUT, str(exc))
        elif isinstance(exc, DependencyError):
            denial = Denial(stage_name, 502, ApiErrorCode.DEPENDENCY_UNAVAILABLE, str(exc))
        else:
            denial = Denial(
                stage_name, 500, ApiErrorCode.INTERNAL_SERVER_ERROR, type(exc).__name__
            )
        try:
            self._audit.record(ctx, denial)
        except DependencyError:
            # The stage failure still propagates.
            LOGGER.error(
                "audit_record_failed",
                exc_info=True,
                extra={"path": ctx.path, "reason": f"{denial.stage}: {denial.error_code}"},
            )


class PipelineFactory:
    """Builds per-route pipelines from shared collaborators.

    Built once at startup; a missing collaborator or a bad stage order raises
    ``PipelineConfigurationError`` so the application never starts unguarded.
    """

    def __init__(
        self,
        *,
        issuer: TokenIssuer,
        users: AuthRepository,
        resolver: OwnershipResolver,
        limiter: RateLimiter,
        audit_log: SecurityAuditLog,
        security: SecurityConfig,
    ) -> None:
        missing = [
            name
            for name, value in {
                "issuer": issuer,
                "users": users,
                "resolver": resolver,
                "limiter": limiter,
                "audit_log": audit_log,
            }.items()
            if value is None
        ]
        if missing:
            raise PipelineConfigurationError(f"Missing pipeline collaborators: {', '.join(missing)}")
        self._issuer = issuer
        self._users = users
        self._resolver = resolver
        self._limiter = limiter
        self._audit_log = audit_log
        self._security = security

    def build(
        self,
        *,
        action: str,
        resource_type: ResourceType,
        roles: Iterable[Role] | None = None,
        require_identity: bool = False,
        ownership_param: str | None = None,
        permission_scope: str | None = "own",
        cross_user_field: str | None = None,
    ) -> AuthorizationPipeline:
        """Assemble the stages a route needs, always in the fixed order."""
        checks: list[Stage] = [AuthenticateToken(self._issuer, self._users)]
        if roles is not None:
            checks.append(AuthorizeRoles(roles))
        if require_identity:
            checks.append(RequireIdentityVerification())
        if ownership_param is not None:
            checks.append(
                ValidateResourceOwnership(self._resolver, resource_type, param=ownership_param)
            )
        if permission_scope is not None:
            checks.append(RequirePermission(action, resource_type, scope=permission_scope))
        checks.append(
            DetectMaliciousRequests(
                self._limiter,
                max_body_bytes=self._security.request_max_bytes,
                max_page_limit=self._security.max_page_limit,
            )
        )
        if cross_user_field is not None:
            checks.append(PreventCrossUserAccess(cross_user_field))
        return AuthorizationPipeline(
            checks, SecurityAuditLogger(self._audit_log, action, resource_type)
        )


async def build_request_context(request: Request) -> RequestContext:
    """Snapshot the parts of ``request`` the stages inspect."""
    raw_body = await request.body()
    body: Any = None
    if raw_body:
        try:
            body = json.loads(raw_body)
        except ValueError:
            body = raw_body.decode("utf-8", errors="replace")
    return RequestContext(
        method=request.method,
        path=request.url.path,
        client_ip=client_ip_of(request),
        authorization=request.headers.get("authorization", ""),
        path_params={key: str(value) for key, value in request.path_params.items()},
        query_params=dict(request.query_params),
        body=body,
        body_size=len(raw_body),
        correlation_id=CORRELATION_ID_CTX.get(),
    )


def guard(pipeline: AuthorizationPipeline) -> Callable[[Request], Awaitable[RequestContext]]:
    """Return a FastAPI dependency running ``pipeline`` for the current request."""

    async def dependency(request: Request) -> RequestContext:
        ctx = await build_request_context(request)
        # Stages do blocking store I/O.
        result = await run_in_threadpool(pipeline.run, ctx)
        if result.denial is not None:
            denial = result.denial
            raise ApiError(
                status_code=denial.status_code,
                error_code=denial.error_code,
                message=denial.message,
                retry_after_seconds=denial.retry_after_seconds,
            )
        return result.context

    return dependency
