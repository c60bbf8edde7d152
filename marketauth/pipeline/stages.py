"""Authorization stages.

Each stage is a callable taking a ``RequestContext`` and returning either an
evolved context or a ``Denial``. ``position`` fixes where a stage may appear in
a pipeline.
"""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar, Iterable, Protocol

from marketauth.api.errors import ApiErrorCode
from marketauth.auth.models import Role
from marketauth.auth.repository import AuthRepository
from marketauth.auth.tokens import TokenExpiredError, TokenInvalidError, TokenIssuer
from marketauth.pipeline.audit import AuditEntry, SecurityAuditLog
from marketauth.pipeline.context import Denial, RequestContext
from marketauth.pipeline.permissions import has_permission
from marketauth.ratelimit.limiter import RateLimiter, RateLimitScope
from marketauth.resources.models import ResourceType
from marketauth.resources.repository import OwnershipResolver

LOGGER = logging.getLogger(__name__)

SQL_INJECTION_PATTERNS = (
    "DROP TABLE",
    "UNION SELECT",
    "'OR 1=1",
    "' OR 1=1",
    "; DELETE FROM",
    "EXEC(",
    "EXEC SP_",
    "EXEC XP_",
)
NOSQL_INJECTION_PATTERNS = (
    "$where",
    "$regex",
    "$ne",
    "$gt",
    "$lt",
    "$gte",
    "$lte",
    "$in",
    "$nin",
    "$exists",
    "$expr",
)
PATH_TRAVERSAL_PATTERNS = (
    "../",
    "..\\",
    "%2e%2e%2f",
    "%2e%2e/",
    "%2e%2e\\",
    "%252e%252e%252f",
)
XSS_PATTERNS = (
    "<script",
    "</script>",
    "javascript:",
    "onerror=",
    "onload=",
    "onclick=",
    "onmouseover=",
    "alert(",
    "document.cookie",
)
SEVERE_FLAGS = {"SQL_INJECTION", "NOSQL_INJECTION", "PATH_TRAVERSAL", "OVERSIZED_PAYLOAD"}
# Values that are only ever hashed are not scanned.
SECRET_FIELDS = frozenset({"password", "current_password", "new_password", "confirm_password"})


class Stage(Protocol):
    name: ClassVar[str]
    position: ClassVar[int]

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial: ...


def _extract_bearer_token(authorization: str) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def _is_admin(ctx: RequestContext) -> bool:
    return ctx.user is not None and ctx.user.role == Role.ADMIN


class AuthenticateToken:
    """Verify the bearer token and attach the live user."""

    name: ClassVar[str] = "authenticate_token"
    position: ClassVar[int] = 1

    def __init__(self, issuer: TokenIssuer, users: AuthRepository) -> None:
        self._issuer = issuer
        self._users = users

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        token = _extract_bearer_token(ctx.authorization)
        if not token:
            return Denial(self.name, 401, ApiErrorCode.AUTH_MISSING_TOKEN, "Missing bearer token")
        try:
            claims = self._issuer.verify(token)
        except TokenExpiredError:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_EXPIRED, "Access token expired")
        except TokenInvalidError:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_INVALID, "Invalid access token")

        user = self._users.get_user(claims.user_id)
        if user is None or not user.is_active:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_INVALID, "Invalid access token")
        return ctx.evolve(claims=claims, user=user)


class AuthorizeRoles:
    """Check the caller's current role, not the one frozen into the token."""

    name: ClassVar[str] = "authorize_roles"
    position: ClassVar[int] = 2

    def __init__(self, allowed: Iterable[Role]) -> None:
        self._allowed = frozenset(allowed)
        if not self._allowed:
            raise ValueError("AuthorizeRoles needs at least one role")

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        user = ctx.user
        if user is None:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_INVALID, "Not authenticated")
        if ctx.claims is not None and ctx.claims.role != user.role:
            LOGGER.info(
                "stale_role_claim",
                extra={"actor_id": user.user_id, "reason": f"{ctx.claims.role}->{user.role}"},
            )
        if user.role not in self._allowed:
            return Denial(
                self.name,
                403,
                ApiErrorCode.FORBIDDEN,
                f"Role {user.role} is not allowed to perform this action",
            )
        return ctx


class RequireIdentityVerification:
    """Gate on verification flags of the live user; admins are exempt."""

    name: ClassVar[str] = "require_identity_verification"
    position: ClassVar[int] = 3

    def __init__(self, flags: Iterable[str] = ("is_identity_verified",)) -> None:
        self._flags = tuple(flags)

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        if ctx.user is None:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_INVALID, "Not authenticated")
        if _is_admin(ctx):
            return ctx
        missing = [flag for flag in self._flags if not getattr(ctx.user, flag, False)]
        if missing:
            return Denial(
                self.name,
                403,
                ApiErrorCode.VERIFICATION_REQUIRED,
                "Identity verification required for this action",
            )
        return ctx


class ValidateResourceOwnership:
    """Load the route's resource and require the caller to own it.

    Missing and foreign resources both answer 404 so the response does not
    reveal which ids exist.
    """

    name: ClassVar[str] = "validate_resource_ownership"
    position: ClassVar[int] = 4

    def __init__(
        self, resolver: OwnershipResolver, resource_type: ResourceType, *, param: str = "id"
    ) -> None:
        self._resolver = resolver
        self._resource_type = resource_type
        self._param = param

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        resource_id = str(ctx.path_params.get(self._param) or "")
        not_found = Denial(self.name, 404, ApiErrorCode.NOT_FOUND, f"{self._resource_type} not found")
        if not resource_id or ctx.user is None:
            return not_found
        owner_id = self._resolver.owner_of(self._resource_type, resource_id)
        if owner_id is None:
            return not_found
        if owner_id != ctx.user.user_id and not _is_admin(ctx):
            return not_found
        return ctx.evolve(resource_id=resource_id, resource_owner_id=owner_id)


class RequirePermission:
    """Look up ``(role, action, resource)`` in the permission matrix."""

    name: ClassVar[str] = "require_permission"
    position: ClassVar[int] = 5

    def __init__(self, action: str, resource_type: ResourceType, *, scope: str = "own") -> None:
        self._action = action
        self._resource_type = resource_type
        self._scope = scope

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        if ctx.user is None:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_INVALID, "Not authenticated")
        if has_permission(ctx.user.role, self._resource_type, self._action, self._scope):
            return ctx
        return Denial(
            self.name,
            403,
            ApiErrorCode.INSUFFICIENT_PERMISSIONS,
            f"Role {ctx.user.role} may not {self._action} {self._resource_type}",
        )


def _collect_strings(value: Any) -> Iterable[str]:
    if isinstance(value, dict):
        for key, item in value.items():
            yield str(key)
            yield from _collect_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _collect_strings(item)
    elif value is not None:
        yield str(value)


def _without_secrets(body: Any) -> Any:
    if not isinstance(body, dict):
        return body
    return {key: ("" if key in SECRET_FIELDS else value) for key, value in body.items()}


def scan_for_patterns(ctx: RequestContext, *, max_body_bytes: int, max_page_limit: int) -> list[str]:
    """Return the heuristic flags raised by the request; empty means clean."""
    flags: list[str] = []
    body = _without_secrets(ctx.body)
    location = " ".join([ctx.path, *_collect_strings(dict(ctx.query_params))])
    body_text = " ".join(_collect_strings(body))
    everything = f"{location} {body_text}"
    upper = everything.upper()
    lower = everything.lower()

    if any(pattern.lower() in lower for pattern in PATH_TRAVERSAL_PATTERNS):
        flags.append("PATH_TRAVERSAL")
    if any(pattern in upper for pattern in SQL_INJECTION_PATTERNS):
        flags.append("SQL_INJECTION")
    body_keys = json.dumps(body, default=str) if body is not None else ""
    query_keys = " ".join(ctx.query_params.keys())
    if any(pattern in body_keys or pattern in query_keys for pattern in NOSQL_INJECTION_PATTERNS):
        flags.append("NOSQL_INJECTION")
    if any(pattern in lower for pattern in XSS_PATTERNS):
        flags.append("XSS")
    if ctx.body_size > max_body_bytes:
        flags.append("OVERSIZED_PAYLOAD")

    is_admin = _is_admin(ctx)
    if "/admin/" in f"{ctx.path}/" and not is_admin:
        flags.append("UNAUTHORIZED_ADMIN_ACCESS")
    try:
        limit = int(ctx.query_params.get("limit") or 0)
    except ValueError:
        limit = 0
    if limit > max_page_limit and not is_admin:
        flags.append("POTENTIAL_DATA_SCRAPING")
    return flags


class DetectMaliciousRequests:
    """Screen path, query and body for injection patterns and abuse signals.

    Every flagged request counts against the caller's IP in the suspicious
    scope; once that quota is exhausted the IP is blocked until its cooldown
    ends.
    """

    name: ClassVar[str] = "detect_malicious_requests"
    position: ClassVar[int] = 6

    def __init__(self, limiter: RateLimiter, *, max_body_bytes: int, max_page_limit: int = 100) -> None:
        self._limiter = limiter
        self._max_body_bytes = max_body_bytes
        self._max_page_limit = max_page_limit

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        blocked = self._limiter.peek(RateLimitScope.SUSPICIOUS, ctx.client_ip)
        if not blocked.allowed:
            self._log(ctx, ["BLOCKED_IP"], "blocked")
            return Denial(
                self.name,
                403,
                ApiErrorCode.SUSPICIOUS_REQUEST,
                "Too many suspicious requests from this address",
                retry_after_seconds=blocked.retry_after_seconds,
            )

        flags = scan_for_patterns(
            ctx, max_body_bytes=self._max_body_bytes, max_page_limit=self._max_page_limit
        )
        if not flags:
            self._log(ctx, flags, "clean")
            return ctx

        admission = self._limiter.admit(RateLimitScope.SUSPICIOUS, ctx.client_ip)
        if SEVERE_FLAGS.intersection(flags):
            self._log(ctx, flags, "blocked")
            return Denial(
                self.name,
                400,
                ApiErrorCode.SUSPICIOUS_REQUEST,
                "Request blocked due to security concerns",
            )
        if not admission.allowed:
            self._log(ctx, flags, "blocked")
            return Denial(
                self.name,
                403,
                ApiErrorCode.SUSPICIOUS_REQUEST,
                "Too many suspicious requests from this address",
                retry_after_seconds=admission.retry_after_seconds,
            )
        self._log(ctx, flags, "flagged")
        return ctx.evolve(flags=tuple(flags))

    @staticmethod
    def _log(ctx: RequestContext, flags: list[str], outcome: str) -> None:
        log = LOGGER.info if outcome == "clean" else LOGGER.warning
        log(
            "request_screened",
            extra={
                "actor_id": ctx.actor_id,
                "client_ip": ctx.client_ip,
                "path": ctx.path,
                "method": ctx.method,
                "patterns": flags,
                "outcome": outcome,
            },
        )


class PreventCrossUserAccess:
    """Reject bodies or queries that name another user as the target."""

    name: ClassVar[str] = "prevent_cross_user_access"
    position: ClassVar[int] = 7

    def __init__(self, field: str = "user_id") -> None:
        self._field = field

    def __call__(self, ctx: RequestContext) -> RequestContext | Denial:
        if ctx.user is None:
            return Denial(self.name, 401, ApiErrorCode.AUTH_TOKEN_INVALID, "Not authenticated")
        if _is_admin(ctx):
            return ctx
        claimed: list[str] = []
        if isinstance(ctx.body, dict) and self._field in ctx.body:
            claimed.append(str(ctx.body[self._field]))
        if self._field in ctx.query_params:
            claimed.append(str(ctx.query_params[self._field]))
        if any(value != ctx.user.user_id for value in claimed):
            return Denial(
                self.name,
                403,
                ApiErrorCode.CROSS_USER_ACCESS_DENIED,
                "Cannot act on behalf of another user",
            )
        return ctx


class SecurityAuditLogger:
    """Record the terminal outcome of the pipeline; never denies."""

    name: ClassVar[str] = "security_audit_logger"
    position: ClassVar[int] = 8

    def __init__(self, audit_log: SecurityAuditLog, action: str, resource_type: ResourceType) -> None:
        self._audit_log = audit_log
        self.action = action
        self.resource_type = resource_type

    def __call__(self, ctx: RequestContext) -> RequestContext:
        self.record(ctx, None)
        return ctx

    def record(self, ctx: RequestContext, denial: Denial | None) -> AuditEntry:
        resource_id = ctx.resource_id or str(
            ctx.path_params.get("id") or ctx.path_params.get("user_id") or ""
        )
        reason = ",".join(ctx.flags)
        if denial is not None:
            reason = f"{denial.error_code}: {denial.message}"
        return self._audit_log.record(
            AuditEntry(
                actor_id=ctx.actor_id,
                actor_role=ctx.actor_role,
                action=self.action,
                resource_type=str(self.resource_type),
                resource_id=resource_id,
                outcome="denied" if denial is not None else "allowed",
                stage=denial.stage if denial is not None else self.name,
                reason=reason,
                client_ip=ctx.client_ip,
                method=ctx.method,
                path=ctx.path,
                correlation_id=ctx.correlation_id,
            )
        )
