"""Pipeline-guarded resource and admin routes."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response

from marketauth.api.contracts import (
    ApiErrorResponse,
    AuditEntryResponse,
    AuditLogResponse,
    OTPCleanupResponse,
    OTPStatsResponse,
    ResourceResponse,
    UserResponse,
)
from marketauth.api.errors import ApiError, ApiErrorCode
from marketauth.auth.models import Role
from marketauth.auth.service import AuthService
from marketauth.core.clock import Clock, SystemClock
from marketauth.otp.manager import OTPManager
from marketauth.pipeline.audit import SecurityAuditLog
from marketauth.pipeline.context import RequestContext
from marketauth.pipeline.pipeline import PipelineFactory, guard
from marketauth.resources.models import (
    AddressUpdateRequest,
    ArtisanUpdateRequest,
    OwnedResource,
    PayoutUpdateRequest,
    ResourceType,
    RoleChangeRequest,
)
from marketauth.resources.repository import ResourceRepository

ALL_ROLES = (Role.CUSTOMER, Role.ARTISAN, Role.DISTRIBUTOR, Role.ADMIN)
_GUARDED = {
    401: {"model": ApiErrorResponse},
    403: {"model": ApiErrorResponse},
    404: {"model": ApiErrorResponse},
}


def _to_response(resource: OwnedResource) -> ResourceResponse:
    return ResourceResponse(
        resource_type=str(resource.resource_type),
        resource_id=resource.resource_id,
        owner_id=resource.owner_id,
        data=resource.data,
        updated_at=resource.updated_at,
    )


def create_resources_router(
    *,
    pipelines: PipelineFactory,
    resources: ResourceRepository,
    auth_service: AuthService,
    otp_manager: OTPManager,
    audit_log: SecurityAuditLog,
    clock: Clock | None = None,
) -> APIRouter:
    """Build protected marketplace routes; every one runs its own pipeline."""
    router = APIRouter(tags=["resources"])
    clock = clock or SystemClock()

    read_artisan = guard(
        pipelines.build(
            action="read", resource_type=ResourceType.ARTISAN, roles=ALL_ROLES, permission_scope="public"
        )
    )
    update_artisan = guard(
        pipelines.build(
            action="update",
            resource_type=ResourceType.ARTISAN,
            roles=(Role.ARTISAN, Role.ADMIN),
            ownership_param="id",
        )
    )
    update_payout = guard(
        pipelines.build(
            action="update",
            resource_type=ResourceType.ARTISAN,
            roles=(Role.ARTISAN, Role.ADMIN),
            require_identity=True,
            ownership_param="id",
        )
    )
    read_user = guard(
        pipelines.build(
            action="read", resource_type=ResourceType.USER, roles=ALL_ROLES, ownership_param="user_id"
        )
    )
    delete_user = guard(
        pipelines.build(
            action="delete", resource_type=ResourceType.USER, roles=(Role.ADMIN,), permission_scope="all"
        )
    )
    update_address = guard(
        pipelines.build(
            action="update",
            resource_type=ResourceType.ADDRESS,
            roles=ALL_ROLES,
            cross_user_field="user_id",
        )
    )
    read_audit = guard(
        pipelines.build(
            action="read", resource_type=ResourceType.AUDIT_LOG, roles=(Role.ADMIN,), permission_scope="all"
        )
    )
    read_otp_stats = guard(
        pipelines.build(
            action="read", resource_type=ResourceType.OTP, roles=(Role.ADMIN,), permission_scope="all"
        )
    )
    cleanup_otp = guard(
        pipelines.build(
            action="delete", resource_type=ResourceType.OTP, roles=(Role.ADMIN,), permission_scope="all"
        )
    )
    admin_update_user = guard(
        pipelines.build(
            action="update", resource_type=ResourceType.USER, roles=(Role.ADMIN,), permission_scope="all"
        )
    )

    def _load(resource_type: ResourceType, resource_id: str) -> OwnedResource:
        resource = resources.get(resource_type, resource_id)
        if resource is None:
            raise ApiError(
                status_code=404, error_code=ApiErrorCode.NOT_FOUND, message=f"{resource_type} not found"
            )
        return resource

    @router.get("/artisans/{id}", response_model=ResourceResponse, responses=_GUARDED)
    def get_artisan(id: str, ctx: RequestContext = Depends(read_artisan)) -> ResourceResponse:
        """Public artisan profile; payout details are never included."""
        resource = _load(ResourceType.ARTISAN, id)
        public = {key: value for key, value in resource.data.items() if key != "payout"}
        if ctx.actor_id == resource.owner_id or ctx.actor_role == Role.ADMIN:
            public = resource.data
        return _to_response(resource.model_copy(update={"data": public}))

    @router.put("/artisans/{id}", response_model=ResourceResponse, responses=_GUARDED)
    def put_artisan(
        id: str, req: ArtisanUpdateRequest, ctx: RequestContext = Depends(update_artisan)
    ) -> ResourceResponse:
        """Update the caller's own artisan profile."""
        fields = req.model_dump(exclude_none=True)
        updated = resources.merge_data(ResourceType.ARTISAN, id, fields, now=clock.now())
        if updated is None:
            return _to_response(_load(ResourceType.ARTISAN, id))
        return _to_response(updated)

    @router.put("/artisans/{id}/payout", response_model=ResourceResponse, responses=_GUARDED)
    def put_payout(
        id: str, req: PayoutUpdateRequest, ctx: RequestContext = Depends(update_payout)
    ) -> ResourceResponse:
        """Store bank details for an identity-verified artisan."""
        payout = {
            "account_holder": req.account_holder,
            "account_last4": req.account_number[-4:],
            "ifsc": req.ifsc,
        }
        updated = resources.merge_data(ResourceType.ARTISAN, id, {"payout": payout}, now=clock.now())
        if updated is None:
            return _to_response(_load(ResourceType.ARTISAN, id))
        return _to_response(updated)

    @router.get("/users/{user_id}", response_model=UserResponse, responses=_GUARDED)
    def get_user(user_id: str, ctx: RequestContext = Depends(read_user)) -> UserResponse:
        return UserResponse(user=auth_service.get_user(user_id).public_view())

    @router.delete(
        "/users/{user_id}", status_code=204, response_class=Response, responses=_GUARDED
    )
    def remove_user(user_id: str, ctx: RequestContext = Depends(delete_user)) -> Response:
        """Deactivate an account and end its sessions."""
        auth_service.deactivate_user(user_id, admin_id=ctx.actor_id)
        return Response(status_code=204)

    @router.put("/addresses", response_model=ResourceResponse, responses=_GUARDED)
    def put_address(
        req: AddressUpdateRequest, ctx: RequestContext = Depends(update_address)
    ) -> ResourceResponse:
        """Create or replace the address of the user named in the body."""
        now = clock.now()
        data = req.model_dump(exclude={"user_id"})
        existing = resources.find_by_owner(ResourceType.ADDRESS, req.user_id)
        resource = OwnedResource(
            resource_type=ResourceType.ADDRESS,
            resource_id=existing.resource_id if existing else uuid.uuid4().hex,
            owner_id=req.user_id,
            data=data,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        resources.upsert(resource)
        return _to_response(resource)

    @router.get("/admin/audit-log", response_model=AuditLogResponse, responses=_GUARDED)
    def get_audit_log(
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        actor_id: str = Query(default=""),
        outcome: str = Query(default=""),
        ctx: RequestContext = Depends(read_audit),
    ) -> AuditLogResponse:
        """Export audit records, newest first."""
        entries, total = audit_log.export(limit=limit, offset=offset, actor_id=actor_id, outcome=outcome)
        return AuditLogResponse(
            items=[AuditEntryResponse(**entry.model_dump()) for entry in entries],
            total=total,
            limit=limit,
            offset=offset,
        )

    @router.get("/admin/otp-stats", response_model=OTPStatsResponse, responses=_GUARDED)
    def get_otp_stats(ctx: RequestContext = Depends(read_otp_stats)) -> OTPStatsResponse:
        stats = otp_manager.statistics()
        return OTPStatsResponse(
            pending=stats.pending,
            verified=stats.verified,
            expired=stats.expired,
            locked=stats.locked,
            sent_last_24h=stats.sent_last_24h,
        )

    @router.post("/admin/otp/cleanup", response_model=OTPCleanupResponse, responses=_GUARDED)
    def post_otp_cleanup(ctx: RequestContext = Depends(cleanup_otp)) -> OTPCleanupResponse:
        """Garbage-collect codes past expiry plus the grace window."""
        return OTPCleanupResponse(removed=otp_manager.cleanup())

    @router.patch(
        "/admin/verifications/{user_id}/manual-verify",
        response_model=UserResponse,
        responses=_GUARDED,
    )
    def manual_verify(user_id: str, ctx: RequestContext = Depends(admin_update_user)) -> UserResponse:
        user = auth_service.manual_verify_identity(user_id, admin_id=ctx.actor_id)
        return UserResponse(user=user.public_view())

    @router.put("/admin/users/{user_id}/role", response_model=UserResponse, responses=_GUARDED)
    def put_user_role(
        user_id: str, req: RoleChangeRequest, ctx: RequestContext = Depends(admin_update_user)
    ) -> UserResponse:
        user = auth_service.change_role(user_id, req.role, admin_id=ctx.actor_id)
        return UserResponse(user=user.public_view())

    return router
