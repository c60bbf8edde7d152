from __future__ import annotations

from pathlib import Path

from fastapi.routing import APIRoute

from marketauth.core.clock import FrozenClock
from tests.mock_app import RecordingGateway, endpoint, make_config
from web_api import app, create_app


def _schema_ref(operation: dict, status: str) -> str:
    return operation["responses"][status]["content"]["application/json"]["schema"]["$ref"]


def test_health_endpoint_contract_function() -> None:
    route = next(
        (
            candidate
            for candidate in app.routes
            if isinstance(candidate, APIRoute) and candidate.path == "/health"
        ),
        None,
    )

    assert route is not None
    payload = route.endpoint()
    assert payload.model_dump() == {"status": "ok"}


def test_openapi_contains_otp_contracts() -> None:
    schema = app.openapi()

    register = schema["paths"]["/auth/register"]["post"]
    assert _schema_ref(register, "201").endswith("RegisterResponse")

    verify = schema["paths"]["/auth/verify-otp"]["post"]
    assert _schema_ref(verify, "200").endswith("VerifyOTPResponse")
    for status in ("400", "410", "423", "429"):
        assert _schema_ref(verify, status).endswith("ApiErrorResponse")

    resend = schema["paths"]["/auth/resend-otp"]["post"]
    assert _schema_ref(resend, "429").endswith("ApiErrorResponse")
    assert _schema_ref(resend, "504").endswith("ApiErrorResponse")


def test_openapi_contains_auth_rate_limit_contract() -> None:
    schema = app.openapi()
    login = schema["paths"]["/auth/login"]["post"]

    assert _schema_ref(login, "429").endswith("ApiErrorResponse")
    assert _schema_ref(login, "423").endswith("ApiErrorResponse")


def test_openapi_contains_guarded_resource_contracts() -> None:
    schema = app.openapi()

    artisan = schema["paths"]["/artisans/{id}"]["put"]
    assert _schema_ref(artisan, "200").endswith("ResourceResponse")
    assert _schema_ref(artisan, "404").endswith("ApiErrorResponse")
    assert _schema_ref(artisan, "403").endswith("ApiErrorResponse")

    audit = schema["paths"]["/admin/audit-log"]["get"]
    assert _schema_ref(audit, "200").endswith("AuditLogResponse")


def test_every_protected_route_runs_a_pipeline(tmp_path: Path) -> None:
    built = create_app(
        make_config(), app_root=tmp_path, clock=FrozenClock(), gateway=RecordingGateway()
    )
    public = {
        "/health",
        "/auth/register",
        "/auth/login",
        "/auth/send-otp",
        "/auth/resend-otp",
        "/auth/verify-otp",
        "/auth/otp-status",
        "/auth/refresh-token",
        "/auth/logout",
    }

    for route in built.routes:
        if not isinstance(route, APIRoute) or route.path in public:
            continue
        names = {dependency.name for dependency in route.dependant.dependencies}
        assert "ctx" in names, route.path

    assert endpoint(built, "/health", "GET")().status == "ok"


def test_openapi_contains_account_management_contracts() -> None:
    schema = app.openapi()

    change = schema["paths"]["/auth/change-password"]["post"]
    assert _schema_ref(change, "200").endswith("PasswordChangeResponse")
    assert _schema_ref(change, "400").endswith("ApiErrorResponse")

    status = schema["paths"]["/auth/verification/status"]["get"]
    assert _schema_ref(status, "200").endswith("VerificationStatusResponse")

    remove = schema["paths"]["/users/{user_id}"]["delete"]
    assert "204" in remove["responses"]
