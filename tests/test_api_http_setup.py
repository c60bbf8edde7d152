from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Coroutine, cast

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import Response

from marketauth.api.errors import ApiError, ApiErrorCode
from marketauth.api.http_setup import (
    client_ip_of,
    register_exception_handlers,
    register_http_middleware,
)
from marketauth.core.retry import DependencyError
from marketauth.core.state_db import StoreTimeoutError
from marketauth.notifications.gateway import NotificationUnavailableError
from tests.mock_app import make_config, make_request

LOGGER = logging.getLogger(__name__)


def _app() -> FastAPI:
    app = FastAPI()
    register_http_middleware(app, config=make_config(request_max_bytes=8), logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)
    return app


def _dispatch_by_name(app: FastAPI, name: str):
    for middleware in app.user_middleware:
        dispatch = middleware.kwargs.get("dispatch")
        if callable(dispatch) and getattr(dispatch, "__name__", "") == name:
            return dispatch
    raise AssertionError(f"Dispatch {name!r} not found")


def _resolve_response(result: Response | Awaitable[Response]) -> Response:
    if inspect.iscoroutine(result):
        return asyncio.run(cast(Coroutine[Any, Any, Response], result))
    return cast(Response, result)


async def _ok(_request: Request) -> Response:
    return Response(content="ok", status_code=200)


def test_http_setup_adds_security_headers_and_request_id() -> None:
    app = _app()
    dispatch = _dispatch_by_name(app, "request_logging_middleware")
    request = make_request("/ok", headers={"X-Request-ID": "req-123"})

    response = asyncio.run(dispatch(request, _ok))

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"] == "no-store"


def test_http_setup_rejects_large_request_before_handler() -> None:
    app = _app()
    dispatch = _dispatch_by_name(app, "request_size_limit_middleware")
    request = make_request("/auth/register", "POST", headers={"Content-Length": "20"})

    response = asyncio.run(dispatch(request, _ok))

    assert response.status_code == 413
    assert json.loads(response.body)["error_code"] == "REQUEST_TOO_LARGE"


def test_http_setup_serializes_api_error_with_retry_after() -> None:
    app = _app()
    handler = app.exception_handlers[HTTPException]
    error = ApiError(
        status_code=429,
        error_code=ApiErrorCode.RATE_LIMITED,
        message="slow down",
        retry_after_seconds=30,
    )

    response = _resolve_response(handler(make_request("/auth/login", "POST"), error))

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "30"
    assert json.loads(response.body) == {
        "error_code": "RATE_LIMITED",
        "message": "slow down",
        "retry_after_seconds": 30,
    }


def test_http_setup_maps_validation_errors_to_400() -> None:
    app = _app()
    handler = app.exception_handlers[RequestValidationError]

    response = _resolve_response(
        handler(make_request("/auth/verify-otp", "POST"), RequestValidationError([]))
    )

    assert response.status_code == 400
    assert b"VALIDATION_ERROR" in response.body


def test_http_setup_maps_dependency_failures() -> None:
    app = _app()
    handler = app.exception_handlers[Exception]
    dependency_handler = app.exception_handlers[DependencyError]

    timeout = _resolve_response(dependency_handler(make_request("/x"), StoreTimeoutError("locked")))
    unavailable = _resolve_response(
        dependency_handler(make_request("/x"), NotificationUnavailableError("down"))
    )
    unexpected = _resolve_response(handler(make_request("/boom"), RuntimeError("boom")))

    assert timeout.status_code == 504
    assert b"DEPENDENCY_TIMEOUT" in timeout.body
    assert unavailable.status_code == 502
    assert b"DEPENDENCY_UNAVAILABLE" in unavailable.body
    assert unexpected.status_code == 500
    assert b"INTERNAL_SERVER_ERROR" in unexpected.body
    assert b"boom" not in unexpected.body


def test_client_ip_prefers_forwarded_for() -> None:
    forwarded = make_request("/", headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
    direct = make_request("/", client_ip="198.51.100.7")

    assert client_ip_of(forwarded) == "203.0.113.9"
    assert client_ip_of(direct) == "198.51.100.7"
