from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

from fastapi import FastAPI
from fastapi.routing import APIRoute
from starlette.requests import Request

from marketauth.core.config import (
    AppConfig,
    AuthConfig,
    LoggingConfig,
    NotificationConfig,
    OTPConfig,
    RateLimitConfig,
    SecurityConfig,
    StorageConfig,
)

PHONE = "+919876543210"
PASSWORD = "s3cret-pass"


def make_config(
    *,
    request_max_bytes: int = 64 * 1024,
    otp: OTPConfig | None = None,
    rate_limits: RateLimitConfig | None = None,
) -> AppConfig:
    return AppConfig(
        auth=AuthConfig(
            secret_key="test-secret",
            access_token_ttl_seconds=900,
            refresh_token_ttl_seconds=3600,
            issuer="marketauth-test",
            admin_email="admin@test.local",
            admin_password="admin-pass",
        ),
        otp=otp or OTPConfig(hash_secret="test-pepper", expose_code=True),
        rate_limits=rate_limits or RateLimitConfig(),
        notifications=NotificationConfig(retry_backoff_seconds=0.0),
        storage=StorageConfig(sqlite_path="runtime/state.db"),
        logging=LoggingConfig(level="INFO"),
        security=SecurityConfig(
            cors_allowed_origins=["http://localhost:3000"],
            request_max_bytes=request_max_bytes,
        ),
    )


@dataclass
class RecordingGateway:
    """Notification gateway fake remembering every delivery."""

    sent: list[tuple[str, str]] = field(default_factory=list)
    accept: bool = True
    errors: list[Exception] = field(default_factory=list)

    def send(self, destination: str, code: str) -> bool:
        self.sent.append((destination, code))
        if self.errors:
            raise self.errors.pop(0)
        return self.accept

    def last_code(self) -> str:
        return self.sent[-1][1]


def make_request(
    path: str,
    method: str = "GET",
    *,
    headers: dict[str, str] | None = None,
    body: Any = None,
    path_params: dict[str, str] | None = None,
    query_string: str = "",
    client_ip: str = "127.0.0.1",
) -> Request:
    raw_body = b"" if body is None else json.dumps(body).encode("utf-8")
    header_items = [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in (headers or {}).items()]
    if raw_body:
        header_items.append((b"content-type", b"application/json"))
        header_items.append((b"content-length", str(len(raw_body)).encode("latin-1")))
    scope: dict[str, Any] = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": query_string.encode("utf-8"),
        "root_path": "",
        "headers": header_items,
        "client": (client_ip, 1234),
        "server": ("testserver", 80),
        "path_params": path_params or {},
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": raw_body, "more_body": False}

    return Request(scope, receive)


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def route(app: FastAPI, path: str, method: str) -> APIRoute:
    for candidate in app.routes:
        if isinstance(candidate, APIRoute) and candidate.path == path and method in candidate.methods:
            return candidate
    raise AssertionError(f"Route {method} {path} not found")


def endpoint(app: FastAPI, path: str, method: str) -> Callable[..., Any]:
    return route(app, path, method).endpoint


def guard_of(app: FastAPI, path: str, method: str) -> Callable[[Request], Any]:
    """Return the authorization dependency attached to a protected route."""
    for dependency in route(app, path, method).dependant.dependencies:
        if dependency.name == "ctx" and dependency.call is not None:
            return dependency.call
    raise AssertionError(f"Route {method} {path} has no guard")
