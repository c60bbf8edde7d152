from __future__ import annotations

import asyncio

from fastapi import FastAPI

from marketauth.api.runtime_routes import RuntimeRouteDeps, register_runtime_routes
from tests.mock_app import endpoint


def _build_app() -> tuple[FastAPI, list[str]]:
    app = FastAPI()
    calls: list[str] = []
    deps = RuntimeRouteDeps(
        on_startup=(lambda: calls.append("cleanup"),),
        on_shutdown=(lambda: calls.append("close-otp"), lambda: calls.append("close-audit")),
    )
    register_runtime_routes(app, deps=deps)
    return app, calls


def test_runtime_routes_health() -> None:
    app, _ = _build_app()
    health = endpoint(app, "/health", "GET")

    assert health().model_dump() == {"status": "ok"}


def test_runtime_routes_startup_and_shutdown_hooks_run_in_order() -> None:
    app, calls = _build_app()

    for hook in app.router.on_startup:
        asyncio.run(hook())
    for hook in app.router.on_shutdown:
        asyncio.run(hook())

    assert calls == ["cleanup", "close-otp", "close-audit"]
