"""Health endpoint and application lifecycle hooks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from fastapi import FastAPI

from marketauth.api.contracts import HealthResponse

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeRouteDeps:
    """Collaborators needed by the runtime routes."""

    on_startup: Sequence[Callable[[], object]] = ()
    on_shutdown: Sequence[Callable[[], None]] = ()


def register_runtime_routes(app: FastAPI, *, deps: RuntimeRouteDeps) -> None:
    """Register the health endpoint and startup/shutdown hooks."""

    @app.on_event("startup")
    async def run_startup_hooks() -> None:
        for hook in deps.on_startup:
            hook()

    @app.on_event("shutdown")
    async def close_state_stores() -> None:
        for close in deps.on_shutdown:
            close()
        LOGGER.info("state_stores_closed")

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")
