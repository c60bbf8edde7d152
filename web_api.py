from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketauth.api.http_setup import register_exception_handlers, register_http_middleware
from marketauth.api.runtime_routes import RuntimeRouteDeps, register_runtime_routes
from marketauth.auth.repository import AuthRepository
from marketauth.auth.router import create_auth_router
from marketauth.auth.service import AuthService
from marketauth.auth.tokens import TokenIssuer
from marketauth.core.clock import Clock, SystemClock
from marketauth.core.config import AppConfig
from marketauth.core.logging import setup_logging
from marketauth.core.mongo_migrations import apply_mongo_migrations
from marketauth.notifications.gateway import NotificationGateway, build_notification_gateway
from marketauth.otp.manager import OTPManager
from marketauth.otp.store import SQLiteOTPStore
from marketauth.pipeline.audit import SecurityAuditLog
from marketauth.pipeline.pipeline import PipelineFactory
from marketauth.ratelimit.limiter import RateLimiter, policies_from_config
from marketauth.resources.repository import OwnershipResolver, ResourceRepository
from marketauth.resources.router import create_resources_router

load_dotenv()
APP_CONFIG = AppConfig.from_env()
setup_logging(APP_CONFIG.logging.level)
LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent


def create_app(
    config: AppConfig | None = None,
    *,
    app_root: Path | None = None,
    clock: Clock | None = None,
    gateway: NotificationGateway | None = None,
) -> FastAPI:
    """Wire stores, services, pipelines and routers into one application.

    Any failure while assembling the authorization pipelines propagates, so a
    misconfigured process never serves protected routes.
    """
    config = config or APP_CONFIG
    root = app_root or APP_ROOT
    clock = clock or SystemClock()
    state_db_path = (root / config.storage.sqlite_path).resolve()
    state_db_path.parent.mkdir(parents=True, exist_ok=True)
    sqlite_timeout = config.storage.sqlite_timeout_seconds

    app = FastAPI(title="Marketplace Auth API", version="1.0.0")
    apply_mongo_migrations(config.storage)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    register_http_middleware(app, config=config, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)

    auth_repo = AuthRepository(
        root, mongo_uri=config.storage.mongo_uri, mongo_db=config.storage.mongo_db
    )
    resource_repo = ResourceRepository(
        root, mongo_uri=config.storage.mongo_uri, mongo_db=config.storage.mongo_db
    )
    otp_store = SQLiteOTPStore(database_path=state_db_path, timeout_seconds=sqlite_timeout)
    limiter = RateLimiter(
        database_path=state_db_path,
        policies=policies_from_config(config.rate_limits),
        clock=clock,
        timeout_seconds=sqlite_timeout,
    )
    audit_log = SecurityAuditLog(
        database_path=state_db_path, clock=clock, timeout_seconds=sqlite_timeout
    )
    otp_manager = OTPManager(
        store=otp_store,
        gateway=gateway
        or build_notification_gateway(
            config.notifications, otp_ttl_seconds=config.otp.ttl_seconds
        ),
        config=config.otp,
        clock=clock,
        retry_backoff_seconds=config.notifications.retry_backoff_seconds,
    )
    issuer = TokenIssuer(auth_repo, config.auth, clock=clock)
    auth_service = AuthService(
        repo=auth_repo,
        issuer=issuer,
        otp_manager=otp_manager,
        limiter=limiter,
        resources=resource_repo,
        config=config,
        clock=clock,
    )
    auth_service.bootstrap_admin_user()

    pipelines = PipelineFactory(
        issuer=issuer,
        users=auth_repo,
        resolver=OwnershipResolver(auth_repo, resource_repo),
        limiter=limiter,
        audit_log=audit_log,
        security=config.security,
    )
    app.include_router(create_auth_router(auth_service, pipelines))
    app.include_router(
        create_resources_router(
            pipelines=pipelines,
            resources=resource_repo,
            auth_service=auth_service,
            otp_manager=otp_manager,
            audit_log=audit_log,
            clock=clock,
        )
    )
    register_runtime_routes(
        app,
        deps=RuntimeRouteDeps(
            on_startup=(otp_manager.cleanup,),
            on_shutdown=(otp_store.close, limiter.close, audit_log.close),
        ),
    )
    return app


app = create_app()
