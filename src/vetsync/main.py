"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan wiring of the registry, data sync and GHL services, and the v1
API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.vetsync.api.errors import register_exception_handlers
from src.vetsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.vetsync.api.v1.router import router as v1_router
from src.vetsync.config import get_settings
from src.vetsync.core.database import close_db, get_session, init_db
from src.vetsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.vetsync.core.realtime import ChangeNotifier
from src.vetsync.core.redis import close_redis, get_redis_pool
from src.vetsync.datasync.handlers import SyncHandlers
from src.vetsync.datasync.queue import DataSyncQueue
from src.vetsync.datasync.repository import DataSyncRepository
from src.vetsync.ghl import GHLClient, GHLRepository, GHLSyncEngine, OAuthStateStore
from src.vetsync.registry.organizations import OrganizationManager
from src.vetsync.registry.repository import ClientRepository, RegistryRepository
from src.vetsync.registry.resolver import CrossProductUserResolver

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services; close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    redis_client = get_redis_pool()
    notifier = ChangeNotifier(redis_client)

    # ── Registry and Data Sync ──────────────────────────────────────────
    # Each module is wrapped in its own try/except so one failure leaves
    # its endpoints answering 503 instead of preventing startup.

    app.state.data_sync_queue = None
    app.state.user_resolver = None
    app.state.organization_manager = None
    try:
        registry_repo = RegistryRepository(session_factory=get_session, notifier=notifier)
        client_repo = ClientRepository(session_factory=get_session, notifier=notifier)
        data_sync_queue = DataSyncQueue(
            repository=DataSyncRepository(session_factory=get_session, notifier=notifier),
            handlers=SyncHandlers(registry_repo, client_repo),
        )
        app.state.data_sync_queue = data_sync_queue
        app.state.user_resolver = CrossProductUserResolver(
            registry_repo,
            queue=data_sync_queue,
            current_product=settings.CURRENT_PRODUCT,
        )
        app.state.organization_manager = OrganizationManager(registry_repo)
        log.info("startup.registry_initialized", current_product=settings.CURRENT_PRODUCT)
    except Exception:
        log.warning("startup.registry_init_failed", exc_info=True)

    # ── GoHighLevel ─────────────────────────────────────────────────────

    app.state.ghl_client = None
    app.state.ghl_repository = None
    app.state.ghl_sync_engine = None
    try:
        ghl_repo = GHLRepository(session_factory=get_session)
        ghl_client = GHLClient(
            ghl_repo,
            OAuthStateStore(redis_client, ttl_seconds=settings.GHL_OAUTH_STATE_TTL_SECONDS),
            settings=settings,
        )
        app.state.ghl_repository = ghl_repo
        app.state.ghl_client = ghl_client
        app.state.ghl_sync_engine = GHLSyncEngine(
            ghl_client,
            ghl_repo,
            ClientRepository(session_factory=get_session, notifier=notifier),
            settings=settings,
        )
        log.info("startup.ghl_initialized", oauth_configured=settings.ghl_oauth_configured())
    except Exception:
        log.warning("startup.ghl_init_failed", exc_info=True)

    yield

    if app.state.data_sync_queue is not None:
        await app.state.data_sync_queue.wait_for_drains()
    if app.state.ghl_client is not None:
        await app.state.ghl_client.aclose()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="VetSync API",
        version="0.1.0",
        description="Cross-product data sync for veterinary clinic management",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
