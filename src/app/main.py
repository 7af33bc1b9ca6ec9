"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and integration service wiring,
and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.config import Settings, get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.integrations.demo import DemoIntegrationService
from src.app.integrations.oauth import TokenManager
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.service import IntegrationService
from src.app.integrations.sync import SyncOrchestrator
from src.app.integrations.webhooks import WebhookProcessor


def build_integration_services(app: FastAPI, settings: Settings) -> None:
    """Construct the integration object graph and attach it to app.state."""
    repository = IntegrationRepository(session_factory=get_session)
    token_manager = TokenManager(repository)
    orchestrator = SyncOrchestrator(
        repository,
        token_manager,
        page_size=settings.SYNC_PAGE_SIZE,
        concurrency=settings.SYNC_CONCURRENCY,
    )
    demo = DemoIntegrationService(repository, sync_delay_seconds=settings.DEMO_SYNC_DELAY_SECONDS)

    app.state.integration_repository = repository
    app.state.integration_service = IntegrationService(
        repository,
        token_manager,
        orchestrator,
        demo,
        demo_mode=settings.CRM_DEMO_MODE,
        settings=settings,
    )
    app.state.webhook_processor = WebhookProcessor(repository, orchestrator, token_manager)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    build_integration_services(app, settings)
    log.info(
        "app.integrations_initialized",
        demo_mode=settings.CRM_DEMO_MODE,
        environment=settings.ENVIRONMENT.value,
    )

    yield

    await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync Engine",
        version="0.1.0",
        description="Bidirectional sync between the product and HubSpot, Salesforce and Attio",
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

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
