"""Structured request logging middleware.

Each request runs inside a structlog context carrying request_id and, when
the caller sends X-Organization-ID, organization_id. Everything logged while
serving the request (sync runs, webhook events, token refreshes) inherits
those keys through ``structlog.contextvars``.

An incoming X-Request-ID is reused so a request can be traced across
services; otherwise a UUID is generated. The id is echoed on the response.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings
from src.app.core.monitoring import ORGANIZATION_HEADER

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Health checks and metric scrapes, logged at debug
QUIET_PATHS = frozenset({"/metrics", "/api/v1/health", "/api/v1/health/ready"})


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(message)s")
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _request_id(request: Request) -> str:
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    if incoming and len(incoming) <= 128:
        return incoming
    return str(uuid.uuid4())


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds request context for downstream logs and logs the outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id(request)
        context = {"request_id": request_id}
        organization_id = request.headers.get(ORGANIZATION_HEADER)
        if organization_id:
            context["organization_id"] = organization_id

        start_time = time.monotonic()
        with structlog.contextvars.bound_contextvars(**context):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            status_code = response.status_code
            if status_code >= 500:
                log_method = logger.error
            elif status_code >= 400:
                log_method = logger.warning
            elif request.url.path in QUIET_PATHS:
                log_method = logger.debug
            else:
                log_method = logger.info
            log_method(
                "http.request_completed",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
        return response
