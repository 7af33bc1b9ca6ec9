"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with organization-aware before_send callback
- track_sync_run(): Context manager for sync run metrics
- record_sync_counts(): Per-entity record counters
- get_metrics_response(): FastAPI route handler for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

ORGANIZATION_HEADER = "X-Organization-ID"

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

crm_sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Total CRM sync runs",
    ["provider", "operation", "status"],
)

crm_sync_duration_seconds = Histogram(
    "crm_sync_duration_seconds",
    "CRM sync run duration in seconds",
    ["provider", "operation"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "CRM records handled by sync runs",
    ["provider", "entity_type", "outcome"],
)

crm_webhook_events_total = Counter(
    "crm_webhook_events_total",
    "Inbound CRM webhook events",
    ["provider", "outcome"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    Organization ids are not used as labels (unbounded cardinality).
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helpers ────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(
    provider: str,
    operation: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync run.

    Usage:
        async with track_sync_run("hubspot", "full_sync") as tracker:
            result = await run(...)
            tracker["status"] = result.status.value

    Records the duration and a run count labelled with tracker["status"]
    ("error" when the block raises).
    """
    tracker: dict[str, Any] = {"status": "SUCCESS"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        crm_sync_runs_total.labels(
            provider=provider,
            operation=operation,
            status=tracker["status"],
        ).inc()
        crm_sync_duration_seconds.labels(
            provider=provider,
            operation=operation,
        ).observe(duration)


def record_sync_counts(provider: str, entity_type: str, counts: Any) -> None:
    """Add a SyncCounts-like object's counters to the records metric."""
    for outcome in ("created", "updated", "skipped", "failed"):
        value = getattr(counts, outcome, 0)
        if value:
            crm_sync_records_total.labels(
                provider=provider,
                entity_type=entity_type,
                outcome=outcome,
            ).inc(value)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with organization-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the requesting organization when known."""
        headers = (event.get("request") or {}).get("headers") or {}
        organization_id = headers.get(ORGANIZATION_HEADER) or headers.get(
            ORGANIZATION_HEADER.lower()
        )
        if organization_id:
            event.setdefault("tags", {})["organization_id"] = organization_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
