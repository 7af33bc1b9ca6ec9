"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "demo_mode": settings.CRM_DEMO_MODE,
    }


async def _check_dependencies() -> dict:
    """Check database connectivity and which providers are configured."""
    settings = get_settings()
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    checks["providers"] = {
        "hubspot": bool(settings.HUBSPOT_CLIENT_ID and settings.HUBSPOT_CLIENT_SECRET),
        "salesforce": bool(settings.SALESFORCE_CLIENT_ID and settings.SALESFORCE_CLIENT_SECRET),
        "attio": bool(settings.ATTIO_CLIENT_ID and settings.ATTIO_CLIENT_SECRET),
    }
    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: verifies DB connectivity.

    Returns 200 if the database answers, 503 otherwise.
    """
    checks = await _check_dependencies()
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
