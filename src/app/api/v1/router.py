"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import health, integrations, webhooks

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(integrations.router)
router.include_router(webhooks.router)
