"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from healthrelay.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthrelay.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports the acquisition connection status and whether the
    background scheduler is running.
    """
    settings = get_settings()
    orchestrator = getattr(request.app.state, "orchestrator", None)
    scheduler = getattr(request.app.state, "scheduler", None)

    pipeline_ok = orchestrator is not None
    if not pipeline_ok:
        logger.warning("Health check: acquisition pipeline not started")

    return {
        "status": "healthy" if pipeline_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "platform": settings.platform,
        "connection": orchestrator.status.value if pipeline_ok else "unavailable",
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
