"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from healthrelay.config import Settings, get_settings
from healthrelay.wearables.orchestrator import AcquisitionOrchestrator
from healthrelay.wearables.sync.scheduler import ScheduleCoordinator


def get_orchestrator(request: Request) -> AcquisitionOrchestrator:
    """Return the orchestrator wired up by the application lifespan."""
    orchestrator: AcquisitionOrchestrator | None = getattr(
        request.app.state, "orchestrator", None
    )
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Acquisition pipeline not started")
    return orchestrator


def get_coordinator(request: Request) -> ScheduleCoordinator:
    coordinator: ScheduleCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Acquisition pipeline not started")
    return coordinator


# Annotated shortcuts for route signatures
Orchestrator = Annotated[AcquisitionOrchestrator, Depends(get_orchestrator)]
Coordinator = Annotated[ScheduleCoordinator, Depends(get_coordinator)]
AppSettings = Annotated[Settings, Depends(get_settings)]
