"""Manual trigger and status endpoints for the acquisition pipeline."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from healthrelay.dependencies import AppSettings, Coordinator, Orchestrator
from healthrelay.models.acquisition import (
    AcquisitionStatusRead,
    CycleResultRead,
    MetricRecordRead,
)

router = APIRouter(prefix="/acquisition", tags=["acquisition"])


@router.post("/refresh", response_model=CycleResultRead)
async def refresh(coordinator: Coordinator) -> Any:
    """Run one acquisition cycle now and return its outcome."""
    result = await coordinator.run_now()
    if result is None:
        raise HTTPException(status_code=409, detail="An acquisition cycle is already running")
    return CycleResultRead.model_validate(result, from_attributes=True)


@router.get("/status", response_model=AcquisitionStatusRead)
async def get_status(orchestrator: Orchestrator, settings: AppSettings) -> Any:
    last = orchestrator.last_result
    return AcquisitionStatusRead(
        status=orchestrator.status,
        state=orchestrator.state,
        is_running=orchestrator.is_running,
        platform=settings.platform,
        providers=[a.PROVIDER for a in orchestrator.adapters],
        last_cycle=CycleResultRead.model_validate(last, from_attributes=True) if last else None,
    )


@router.get("/record", response_model=MetricRecordRead)
async def get_last_record(orchestrator: Orchestrator) -> Any:
    record = orchestrator.last_record
    if record is None:
        raise HTTPException(status_code=404, detail="No record acquired yet")
    return MetricRecordRead.model_validate(record, from_attributes=True)
