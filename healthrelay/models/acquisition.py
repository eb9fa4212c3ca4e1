"""Pydantic response models for the acquisition endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from healthrelay.models.base import RelayBase
from healthrelay.wearables.base import AuthResult, ConnectionStatus, SourceProvider
from healthrelay.wearables.orchestrator import CycleState


# ---------- Records ----------

class MetricRecordRead(RelayBase):
    recorded_at: datetime
    source_provider: SourceProvider
    steps: int | None = None
    sleep_sessions: int | None = None
    heart_rate: float | None = None
    systolic_bp: float | None = None
    diastolic_bp: float | None = None
    oxygen_saturation: float | None = None
    respiratory_rate: float | None = None
    body_temperature: float | None = None
    blood_glucose: float | None = None


# ---------- Cycles ----------

class ProviderAttemptRead(RelayBase):
    provider: SourceProvider
    auth: AuthResult | None = None
    outcome: str
    error: str | None = None


class AckRead(RelayBase):
    status_code: int
    body: dict[str, Any]
    received_at: datetime


class CycleResultRead(RelayBase):
    status: ConnectionStatus
    provider: SourceProvider | None = None
    synced: bool
    error: str | None = None
    record: MetricRecordRead | None = None
    ack: AckRead | None = None
    attempts: list[ProviderAttemptRead]
    started_at: datetime
    finished_at: datetime | None = None


# ---------- Status ----------

class AcquisitionStatusRead(RelayBase):
    status: ConnectionStatus
    state: CycleState
    is_running: bool
    platform: str
    providers: list[SourceProvider]
    last_cycle: CycleResultRead | None = None
