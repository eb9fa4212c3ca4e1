"""Shared fixtures, fake providers and mock backend responses for acquisition tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from healthrelay.wearables.base import (
    AuthResult,
    MetricRecord,
    ProviderAdapter,
    RawResponse,
    SourceProvider,
    TimeRange,
)
from healthrelay.wearables.config_loader import AcquisitionConfig, load_acquisition_config
from healthrelay.wearables.errors import ProviderUnavailable, SyncError
from healthrelay.wearables.notices import Notice
from healthrelay.wearables.sync.dispatcher import Ack, SyncDispatcher

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical reference time: mid-afternoon, UTC
TEST_NOW = datetime(2026, 2, 23, 15, 30, 0, tzinfo=timezone.utc)
TEST_BACKEND = "https://backend.test"


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeAdapter(ProviderAdapter):
    """Scriptable provider for orchestrator tests.

    ``auth`` / ``raw`` may be values or exceptions; the ``*_delay`` arguments make the
    corresponding call sleep first so timeouts can be exercised.
    """

    DISPLAY_NAME = "Fake Provider"

    def __init__(
        self,
        provider: SourceProvider,
        priority: int,
        auth: AuthResult | BaseException = AuthResult.GRANTED,
        raw: RawResponse | BaseException | None = None,
        auth_delay: float = 0.0,
        fetch_delay: float = 0.0,
    ) -> None:
        super().__init__(priority=priority)
        self.PROVIDER = provider
        self.DISPLAY_NAME = provider.value.replace("_", " ").title()
        self._auth = auth
        self._raw = raw if raw is not None else {}
        self._auth_delay = auth_delay
        self._fetch_delay = fetch_delay
        self.authorize_calls = 0
        self.fetch_calls: list[TimeRange] = []

    async def authorize(self) -> AuthResult:
        self.authorize_calls += 1
        if self._auth_delay:
            await asyncio.sleep(self._auth_delay)
        if isinstance(self._auth, BaseException):
            raise self._auth
        return self._auth

    async def fetch(self, window: TimeRange) -> RawResponse:
        self.fetch_calls.append(window)
        if self._fetch_delay:
            await asyncio.sleep(self._fetch_delay)
        if isinstance(self._raw, BaseException):
            raise self._raw
        return self._raw


class FakeHealthConnectBridge:
    """In-memory stand-in for the native Health Connect module."""

    def __init__(
        self,
        available: bool = True,
        granted: set[str] | None = None,
        grant_on_request: bool = True,
        steps: int | None = 4200,
        records: dict[str, list[dict[str, Any]]] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.available = available
        self.granted = set(granted or ())
        self.grant_on_request = grant_on_request
        self.steps = steps
        self.records = records or {}
        self.failing = failing or set()
        self.requested: list[set[str]] = []
        self.settings_opened = False

    async def is_available(self) -> bool:
        return self.available

    async def get_granted_permissions(self) -> set[str]:
        return set(self.granted)

    async def request_permissions(self, permissions: set[str]) -> set[str]:
        self.requested.append(set(permissions))
        if self.grant_on_request:
            self.granted |= permissions
            return set(permissions)
        return set()

    async def aggregate_steps(self, start: datetime, end: datetime) -> int | None:
        if "Steps" in self.failing:
            raise RuntimeError("aggregate failed")
        return self.steps

    async def read_records(
        self, record_type: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        if record_type in self.failing:
            raise RuntimeError(f"{record_type} read failed")
        return list(self.records.get(record_type, []))

    def open_settings(self) -> None:
        self.settings_opened = True


class FakeHealthKitBridge:
    """In-memory stand-in for the native HealthKit module."""

    def __init__(
        self,
        available: bool = True,
        init_error: BaseException | None = None,
        results: dict[str, list[dict[str, Any]]] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.available = available
        self.init_error = init_error
        self.results = results or {}
        self.failing = failing or set()
        self.init_permissions: list[str] | None = None
        self.queried: list[str] = []

    async def is_available(self) -> bool:
        return self.available

    async def init_health_kit(self, read_permissions: list[str]) -> None:
        self.init_permissions = list(read_permissions)
        if self.init_error is not None:
            raise self.init_error

    async def query(
        self, metric: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        self.queried.append(metric)
        if metric in self.failing:
            raise RuntimeError(f"{metric} query failed")
        return list(self.results.get(metric, []))


# ---------------------------------------------------------------------------
# Config / notices
# ---------------------------------------------------------------------------


@pytest.fixture
def acquisition_config() -> AcquisitionConfig:
    """Load the real bundled acquisition config for tests."""
    return load_acquisition_config()


@pytest.fixture
def notices() -> list[Notice]:
    """A list that doubles as a NoticeSink via ``notices.append``."""
    return []


# ---------------------------------------------------------------------------
# Raw responses / records
# ---------------------------------------------------------------------------


@pytest.fixture
def full_raw() -> RawResponse:
    """A RawResponse with every metric present."""
    return {
        "steps": [
            {"source": "com.google.step_count.delta", "value": 5100},
            {"source": "derived:com.google.step_count.delta:com.google.android.gms:estimated_steps", "value": 4200},
        ],
        "sleep": [{"start": "2026-02-22T23:00:00Z", "end": "2026-02-23T06:45:00Z"}],
        "heart_rate": [{"time": "2026-02-23T15:00:00Z", "value": 72}],
        "blood_pressure": [{"time": "2026-02-23T09:00:00Z", "systolic": 120, "diastolic": 80}],
        "oxygen_saturation": [{"value": 97.5}],
        "respiratory_rate": [{"value": 14.2}],
        "body_temperature": [{"value": 36.7}],
        "blood_glucose": [{"value": 5.4}],
    }


@pytest.fixture
def sample_record() -> MetricRecord:
    return MetricRecord(
        recorded_at=TEST_NOW,
        source_provider=SourceProvider.HEALTH_CONNECT,
        steps=4200,
        sleep_sessions=1,
        heart_rate=72.0,
        systolic_bp=120.0,
        diastolic_bp=80.0,
        oxygen_saturation=97.5,
        respiratory_rate=14.2,
        body_temperature=36.7,
        blood_glucose=5.4,
    )


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def google_fit_steps_raw() -> dict:
    return json.loads((FIXTURES_DIR / "google_fit_steps.json").read_text())


@pytest.fixture
def google_fit_heart_rate_raw() -> dict:
    return json.loads((FIXTURES_DIR / "google_fit_heart_rate.json").read_text())


@pytest.fixture
def google_fit_blood_pressure_raw() -> dict:
    return json.loads((FIXTURES_DIR / "google_fit_blood_pressure.json").read_text())


@pytest.fixture
def google_fit_sessions_raw() -> dict:
    return json.loads((FIXTURES_DIR / "google_fit_sessions.json").read_text())


# ---------------------------------------------------------------------------
# Mock HTTP clients / dispatcher
# ---------------------------------------------------------------------------


def mock_transport_client(handler) -> httpx.AsyncClient:
    """httpx.AsyncClient whose requests are answered by ``handler(request)``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Mock httpx.AsyncClient for tests that only inspect the call."""
    client = MagicMock()
    response = MagicMock()
    response.status_code = 200
    response.json = MagicMock(return_value={"id": 1})
    client.post = AsyncMock(return_value=response)
    client.request = AsyncMock(return_value=response)
    return client


@pytest.fixture
def mock_dispatcher() -> MagicMock:
    """SyncDispatcher double whose send() acknowledges immediately."""
    dispatcher = MagicMock(spec=SyncDispatcher)
    dispatcher.send = AsyncMock(return_value=Ack(status_code=201, body={"id": 1}))
    return dispatcher


@pytest.fixture
def failing_dispatcher() -> MagicMock:
    dispatcher = MagicMock(spec=SyncDispatcher)
    dispatcher.send = AsyncMock(side_effect=SyncError("Backend returned HTTP 500", status_code=500))
    return dispatcher


def unavailable(provider: SourceProvider) -> ProviderUnavailable:
    return ProviderUnavailable(f"{provider.value} fetch failed", provider=provider.value)
