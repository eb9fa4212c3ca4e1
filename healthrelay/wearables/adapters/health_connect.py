"""Android Health Connect adapter.

Health Connect is an on-device SDK, so Python reaches it through a bridge
object (a native module exposed to the host runtime).  The bridge is the
thin contract below.  Permission bookkeeping, per-metric joins and sample
ordering all live here.

Records come back serialized with Health Connect's property names and plain
numeric units:

    HeartRateRecord         samples[].beatsPerMinute, samples[].time
    BloodPressureRecord     systolic, diastolic (mmHg), time
    OxygenSaturationRecord  percentage, time
    RespiratoryRateRecord   rate, time
    BodyTemperatureRecord   temperature (°C), time
    BloodGlucoseRecord      level (mmol/L), time
    SleepSessionRecord      startTime, endTime

Steps come from the ``StepsRecord.COUNT_TOTAL`` aggregate rather than raw
records, and are labelled ``aggregate`` so the normalizer prefers them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from healthrelay.wearables.base import (
    AuthResult,
    ProviderAdapter,
    RawResponse,
    SourceProvider,
    TimeRange,
)
from healthrelay.wearables.errors import ProviderUnavailable

logger = logging.getLogger("healthrelay.wearables.health_connect")

# metric key → (record type, value field)
_RECORD_TYPES: dict[str, tuple[str, str | None]] = {
    "sleep": ("SleepSession", None),
    "blood_pressure": ("BloodPressure", None),
    "oxygen_saturation": ("OxygenSaturation", "percentage"),
    "respiratory_rate": ("RespiratoryRate", "rate"),
    "body_temperature": ("BodyTemperature", "temperature"),
    "blood_glucose": ("BloodGlucose", "level"),
}


@runtime_checkable
class HealthConnectBridge(Protocol):
    """Native Health Connect module as seen from Python."""

    async def is_available(self) -> bool: ...

    async def get_granted_permissions(self) -> set[str]: ...

    async def request_permissions(self, permissions: set[str]) -> set[str]: ...

    async def aggregate_steps(self, start: datetime, end: datetime) -> int | None: ...

    async def read_records(
        self, record_type: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]: ...

    def open_settings(self) -> None: ...


class HealthConnectAdapter(ProviderAdapter):
    """Platform aggregator on Android; tried first."""

    PROVIDER = SourceProvider.HEALTH_CONNECT
    DISPLAY_NAME = "Health Connect"

    def __init__(
        self,
        bridge: HealthConnectBridge | None,
        permissions: list[str],
        priority: int = 1,
    ) -> None:
        """Initialize the adapter.

        Args:
            bridge:      Native module; ``None`` means Health Connect is not
                         installed on this host.
            permissions: Read permissions required for every metric.
            priority:    Fallback position (lower = earlier).
        """
        super().__init__(priority=priority)
        self._bridge = bridge
        self._permissions = set(permissions)

    async def authorize(self) -> AuthResult:
        if self._bridge is None:
            logger.info("Health Connect: no bridge configured")
            return AuthResult.NOT_INSTALLED

        try:
            available = await self._bridge.is_available()
        except Exception as exc:
            logger.warning("Health Connect: availability check failed: %s", exc)
            return AuthResult.NOT_INSTALLED
        if not available:
            return AuthResult.NOT_INSTALLED

        granted = set(await self._bridge.get_granted_permissions())
        missing = self._permissions - granted
        if missing:
            logger.info("Health Connect: requesting %d permission(s)", len(missing))
            granted |= set(await self._bridge.request_permissions(missing))
            missing = self._permissions - granted

        if missing:
            logger.warning(
                "Health Connect: permission denied for %s", ", ".join(sorted(missing))
            )
            return AuthResult.DENIED
        return AuthResult.GRANTED

    async def fetch(self, window: TimeRange) -> RawResponse:
        if self._bridge is None:
            raise ProviderUnavailable("Health Connect is not installed", provider=self.PROVIDER.value)

        requests = {
            "steps": self._read_steps(window),
            "heart_rate": self._read_heart_rate(window),
        }
        for metric in _RECORD_TYPES:
            requests[metric] = self._read_metric(metric, window)
        return await self._join_metrics(requests)

    def open_settings(self) -> None:
        """Open the Health Connect settings screen, if a bridge is present."""
        if self._bridge is not None:
            self._bridge.open_settings()

    # ------------------------------------------------------------------
    # Per-metric reads
    # ------------------------------------------------------------------

    async def _read_steps(self, window: TimeRange) -> list[dict[str, Any]]:
        total = await self._bridge.aggregate_steps(window.start, window.end)
        if total is None:
            return []
        return [{"source": "aggregate", "value": total}]

    async def _read_heart_rate(self, window: TimeRange) -> list[dict[str, Any]]:
        records = await self._bridge.read_records("HeartRate", window.start, window.end)
        samples = [
            {"time": s.get("time"), "value": s.get("beatsPerMinute")}
            for record in records
            for s in record.get("samples", [])
        ]
        return self._newest_first(samples, "time")

    async def _read_metric(self, metric: str, window: TimeRange) -> list[dict[str, Any]]:
        record_type, value_field = _RECORD_TYPES[metric]
        records = await self._bridge.read_records(record_type, window.start, window.end)

        if metric == "sleep":
            samples = [
                {"start": r.get("startTime"), "end": r.get("endTime"), "time": r.get("endTime")}
                for r in records
            ]
        elif metric == "blood_pressure":
            samples = [
                {
                    "time": r.get("time"),
                    "systolic": r.get("systolic"),
                    "diastolic": r.get("diastolic"),
                }
                for r in records
            ]
        else:
            samples = [{"time": r.get("time"), "value": r.get(value_field)} for r in records]

        return self._newest_first(samples, "time")
