"""Apple HealthKit adapter.

HealthKit only exists on-device, so Python reaches it through a bridge
that wraps the native store.  Each metric is a separate, independently
completing query; the adapter issues them together and joins on all of
them, so one failing query only empties that metric.

Sample format returned by the bridge (react-native-health style):

    {"value": 72, "startDate": "...", "endDate": "..."}
    blood pressure: {"bloodPressureSystolicValue": 120,
                     "bloodPressureDiastolicValue": 80, "startDate": ...}
    step count:     a single {"value": 4200} daily total

HealthKit never reveals whether *read* access was denied; the bridge
raises ``PermissionError`` only when the authorization request itself is
refused.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from healthrelay.wearables.base import (
    METRIC_KEYS,
    AuthResult,
    ProviderAdapter,
    RawResponse,
    SourceProvider,
    TimeRange,
)
from healthrelay.wearables.errors import ProviderUnavailable

logger = logging.getLogger("healthrelay.wearables.healthkit")


@runtime_checkable
class HealthKitBridge(Protocol):
    """Native HealthKit module as seen from Python."""

    async def is_available(self) -> bool: ...

    async def init_health_kit(self, read_permissions: list[str]) -> None: ...

    async def query(
        self, metric: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]: ...


class HealthKitAdapter(ProviderAdapter):
    """Device-native health store on iOS."""

    PROVIDER = SourceProvider.HEALTHKIT
    DISPLAY_NAME = "Apple Health"

    def __init__(
        self,
        bridge: HealthKitBridge | None,
        permissions: list[str],
        priority: int = 1,
    ) -> None:
        super().__init__(priority=priority)
        self._bridge = bridge
        self._permissions = list(permissions)

    async def authorize(self) -> AuthResult:
        if self._bridge is None:
            logger.info("HealthKit: no bridge configured")
            return AuthResult.NOT_INSTALLED

        if not await self._bridge.is_available():
            return AuthResult.NOT_INSTALLED

        try:
            await self._bridge.init_health_kit(self._permissions)
        except PermissionError as exc:
            logger.warning("HealthKit: authorization refused: %s", exc)
            return AuthResult.DENIED
        except Exception as exc:
            logger.error("HealthKit: init failed: %s", exc)
            return AuthResult.NOT_INSTALLED
        return AuthResult.GRANTED

    async def fetch(self, window: TimeRange) -> RawResponse:
        if self._bridge is None:
            raise ProviderUnavailable("HealthKit is not available", provider=self.PROVIDER.value)
        return await self._join_metrics(
            {metric: self._query(metric, window) for metric in METRIC_KEYS}
        )

    async def _query(self, metric: str, window: TimeRange) -> list[dict[str, Any]]:
        results = await self._bridge.query(metric, window.start, window.end)

        if metric == "steps":
            return [{"source": "aggregate", "value": r.get("value")} for r in results]

        if metric == "blood_pressure":
            samples = [
                {
                    "time": r.get("startDate"),
                    "systolic": r.get("bloodPressureSystolicValue"),
                    "diastolic": r.get("bloodPressureDiastolicValue"),
                }
                for r in results
            ]
        elif metric == "sleep":
            samples = [
                {"time": r.get("endDate"), "start": r.get("startDate"), "end": r.get("endDate")}
                for r in results
            ]
        else:
            samples = [{"time": r.get("startDate"), "value": r.get("value")} for r in results]

        return self._newest_first(samples, "time")
