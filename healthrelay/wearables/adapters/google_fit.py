"""Google Fit REST API adapter.

Used as the Android fallback when Health Connect is unavailable.  Talks to
the Fitness REST API directly; token acquisition happens elsewhere and the
adapter only introspects the token it is given.

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    /dataset:aggregate   per-metric aggregates, hourly buckets
    /sessions            sleep sessions (activityType 72)
    oauth2/v3/tokeninfo  granted scopes for the configured token
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from healthrelay.wearables.base import (
    AuthResult,
    ProviderAdapter,
    RawResponse,
    SourceProvider,
    TimeRange,
)
from healthrelay.wearables.errors import ProviderUnavailable

logger = logging.getLogger("healthrelay.wearables.google_fit")

_FIT_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"
_TOKENINFO_URL = "https://www.googleapis.com/oauth2/v3/tokeninfo"

_ESTIMATED_STEPS_SOURCE = "derived:com.google.step_count.delta:com.google.android.gms:estimated_steps"
_STEP_DATA_TYPE = "com.google.step_count.delta"
_SLEEP_ACTIVITY_TYPE = 72
_BUCKET_MILLIS = 3_600_000  # one hour

# metric key → (aggregate data type, index of the average in point.value)
_AGGREGATE_TYPES: dict[str, tuple[str, int]] = {
    "heart_rate": ("com.google.heart_rate.bpm", 0),
    "oxygen_saturation": ("com.google.oxygen_saturation", 0),
    "respiratory_rate": ("com.google.respiratory_rate", 0),
    "body_temperature": ("com.google.body.temperature", 0),
    "blood_glucose": ("com.google.blood_glucose", 0),
}

# blood_pressure.summary: systolic avg/max/min, diastolic avg/max/min, ...
_BLOOD_PRESSURE_TYPE = "com.google.blood_pressure"
_SYSTOLIC_AVG = 0
_DIASTOLIC_AVG = 3


def _millis(window: TimeRange) -> tuple[int, int]:
    return int(window.start.timestamp() * 1000), int(window.end.timestamp() * 1000)


def _point_value(point: dict, index: int) -> float | int | None:
    values = point.get("value") or []
    if len(values) <= index:
        return None
    entry = values[index] or {}
    if "fpVal" in entry:
        return entry["fpVal"]
    return entry.get("intVal")


class GoogleFitAdapter(ProviderAdapter):
    """Google Fit cloud adapter (Android fallback)."""

    PROVIDER = SourceProvider.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"

    def __init__(
        self,
        access_token: str,
        scopes: list[str],
        priority: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Google Fit adapter.

        Args:
            access_token: OAuth2 bearer token; empty means Fit is not set up.
            scopes:       Read scopes required for every metric.
            priority:     Fallback position (lower = earlier).
            http_client:  Optional pre-configured httpx client (for testing).
        """
        super().__init__(priority=priority)
        self._access_token = access_token
        self._scopes = list(scopes)
        self._http_client = http_client

    # ------------------------------------------------------------------
    # ProviderAdapter interface
    # ------------------------------------------------------------------

    async def authorize(self) -> AuthResult:
        """Check the configured token carries every required read scope."""
        if not self._access_token:
            logger.info("Google Fit: no access token configured")
            return AuthResult.NOT_INSTALLED

        try:
            response = await self._request(
                "GET", _TOKENINFO_URL, params={"access_token": self._access_token}
            )
        except httpx.HTTPError as exc:
            logger.warning("Google Fit: tokeninfo unreachable: %s", exc)
            return AuthResult.NOT_INSTALLED

        if response.status_code != 200:
            logger.warning("Google Fit: token rejected (HTTP %d)", response.status_code)
            return AuthResult.NOT_INSTALLED

        granted = set((response.json().get("scope") or "").split())
        missing = [s for s in self._scopes if s not in granted]
        if missing:
            logger.warning("Google Fit: missing scopes %s", ", ".join(missing))
            return AuthResult.DENIED
        return AuthResult.GRANTED

    async def fetch(self, window: TimeRange) -> RawResponse:
        requests = {
            "steps": self._read_steps(window),
            "sleep": self._read_sleep(window),
            "blood_pressure": self._read_blood_pressure(window),
        }
        for metric in _AGGREGATE_TYPES:
            requests[metric] = self._read_aggregate(metric, window)
        return await self._join_metrics(requests)

    # ------------------------------------------------------------------
    # Per-metric reads
    # ------------------------------------------------------------------

    async def _read_steps(self, window: TimeRange) -> list[dict[str, Any]]:
        """One sample per step stream: the estimated stream and the raw merge."""
        start_ms, end_ms = _millis(window)
        body = {
            "aggregateBy": [
                {"dataSourceId": _ESTIMATED_STEPS_SOURCE},
                {"dataTypeName": _STEP_DATA_TYPE},
            ],
            "bucketByTime": {"durationMillis": max(end_ms - start_ms, 1)},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        data = await self._post_json(f"{_FIT_API_BASE}/dataset:aggregate", body)
        labels = [_ESTIMATED_STEPS_SOURCE, _STEP_DATA_TYPE]

        totals: dict[str, int] = {}
        for bucket in data.get("bucket", []):
            for label, dataset in zip(labels, bucket.get("dataset", [])):
                for point in dataset.get("point", []):
                    value = self._safe_int(_point_value(point, 0))
                    if value is not None:
                        totals[label] = totals.get(label, 0) + value

        return [{"source": label, "value": totals[label]} for label in labels if label in totals]

    async def _read_sleep(self, window: TimeRange) -> list[dict[str, Any]]:
        data = await self._get_json(
            f"{_FIT_API_BASE}/sessions",
            params={
                "startTime": window.start.isoformat(),
                "endTime": window.end.isoformat(),
                "activityType": _SLEEP_ACTIVITY_TYPE,
            },
        )
        sessions = [
            {
                "start": s.get("startTimeMillis"),
                "end": s.get("endTimeMillis"),
                "name": s.get("name"),
            }
            for s in data.get("session", [])
        ]
        sessions.sort(key=lambda s: self._safe_int(s["end"]) or 0, reverse=True)
        return sessions

    async def _read_aggregate(self, metric: str, window: TimeRange) -> list[dict[str, Any]]:
        data_type, index = _AGGREGATE_TYPES[metric]
        points = await self._aggregate_points(data_type, window)
        return [
            {"time": p.get("endTimeNanos"), "value": _point_value(p, index)}
            for p in points
        ]

    async def _read_blood_pressure(self, window: TimeRange) -> list[dict[str, Any]]:
        points = await self._aggregate_points(_BLOOD_PRESSURE_TYPE, window)
        return [
            {
                "time": p.get("endTimeNanos"),
                "systolic": _point_value(p, _SYSTOLIC_AVG),
                "diastolic": _point_value(p, _DIASTOLIC_AVG),
            }
            for p in points
        ]

    async def _aggregate_points(self, data_type: str, window: TimeRange) -> list[dict]:
        """Hourly aggregate points for one data type, newest bucket first."""
        start_ms, end_ms = _millis(window)
        body = {
            "aggregateBy": [{"dataTypeName": data_type}],
            "bucketByTime": {"durationMillis": _BUCKET_MILLIS},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        data = await self._post_json(f"{_FIT_API_BASE}/dataset:aggregate", body)

        points: list[dict] = []
        for bucket in reversed(data.get("bucket", [])):
            for dataset in bucket.get("dataset", []):
                points.extend(reversed(dataset.get("point", [])))
        return points

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, **kwargs)

    async def _get_json(self, url: str, params: dict) -> dict:
        """Authenticated GET.

        Raises:
            ProviderUnavailable: On transport errors or non-2xx responses.
        """
        return await self._call("GET", url, params=params)

    async def _post_json(self, url: str, body: dict) -> dict:
        """Authenticated POST with a JSON body.

        Raises:
            ProviderUnavailable: On transport errors or non-2xx responses.
        """
        return await self._call("POST", url, json=body)

    async def _call(self, method: str, url: str, **kwargs: Any) -> dict:
        try:
            response = await self._request(method, url, headers=self._build_headers(), **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderUnavailable(
                f"Google Fit request to {url} failed: {exc}", provider=self.PROVIDER.value
            ) from exc
