"""Base classes and canonical data models for HealthRelay acquisition.

Every provider adapter must subclass ProviderAdapter and return a RawResponse
from ``fetch()``.  The NormalizationMapper turns that into the canonical
MetricRecord, which is the single source of truth consumed by the sync
dispatcher and the presentation layer.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable

from healthrelay.wearables.errors import ProviderUnavailable

logger = logging.getLogger("healthrelay.wearables")

#: Provider-specific mapping of metric name → sample list.
RawResponse = dict[str, list[dict[str, Any]]]

#: Metric keys every adapter uses in its RawResponse.
METRIC_KEYS: tuple[str, ...] = (
    "steps",
    "sleep",
    "heart_rate",
    "blood_pressure",
    "oxygen_saturation",
    "respiratory_rate",
    "body_temperature",
    "blood_glucose",
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SourceProvider(str, Enum):
    """Which concrete health-data source backed a record."""

    HEALTH_CONNECT = "health_connect"
    GOOGLE_FIT = "google_fit"
    HEALTHKIT = "healthkit"


class AuthResult(str, Enum):
    """Outcome of ``ProviderAdapter.authorize()``.

    NOT_INSTALLED and DENIED are deliberately separate: the orchestrator
    falls back on the first and aborts on the second.
    """

    GRANTED = "granted"
    NOT_INSTALLED = "not_installed"
    DENIED = "denied"


class ConnectionStatus(str, Enum):
    """The single connection signal exposed to the presentation layer."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ---------------------------------------------------------------------------
# Time window
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeRange:
    """Closed time window ``[start, end]`` passed to ``fetch()``.

    Attributes:
        start: Window start (timezone-aware).
        end:   Window end (timezone-aware).
    """

    start: datetime
    end: datetime

    @classmethod
    def today(cls, now: datetime | None = None) -> "TimeRange":
        """Return local start-of-day through ``now``.

        Args:
            now: Reference time. Defaults to the current local time.
                 A naive value is interpreted as local time; an aware
                 value is converted to local time first.

        Returns:
            TimeRange covering the current calendar day so far.
        """
        now = (now or datetime.now()).astimezone()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(start=start, end=now)


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricRecord:
    """Canonical, provider-agnostic health snapshot for one cycle.

    Every metric is independently optional: ``None`` means "no data
    available", which is distinct from a reading of zero.

    Attributes:
        recorded_at:        When the record was built (timezone-aware).
        source_provider:    Provider whose fetch produced the record.
        steps:              Step count for the window.
        sleep_sessions:     Number of sleep sessions in the window.
        heart_rate:         Most recent heart rate (bpm).
        systolic_bp:        Systolic blood pressure (mmHg).
        diastolic_bp:       Diastolic blood pressure (mmHg).
        oxygen_saturation:  SpO2 (%).
        respiratory_rate:   Breaths per minute.
        body_temperature:   Body temperature (°C).
        blood_glucose:      Blood glucose (provider units, usually mmol/L).
    """

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

    def metrics(self) -> dict[str, float | int | None]:
        """Return just the metric fields, keyed by canonical name."""
        return {
            "steps": self.steps,
            "sleep_sessions": self.sleep_sessions,
            "heart_rate": self.heart_rate,
            "systolic_bp": self.systolic_bp,
            "diastolic_bp": self.diastolic_bp,
            "oxygen_saturation": self.oxygen_saturation,
            "respiratory_rate": self.respiratory_rate,
            "body_temperature": self.body_temperature,
            "blood_glucose": self.blood_glucose,
        }


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for all health-data provider adapters.

    The orchestrator depends only on this interface, never on a concrete
    provider type.  ``PROVIDER`` is the tag identifying which source backs
    the adapter.

    Subclasses must implement:
        - authorize()
        - fetch()
    """

    #: Tag for the concrete source.
    PROVIDER: SourceProvider

    #: Human-readable name for logging and notices.
    DISPLAY_NAME: str = "Unknown Provider"

    def __init__(self, priority: int = 100) -> None:
        #: Lower = tried earlier.  Assigned from the platform ordering.
        self.priority = priority

    @abstractmethod
    async def authorize(self) -> AuthResult:
        """Request read access for every metric scope.

        May trigger an OS permission prompt.  Must not retry on its own.

        Returns:
            GRANTED, NOT_INSTALLED or DENIED.
        """

    @abstractmethod
    async def fetch(self, window: TimeRange) -> RawResponse:
        """Read all metrics within ``window``.

        Args:
            window: Time range to read (start of day through now).

        Returns:
            RawResponse; sample lists may be empty.

        Raises:
            ProviderUnavailable: On network/SDK failure.
        """

    def __repr__(self) -> str:
        return f"<{type(self).__name__} priority={self.priority}>"

    # ------------------------------------------------------------------
    # Shared helpers available to all adapters
    # ------------------------------------------------------------------

    async def _join_metrics(
        self, requests: dict[str, Awaitable[list[dict[str, Any]]]]
    ) -> RawResponse:
        """Await every per-metric request and assemble a RawResponse.

        All requests are issued together and the join completes only once each
        has reported.  A failed metric degrades to an empty sample list; the
        fetch as a whole fails only when every metric failed.

        Args:
            requests: metric key → awaitable returning that metric's samples.

        Returns:
            RawResponse with one entry per requested metric.

        Raises:
            ProviderUnavailable: If every request raised.
        """
        keys = list(requests)
        results = await asyncio.gather(*requests.values(), return_exceptions=True)

        raw: RawResponse = {}
        failures: list[str] = []
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(
                    "%s: fetching %s failed: %s", self.DISPLAY_NAME, key, result
                )
                failures.append(key)
                raw[key] = []
            else:
                raw[key] = list(result or [])

        if keys and len(failures) == len(keys):
            raise ProviderUnavailable(
                f"{self.DISPLAY_NAME}: every metric request failed",
                provider=self.PROVIDER.value,
            )
        return raw

    @classmethod
    def _newest_first(
        cls, samples: list[dict[str, Any]], time_key: str
    ) -> list[dict[str, Any]]:
        """Sort samples by ``time_key`` descending; undated samples go last."""

        def _key(sample: dict[str, Any]) -> float:
            parsed = cls._parse_iso_datetime(sample.get(time_key))
            return parsed.timestamp() if parsed else float("-inf")

        return sorted(samples, key=_key, reverse=True)

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure or NaN."""
        if value is None or isinstance(value, bool):
            return None
        try:
            result = float(value)
        except (TypeError, ValueError, OverflowError):
            return None
        if math.isnan(result) or math.isinf(result):
            return None
        return result

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string, tolerating a trailing 'Z'.

        Returns None if the value is None or unparseable.
        """
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
