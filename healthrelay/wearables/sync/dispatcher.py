"""Push MetricRecords to the collection backend.

    POST {backend_url}/api/wearables/data
    Content-Type: application/json
    Authorization: Bearer <token>

Any 2xx with a JSON body is an Ack.  A non-2xx status, a non-JSON body, a
transport exception or a timeout raises SyncError.

Retry policy: up to ``max_attempts`` tries with exponential backoff
(tenacity).  Only transport errors, timeouts, 408, 429 and 5xx are retried;
other 4xx responses mean the payload was rejected and fail immediately.
Nothing is persisted between cycles: after the last attempt the record is
dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from healthrelay.config import Settings
from healthrelay.wearables.base import MetricRecord, SourceProvider
from healthrelay.wearables.config_loader import AcquisitionConfig
from healthrelay.wearables.errors import SyncError
from healthrelay.wearables.notices import NoticeKind, NoticeSink, build_notice, log_notice

logger = logging.getLogger("healthrelay.wearables.sync.dispatcher")

SYNC_PATH = "/api/wearables/data"

# MetricRecord field → backend field
BACKEND_FIELD_NAMES: dict[str, str] = {
    "steps": "steps",
    "sleep_sessions": "sleep",
    "heart_rate": "heart_rate",
    "systolic_bp": "systolic_bp",
    "diastolic_bp": "diastolic_bp",
    "oxygen_saturation": "oxygen_saturation",
    "respiratory_rate": "respiratory_rate",
    "body_temperature": "body_temperature",
    "blood_glucose": "blood_glucose",
}

_RETRYABLE_STATUS = {408, 429}


@dataclass(frozen=True)
class Ack:
    """Backend acknowledgement of a synced record.

    Attributes:
        status_code: HTTP status returned.
        body:        Parsed JSON body.
        received_at: UTC time the ack arrived.
    """

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Sync attempt %d failed, retrying: %s", retry_state.attempt_number, exc
    )


class SyncDispatcher:
    """Send MetricRecords to the backend with bounded retry.

    Usage::

        dispatcher = SyncDispatcher.from_settings(settings, config)
        ack = await dispatcher.send(record)
    """

    def __init__(
        self,
        backend_url: str,
        token: str,
        patient_id: int,
        device_labels: dict[SourceProvider, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 8.0,
        timeout_seconds: float = 30.0,
        notice_sink: NoticeSink | None = None,
        locale: str = "en",
    ) -> None:
        """Initialize the dispatcher.

        Args:
            backend_url:          Scheme + host of the collection backend.
            token:                Bearer token for the Authorization header.
            patient_id:           Patient the records belong to.
            device_labels:        Provider → ``device_name`` label.
            http_client:          Optional pre-configured httpx client (for testing).
            max_attempts:         Total tries per record, including the first.
            backoff_base_seconds: First backoff delay; doubles per retry.
            backoff_max_seconds:  Cap on a single backoff delay.
            timeout_seconds:      Per-attempt timeout.
            notice_sink:          Receives SYNC_SUCCESS / SYNC_FAILURE notices.
            locale:               Notice language.
        """
        self._url = backend_url.rstrip("/") + SYNC_PATH
        self._token = token
        self._patient_id = patient_id
        self._device_labels = device_labels or {}
        self._http_client = http_client
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._timeout = timeout_seconds
        self._notice_sink = notice_sink or log_notice
        self._locale = locale

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        config: AcquisitionConfig,
        http_client: httpx.AsyncClient | None = None,
        notice_sink: NoticeSink | None = None,
    ) -> "SyncDispatcher":
        return cls(
            backend_url=settings.backend_url,
            token=settings.backend_token,
            patient_id=settings.patient_id,
            device_labels={p: config.device_label(p) for p in SourceProvider},
            http_client=http_client,
            max_attempts=settings.sync_max_attempts,
            backoff_base_seconds=settings.sync_backoff_base_seconds,
            backoff_max_seconds=settings.sync_backoff_max_seconds,
            timeout_seconds=settings.sync_timeout_seconds,
            notice_sink=notice_sink,
            locale=settings.locale,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_payload(self, record: MetricRecord, *, is_connected: bool = True) -> dict[str, Any]:
        """Translate a MetricRecord into the backend's JSON body."""
        payload: dict[str, Any] = {"patient": self._patient_id}
        for field_name, value in record.metrics().items():
            payload[BACKEND_FIELD_NAMES[field_name]] = value
        payload["recorded_at"] = record.recorded_at.isoformat()
        payload["device_name"] = self._device_labels.get(
            record.source_provider, record.source_provider.value
        )
        payload["is_connected"] = is_connected
        return payload

    async def send(self, record: MetricRecord, *, is_connected: bool = True) -> Ack:
        """Deliver ``record`` to the backend.

        Args:
            record:       The canonical record to sync.
            is_connected: Whether the record came from a live provider fetch.

        Returns:
            Ack from the backend.

        Raises:
            SyncError: After the final failed attempt, or immediately for a
                       non-retryable rejection.
        """
        payload = self.build_payload(record, is_connected=is_connected)
        logger.info(
            "Syncing record from %s recorded at %s",
            payload["device_name"],
            payload["recorded_at"],
        )

        try:
            async for attempt in self._retrying():
                with attempt:
                    ack = await self._post(payload)
        except SyncError as exc:
            logger.error("Failed to send data: %s", exc)
            self._notice_sink(build_notice(NoticeKind.SYNC_FAILURE, self._locale))
            raise

        logger.info("Data sent successfully (HTTP %d)", ack.status_code)
        self._notice_sink(build_notice(NoticeKind.SYNC_SUCCESS, self._locale))
        return ack

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_base,
                min=self._backoff_base,
                max=self._backoff_max,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
        )

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._token}",
        }

    async def _request(self, payload: dict[str, Any]) -> httpx.Response:
        headers = self._build_headers()
        if self._http_client:
            return await self._http_client.post(self._url, json=payload, headers=headers)
        async with httpx.AsyncClient() as client:
            return await client.post(self._url, json=payload, headers=headers)

    async def _post(self, payload: dict[str, Any]) -> Ack:
        """One delivery attempt.

        Raises:
            SyncError: With ``retryable`` set according to the failure.
        """
        try:
            response = await asyncio.wait_for(self._request(payload), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise SyncError(f"Backend did not answer within {self._timeout}s") from exc
        except Exception as exc:
            raise SyncError(f"Network error: {exc}") from exc

        status = response.status_code
        if not 200 <= status < 300:
            retryable = status >= 500 or status in _RETRYABLE_STATUS
            raise SyncError(
                f"Backend returned HTTP {status}", status_code=status, retryable=retryable
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise SyncError(
                "Backend returned a non-JSON success body",
                status_code=status,
                retryable=False,
            ) from exc

        return Ack(status_code=status, body=body if isinstance(body, dict) else {"data": body})
