"""Acquisition orchestrator: the provider fallback state machine.

One cycle::

    IDLE → CONNECTING → (PROVIDER_SELECT → AUTHORIZING → FETCHING)*
         → NORMALIZING → SYNCING → CONNECTED | DISCONNECTED → IDLE

Fallback policy:

* DENIED aborts the cycle.  Permission denial is about the user's data, not
  about one provider, so no other provider is tried.
* NOT_INSTALLED, an authorize() failure, a fetch error or a timeout moves on
  to the next provider in priority order.
* Running out of providers ends the cycle DISCONNECTED.
* A sync failure ends the cycle DISCONNECTED even though a record was built:
  the guarantee to the rest of the system is "data reached the backend".

Only one cycle runs at a time.  A trigger that arrives while a cycle is in
flight is dropped, not queued.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable

from healthrelay.wearables.base import (
    AuthResult,
    ConnectionStatus,
    MetricRecord,
    ProviderAdapter,
    RawResponse,
    SourceProvider,
    TimeRange,
)
from healthrelay.wearables.errors import PermissionDenied, SyncError
from healthrelay.wearables.normalizer import normalize
from healthrelay.wearables.notices import NoticeKind, NoticeSink, build_notice, log_notice
from healthrelay.wearables.sync.dispatcher import Ack, SyncDispatcher

logger = logging.getLogger("healthrelay.wearables.orchestrator")

ActivityPermissionGate = Callable[[], "Awaitable[bool] | bool"]
StatusListener = Callable[[ConnectionStatus], None]


class CycleState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    PROVIDER_SELECT = "provider_select"
    AUTHORIZING = "authorizing"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    SYNCING = "syncing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# ---------------------------------------------------------------------------
# Status holder
# ---------------------------------------------------------------------------


class StatusHolder:
    """Read-only, observable view of the current ConnectionStatus.

    Only the owning orchestrator writes; everyone else reads ``current`` or
    subscribes.  Updates are atomic with respect to readers on any thread.
    """

    def __init__(self, initial: ConnectionStatus = ConnectionStatus.DISCONNECTED) -> None:
        self._lock = threading.Lock()
        self._status = initial
        self._listeners: list[StatusListener] = []

    @property
    def current(self) -> ConnectionStatus:
        with self._lock:
            return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register ``listener`` for status changes.

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, status: ConnectionStatus) -> None:
        with self._lock:
            if status == self._status:
                return
            self._status = status
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener %r failed", listener)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ProviderAttempt:
    """What happened with one provider during a cycle.

    Attributes:
        provider: Provider tried.
        auth:     authorize() outcome, if it completed.
        outcome:  'fetched', 'not_installed', 'denied', 'fetch_failed' or 'timeout'.
        error:    Error text for failed attempts.
    """

    provider: SourceProvider
    auth: AuthResult | None = None
    outcome: str = ""
    error: str | None = None


@dataclass
class CycleResult:
    """Outcome of one acquisition cycle.

    Attributes:
        status:      Final ConnectionStatus (CONNECTED or DISCONNECTED).
        record:      Record built this cycle, even if the sync failed.
        provider:    Provider whose fetch produced the record.
        ack:         Backend acknowledgement when the sync succeeded.
        error:       Why the cycle ended DISCONNECTED.
        attempts:    Per-provider attempts, in order.
        started_at:  UTC start.
        finished_at: UTC end.
    """

    status: ConnectionStatus
    record: MetricRecord | None = None
    provider: SourceProvider | None = None
    ack: Ack | None = None
    error: str | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def synced(self) -> bool:
        return self.ack is not None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AcquisitionOrchestrator:
    """Select a provider, fall back when needed, normalize, and sync.

    Usage::

        orchestrator = AcquisitionOrchestrator(adapters, dispatcher)
        orchestrator.status_holder.subscribe(on_status)
        result = await orchestrator.run_cycle()   # None if one is in flight
    """

    def __init__(
        self,
        adapters: Iterable[ProviderAdapter],
        dispatcher: SyncDispatcher,
        *,
        activity_permission: ActivityPermissionGate | None = None,
        install_urls: dict[SourceProvider, str | None] | None = None,
        step_markers: Iterable[str] | None = None,
        provider_timeout_seconds: float = 30.0,
        notice_sink: NoticeSink | None = None,
        locale: str = "en",
    ) -> None:
        """Initialize the orchestrator.

        Args:
            adapters:                 Providers; tried in ascending ``priority``.
            dispatcher:               Sends the record to the backend.
            activity_permission:      OS-level gate asked before any provider.
            install_urls:             Provider → install/configure link for notices.
            step_markers:             Preferred step-source markers for the normalizer.
            provider_timeout_seconds: Bound on each authorize()/fetch() call.
            notice_sink:              Receives user-facing notices.
            locale:                   Notice language.
        """
        self._adapters = sorted(adapters, key=lambda a: a.priority)
        self._dispatcher = dispatcher
        self._activity_permission = activity_permission
        self._install_urls = install_urls or {}
        self._step_markers = list(step_markers) if step_markers is not None else None
        self._provider_timeout = provider_timeout_seconds
        self._notice_sink = notice_sink or log_notice
        self._locale = locale

        self.status_holder = StatusHolder()
        self._state = CycleState.IDLE
        self._last_result: CycleResult | None = None

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self.status_holder.current

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state != CycleState.IDLE

    @property
    def adapters(self) -> list[ProviderAdapter]:
        return list(self._adapters)

    @property
    def last_result(self) -> CycleResult | None:
        return self._last_result

    @property
    def last_record(self) -> MetricRecord | None:
        return self._last_result.record if self._last_result else None

    # ------------------------------------------------------------------
    # Cycle entry point
    # ------------------------------------------------------------------

    async def run_cycle(self, now: datetime | None = None) -> CycleResult | None:
        """Run one acquisition cycle.

        Args:
            now: Reference time for the fetch window and record timestamp.

        Returns:
            CycleResult, or None if a cycle was already in flight.
        """
        if self._state != CycleState.IDLE:
            logger.info("Cycle already in flight (state=%s); trigger dropped", self._state.value)
            return None
        # No await between the check above and this assignment.
        self._state = CycleState.CONNECTING

        result = CycleResult(status=ConnectionStatus.CONNECTING)
        try:
            await self._run(result, now)
        except asyncio.CancelledError:
            self._finish(result, ConnectionStatus.DISCONNECTED, error="Cycle cancelled")
            raise
        except Exception as exc:
            logger.exception("Acquisition cycle failed unexpectedly")
            self._finish(result, ConnectionStatus.DISCONNECTED, error=f"Unexpected error: {exc}")
        finally:
            self._last_result = result
            self._state = CycleState.IDLE
        return result

    async def _run(self, result: CycleResult, now: datetime | None) -> None:
        self.status_holder._set(ConnectionStatus.CONNECTING)
        logger.info("Acquisition cycle started")

        if not await self._activity_granted():
            logger.warning("Activity recognition permission denied; aborting cycle")
            self._notify(NoticeKind.PERMISSION_DENIED)
            self._finish(result, ConnectionStatus.DISCONNECTED, error="Activity permission denied")
            return

        window = TimeRange.today(now)
        selected = await self._acquire(result, window)
        if selected is None:
            return
        adapter, raw = selected

        self._state = CycleState.NORMALIZING
        recorded_at = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        record = normalize(
            raw, adapter.PROVIDER, recorded_at=recorded_at, step_markers=self._step_markers
        )
        result.record = record
        result.provider = adapter.PROVIDER

        self._state = CycleState.SYNCING
        try:
            result.ack = await self._dispatcher.send(record, is_connected=True)
        except SyncError as exc:
            self._finish(result, ConnectionStatus.DISCONNECTED, error=f"Sync failed: {exc}")
            return

        self._finish(result, ConnectionStatus.CONNECTED)

    async def _acquire(
        self, result: CycleResult, window: TimeRange
    ) -> tuple[ProviderAdapter, RawResponse] | None:
        """Try providers in order; return the first successful fetch."""
        last_tried: ProviderAdapter | None = None

        for adapter in self._adapters:
            self._state = CycleState.PROVIDER_SELECT
            last_tried = adapter
            attempt = ProviderAttempt(provider=adapter.PROVIDER)
            result.attempts.append(attempt)

            self._state = CycleState.AUTHORIZING
            attempt.auth = await self._authorize(adapter, attempt)

            if attempt.auth == AuthResult.DENIED:
                attempt.outcome = "denied"
                self._notify(NoticeKind.PERMISSION_DENIED, adapter)
                self._finish(
                    result,
                    ConnectionStatus.DISCONNECTED,
                    error=f"Permission denied by {adapter.DISPLAY_NAME}",
                )
                return None

            if attempt.auth == AuthResult.NOT_INSTALLED:
                attempt.outcome = attempt.outcome or "not_installed"
                logger.warning("%s not installed; falling back", adapter.DISPLAY_NAME)
                self._notify(NoticeKind.INSTALL_REQUIRED, adapter)
                continue

            self._state = CycleState.FETCHING
            try:
                raw = await asyncio.wait_for(adapter.fetch(window), timeout=self._provider_timeout)
            except asyncio.TimeoutError:
                attempt.outcome = "timeout"
                attempt.error = f"fetch timed out after {self._provider_timeout}s"
                logger.warning("%s fetch timed out; falling back", adapter.DISPLAY_NAME)
                continue
            except Exception as exc:
                attempt.outcome = "fetch_failed"
                attempt.error = str(exc)
                logger.warning("%s fetch failed: %s; falling back", adapter.DISPLAY_NAME, exc)
                continue

            attempt.outcome = "fetched"
            logger.info("Fetched data from %s", adapter.DISPLAY_NAME)
            return adapter, raw

        self._notify(NoticeKind.PROVIDER_UNAVAILABLE, last_tried)
        self._finish(result, ConnectionStatus.DISCONNECTED, error="No provider available")
        return None

    async def _activity_granted(self) -> bool:
        """Ask the OS-level activity gate, if one is configured."""
        if self._activity_permission is None:
            return True
        try:
            granted = self._activity_permission()
            if inspect.isawaitable(granted):
                granted = await asyncio.wait_for(granted, timeout=self._provider_timeout)
        except PermissionDenied:
            return False
        return bool(granted)

    async def _authorize(self, adapter: ProviderAdapter, attempt: ProviderAttempt) -> AuthResult:
        """authorize() with a timeout.

        PermissionDenied counts as DENIED; any other failure as NOT_INSTALLED.
        """
        try:
            return await asyncio.wait_for(adapter.authorize(), timeout=self._provider_timeout)
        except PermissionDenied as exc:
            attempt.error = str(exc)
            return AuthResult.DENIED
        except asyncio.TimeoutError:
            attempt.outcome = "timeout"
            attempt.error = f"authorize timed out after {self._provider_timeout}s"
        except Exception as exc:
            attempt.error = str(exc)
            logger.warning("%s authorize failed: %s", adapter.DISPLAY_NAME, exc)
        return AuthResult.NOT_INSTALLED

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(
        self, result: CycleResult, status: ConnectionStatus, error: str | None = None
    ) -> None:
        result.status = status
        result.error = error
        result.finished_at = datetime.now(timezone.utc)
        self._state = (
            CycleState.CONNECTED if status == ConnectionStatus.CONNECTED else CycleState.DISCONNECTED
        )
        self.status_holder._set(status)
        logger.info(
            "Acquisition cycle finished: %s%s",
            status.value,
            f" ({error})" if error else "",
        )

    def _notify(self, kind: NoticeKind, adapter: ProviderAdapter | None = None) -> None:
        provider_name = adapter.DISPLAY_NAME if adapter else "health data provider"
        action_url = None
        if adapter is not None and kind != NoticeKind.PERMISSION_DENIED:
            action_url = self._install_urls.get(adapter.PROVIDER)
        self._notice_sink(
            build_notice(kind, self._locale, provider=provider_name, action_url=action_url)
        )
