"""Tests for the acquisition orchestrator: provider selection, fallback and status."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from healthrelay.wearables.base import AuthResult, ConnectionStatus, SourceProvider
from healthrelay.wearables.errors import PermissionDenied
from healthrelay.wearables.notices import Notice, NoticeKind
from healthrelay.wearables.orchestrator import (
    AcquisitionOrchestrator,
    CycleState,
    StatusHolder,
)
from healthrelay.wearables.sync.dispatcher import SyncDispatcher
from healthrelay.wearables.tests.conftest import (
    TEST_BACKEND,
    TEST_NOW,
    FakeAdapter,
    mock_transport_client,
    unavailable,
)

HC = SourceProvider.HEALTH_CONNECT
FIT = SourceProvider.GOOGLE_FIT
HK = SourceProvider.HEALTHKIT

INSTALL_URLS = {
    HC: "market://details?id=com.google.android.apps.healthdata",
    FIT: "market://details?id=com.google.android.apps.fitness",
    HK: "x-apple-health://",
}


def _orchestrator(adapters, dispatcher, notices: list[Notice], **kwargs) -> AcquisitionOrchestrator:
    kwargs.setdefault("install_urls", INSTALL_URLS)
    return AcquisitionOrchestrator(adapters, dispatcher, notice_sink=notices.append, **kwargs)


def _kinds(notices: list[Notice]) -> list[NoticeKind]:
    return [n.kind for n in notices]


# ---------------------------------------------------------------------------
# Happy path / fallback
# ---------------------------------------------------------------------------


class TestProviderSelection:
    @pytest.mark.asyncio
    async def test_primary_granted_syncs_and_connects(
        self, mock_dispatcher: MagicMock, notices: list[Notice], full_raw: dict
    ) -> None:
        primary = FakeAdapter(HC, 1, raw=full_raw)
        secondary = FakeAdapter(FIT, 2)
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result is not None
        assert result.status == ConnectionStatus.CONNECTED
        assert result.provider == HC
        assert result.synced
        assert orchestrator.status == ConnectionStatus.CONNECTED
        assert secondary.authorize_calls == 0
        mock_dispatcher.send.assert_awaited_once()
        record = mock_dispatcher.send.await_args.args[0]
        assert record.source_provider == HC
        assert record.steps == 4200
        assert mock_dispatcher.send.await_args.kwargs == {"is_connected": True}

    @pytest.mark.asyncio
    async def test_not_installed_falls_back_to_secondary(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        """Health Connect missing → Google Fit used, with an install notice."""
        primary = FakeAdapter(HC, 1, auth=AuthResult.NOT_INSTALLED)
        secondary = FakeAdapter(
            FIT, 2, raw={"steps": [{"source": "estimated_steps", "value": 4200}], "sleep": []}
        )
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.CONNECTED
        assert result.provider == FIT
        assert primary.fetch_calls == []
        assert len(secondary.fetch_calls) == 1
        assert result.record.steps == 4200
        assert result.record.sleep_sessions == 0
        assert result.record.heart_rate is None
        assert _kinds(notices) == [NoticeKind.INSTALL_REQUIRED]
        assert notices[0].action_url == INSTALL_URLS[HC]
        assert [a.outcome for a in result.attempts] == ["not_installed", "fetched"]

    @pytest.mark.asyncio
    async def test_adapters_tried_in_priority_order(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        late = FakeAdapter(FIT, 2)
        early = FakeAdapter(HC, 1, auth=AuthResult.NOT_INSTALLED)
        orchestrator = _orchestrator([late, early], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert [a.provider for a in result.attempts] == [HC, FIT]

    @pytest.mark.asyncio
    async def test_fetch_error_falls_back(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, raw=unavailable(HC))
        secondary = FakeAdapter(FIT, 2, raw={"heart_rate": [{"value": 70}]})
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.CONNECTED
        assert result.provider == FIT
        assert result.attempts[0].outcome == "fetch_failed"
        assert "fetch failed" in result.attempts[0].error

    @pytest.mark.asyncio
    async def test_fetch_timeout_falls_back(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, fetch_delay=1.0)
        secondary = FakeAdapter(FIT, 2, raw={"steps": [{"value": 10}]})
        orchestrator = _orchestrator(
            [primary, secondary], mock_dispatcher, notices, provider_timeout_seconds=0.05
        )

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.CONNECTED
        assert result.provider == FIT
        assert result.attempts[0].outcome == "timeout"

    @pytest.mark.asyncio
    async def test_authorize_exception_treated_as_not_installed(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, auth=RuntimeError("bridge crashed"))
        secondary = FakeAdapter(FIT, 2)
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.CONNECTED
        assert result.attempts[0].auth == AuthResult.NOT_INSTALLED
        assert result.attempts[0].error == "bridge crashed"

    @pytest.mark.asyncio
    async def test_authorize_timeout_falls_back(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, auth_delay=1.0)
        secondary = FakeAdapter(FIT, 2)
        orchestrator = _orchestrator(
            [primary, secondary], mock_dispatcher, notices, provider_timeout_seconds=0.05
        )

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.provider == FIT
        assert result.attempts[0].outcome == "timeout"

    @pytest.mark.asyncio
    async def test_fetch_window_is_start_of_day_to_now(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        adapter = FakeAdapter(HK, 1)
        orchestrator = _orchestrator([adapter], mock_dispatcher, notices)

        await orchestrator.run_cycle(now=TEST_NOW)

        window = adapter.fetch_calls[0]
        assert window.end == TEST_NOW
        assert (window.start.hour, window.start.minute, window.start.second) == (0, 0, 0)
        assert window.start.date() == TEST_NOW.astimezone().date()


# ---------------------------------------------------------------------------
# Abort paths
# ---------------------------------------------------------------------------


class TestAbort:
    @pytest.mark.asyncio
    async def test_denied_aborts_without_fallback(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, auth=AuthResult.DENIED)
        secondary = FakeAdapter(FIT, 2)
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.record is None
        assert secondary.authorize_calls == 0
        assert primary.fetch_calls == []
        mock_dispatcher.send.assert_not_called()
        assert _kinds(notices) == [NoticeKind.PERMISSION_DENIED]

    @pytest.mark.asyncio
    async def test_denied_on_secondary_also_aborts(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, auth=AuthResult.NOT_INSTALLED)
        secondary = FakeAdapter(FIT, 2, auth=AuthResult.DENIED)
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert _kinds(notices) == [NoticeKind.INSTALL_REQUIRED, NoticeKind.PERMISSION_DENIED]
        mock_dispatcher.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_permission_denied_exception_maps_to_denied(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, auth=PermissionDenied("READ_STEPS declined"))
        secondary = FakeAdapter(FIT, 2)
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.attempts[0].auth == AuthResult.DENIED
        assert secondary.authorize_calls == 0

    @pytest.mark.asyncio
    async def test_no_provider_available(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        primary = FakeAdapter(HC, 1, auth=AuthResult.NOT_INSTALLED)
        secondary = FakeAdapter(FIT, 2, raw=unavailable(FIT))
        orchestrator = _orchestrator([primary, secondary], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.record is None
        mock_dispatcher.send.assert_not_called()
        assert _kinds(notices)[-1] == NoticeKind.PROVIDER_UNAVAILABLE
        assert "Google Fit" in notices[-1].message
        assert notices[-1].action_url == INSTALL_URLS[FIT]

    @pytest.mark.asyncio
    async def test_no_adapters_at_all(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        orchestrator = _orchestrator([], mock_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert _kinds(notices) == [NoticeKind.PROVIDER_UNAVAILABLE]
        assert notices[0].action_url is None

    @pytest.mark.asyncio
    async def test_sync_failure_disconnects_but_keeps_record(
        self, failing_dispatcher: MagicMock, notices: list[Notice], full_raw: dict
    ) -> None:
        orchestrator = _orchestrator([FakeAdapter(HC, 1, raw=full_raw)], failing_dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.record is not None
        assert not result.synced
        assert "Sync failed" in result.error
        assert orchestrator.last_record == result.record

    @pytest.mark.asyncio
    async def test_unreachable_backend_exhausts_retries_and_disconnects(
        self, notices: list[Notice], full_raw: dict
    ) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = SyncDispatcher(
            backend_url=TEST_BACKEND,
            token="secret-token",
            patient_id=1,
            http_client=mock_transport_client(handler),
            max_attempts=2,
            backoff_base_seconds=0,
            backoff_max_seconds=0,
            notice_sink=notices.append,
        )
        orchestrator = _orchestrator([FakeAdapter(HC, 1, raw=full_raw)], dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert len(calls) == 2
        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.ack is None
        assert result.record is not None
        assert "Sync failed" in result.error
        assert _kinds(notices) == [NoticeKind.SYNC_FAILURE]
        assert orchestrator.status == ConnectionStatus.DISCONNECTED
        assert orchestrator.state == CycleState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_exception_ends_disconnected_and_idle(
        self, notices: list[Notice]
    ) -> None:
        dispatcher = MagicMock()
        dispatcher.send = AsyncMock(side_effect=KeyError("boom"))
        orchestrator = _orchestrator([FakeAdapter(HC, 1)], dispatcher, notices)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.error.startswith("Unexpected error")
        assert orchestrator.state == CycleState.IDLE
        assert not orchestrator.is_running


# ---------------------------------------------------------------------------
# Activity recognition gate
# ---------------------------------------------------------------------------


class TestActivityPermissionGate:
    @pytest.mark.asyncio
    async def test_gate_denied_contacts_no_provider(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        adapter = FakeAdapter(HC, 1)
        gate = AsyncMock(return_value=False)
        orchestrator = _orchestrator([adapter], mock_dispatcher, notices, activity_permission=gate)

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert adapter.authorize_calls == 0
        assert result.attempts == []
        assert _kinds(notices) == [NoticeKind.PERMISSION_DENIED]

    @pytest.mark.asyncio
    async def test_gate_granted_proceeds(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        gate = AsyncMock(return_value=True)
        orchestrator = _orchestrator(
            [FakeAdapter(HC, 1)], mock_dispatcher, notices, activity_permission=gate
        )

        result = await orchestrator.run_cycle(now=TEST_NOW)

        assert result.status == ConnectionStatus.CONNECTED
        gate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_gate_callable_supported(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        orchestrator = _orchestrator(
            [FakeAdapter(HC, 1)], mock_dispatcher, notices, activity_permission=lambda: True
        )
        result = await orchestrator.run_cycle(now=TEST_NOW)
        assert result.status == ConnectionStatus.CONNECTED


# ---------------------------------------------------------------------------
# Single cycle at a time
# ---------------------------------------------------------------------------


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_dropped(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        adapter = FakeAdapter(HC, 1, fetch_delay=0.05)
        orchestrator = _orchestrator([adapter], mock_dispatcher, notices)

        first = asyncio.create_task(orchestrator.run_cycle(now=TEST_NOW))
        await asyncio.sleep(0)
        assert orchestrator.is_running
        second = await orchestrator.run_cycle(now=TEST_NOW)
        first_result = await first

        assert second is None
        assert first_result.status == ConnectionStatus.CONNECTED
        assert len(adapter.fetch_calls) == 1
        mock_dispatcher.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cycles_can_run_back_to_back(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        orchestrator = _orchestrator([FakeAdapter(HC, 1)], mock_dispatcher, notices)

        assert await orchestrator.run_cycle(now=TEST_NOW) is not None
        assert await orchestrator.run_cycle(now=TEST_NOW) is not None
        assert mock_dispatcher.send.await_count == 2


# ---------------------------------------------------------------------------
# Status observation
# ---------------------------------------------------------------------------


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_sequence_on_success(
        self, mock_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        orchestrator = _orchestrator([FakeAdapter(HC, 1)], mock_dispatcher, notices)
        seen: list[ConnectionStatus] = []
        orchestrator.status_holder.subscribe(seen.append)

        await orchestrator.run_cycle(now=TEST_NOW)

        assert seen == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]

    @pytest.mark.asyncio
    async def test_status_sequence_on_failure(
        self, failing_dispatcher: MagicMock, notices: list[Notice]
    ) -> None:
        orchestrator = _orchestrator([FakeAdapter(HC, 1)], failing_dispatcher, notices)
        seen: list[ConnectionStatus] = []
        orchestrator.status_holder.subscribe(seen.append)

        await orchestrator.run_cycle(now=TEST_NOW)

        assert seen == [ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED]

    def test_initial_state(self, mock_dispatcher: MagicMock, notices: list[Notice]) -> None:
        orchestrator = _orchestrator([], mock_dispatcher, notices)
        assert orchestrator.status == ConnectionStatus.DISCONNECTED
        assert orchestrator.state == CycleState.IDLE
        assert orchestrator.last_result is None
        assert orchestrator.last_record is None


class TestStatusHolder:
    def test_unsubscribe_stops_notifications(self) -> None:
        holder = StatusHolder()
        seen: list[ConnectionStatus] = []
        unsubscribe = holder.subscribe(seen.append)

        holder._set(ConnectionStatus.CONNECTING)
        unsubscribe()
        holder._set(ConnectionStatus.CONNECTED)

        assert seen == [ConnectionStatus.CONNECTING]
        assert holder.current == ConnectionStatus.CONNECTED

    def test_unchanged_status_not_broadcast(self) -> None:
        holder = StatusHolder()
        seen: list[ConnectionStatus] = []
        holder.subscribe(seen.append)

        holder._set(ConnectionStatus.DISCONNECTED)

        assert seen == []

    def test_failing_listener_does_not_block_others(self) -> None:
        holder = StatusHolder()
        seen: list[ConnectionStatus] = []
        holder.subscribe(MagicMock(side_effect=RuntimeError("ui gone")))
        holder.subscribe(seen.append)

        holder._set(ConnectionStatus.CONNECTING)

        assert seen == [ConnectionStatus.CONNECTING]
