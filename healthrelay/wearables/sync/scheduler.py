"""Background scheduling for acquisition cycles.

ScheduleCoordinator is the only caller of ``run_cycle``.  It serves two
trigger kinds:

1. Manual: ``run_now()`` / ``trigger()`` from the UI or the HTTP surface
2. Periodic: ``on_periodic_trigger(task_id)`` from the host scheduler,
   which must always be told the task is done via ``finish(task_id)``

The host scheduler is a collaborator behind the BackgroundScheduler
protocol.  On a phone it is the OS background-fetch service; on a server
host IntervalScheduler below plays that role with an asyncio loop.

Default schedule:
    minimum interval: 1440 minutes (once a day)
    stop on terminate: no
    start on boot:     yes
    headless:          yes
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from healthrelay.config import Settings
from healthrelay.wearables.orchestrator import AcquisitionOrchestrator, CycleResult

logger = logging.getLogger("healthrelay.wearables.sync.scheduler")

TaskHandler = Callable[[str], Awaitable[None]]
TimeoutHandler = Callable[[str], None]


@dataclass(frozen=True)
class ScheduleConfig:
    """Periodic schedule handed to the host scheduler.

    Attributes:
        minimum_interval_minutes: Shortest gap between periodic triggers.
        stop_on_terminate:        Stop scheduling when the app is terminated.
        start_on_boot:            Resume scheduling after a device reboot.
        enable_headless:          Run without a foreground UI.
    """

    minimum_interval_minutes: int = 1440
    stop_on_terminate: bool = False
    start_on_boot: bool = True
    enable_headless: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScheduleConfig":
        return cls(
            minimum_interval_minutes=settings.schedule_minimum_interval_minutes,
            stop_on_terminate=settings.schedule_stop_on_terminate,
            start_on_boot=settings.schedule_start_on_boot,
            enable_headless=settings.schedule_enable_headless,
        )


_TASK_TIMEOUT_SLACK_SECONDS = 30.0


def cycle_time_budget(settings: Settings, provider_count: int) -> float:
    """Longest a full cycle can legitimately take under the per-call bounds.

    Sums the activity gate, authorize + fetch for every provider, and every
    sync attempt with the backoff between them, plus a fixed slack.  A
    periodic task that outlives this has hung.
    """
    if settings.schedule_task_timeout_seconds is not None:
        return settings.schedule_task_timeout_seconds

    provider = settings.provider_timeout_seconds
    attempts = max(1, settings.sync_max_attempts)
    backoff = sum(
        min(
            max(settings.sync_backoff_base_seconds * 2**i, settings.sync_backoff_base_seconds),
            settings.sync_backoff_max_seconds,
        )
        for i in range(attempts - 1)
    )
    return (
        provider
        + provider_count * 2 * provider
        + attempts * settings.sync_timeout_seconds
        + backoff
        + _TASK_TIMEOUT_SLACK_SECONDS
    )


class BackgroundScheduler(Protocol):
    """What the coordinator needs from the host scheduler."""

    def configure(
        self,
        config: ScheduleConfig,
        on_task: TaskHandler,
        on_timeout: TimeoutHandler,
    ) -> None:
        ...

    def finish(self, task_id: str) -> None:
        ...


class ScheduleCoordinator:
    """Bridge manual and periodic triggers onto one orchestrator.

    Usage::

        coordinator = ScheduleCoordinator(orchestrator, scheduler)
        coordinator.configure()
        result = await coordinator.run_now()
    """

    def __init__(
        self,
        orchestrator: AcquisitionOrchestrator,
        scheduler: BackgroundScheduler | None = None,
        config: ScheduleConfig | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._scheduler = scheduler
        self._config = config or ScheduleConfig()
        self._pending: set[asyncio.Task] = set()

    @property
    def config(self) -> ScheduleConfig:
        return self._config

    def configure(self) -> None:
        """Register the periodic schedule with the host scheduler."""
        if self._scheduler is None:
            logger.info("No background scheduler; periodic sync disabled")
            return
        self._scheduler.configure(self._config, self.on_periodic_trigger, self.on_timeout)
        logger.info(
            "Background sync configured every %d min (headless=%s, start_on_boot=%s)",
            self._config.minimum_interval_minutes,
            self._config.enable_headless,
            self._config.start_on_boot,
        )

    async def run_now(self) -> CycleResult | None:
        """Run a cycle immediately.

        Returns:
            CycleResult, or None if a cycle was already in flight.
        """
        return await self._orchestrator.run_cycle()

    def trigger(self) -> asyncio.Task:
        """Start a cycle without waiting for it (UI refresh button)."""
        task = asyncio.get_running_loop().create_task(self.run_now())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def on_periodic_trigger(self, task_id: str) -> None:
        """Run a cycle for the host scheduler and report completion."""
        logger.info("[BackgroundFetch] task %s started", task_id)
        try:
            result = await self._orchestrator.run_cycle()
            if result is None:
                logger.info("[BackgroundFetch] task %s skipped, cycle in flight", task_id)
            else:
                logger.info(
                    "[BackgroundFetch] task %s finished: %s", task_id, result.status.value
                )
        except Exception:
            logger.exception("[BackgroundFetch] task %s failed", task_id)
        finally:
            self._finish(task_id)

    def on_timeout(self, task_id: str) -> None:
        """The host scheduler ran out of time for ``task_id``."""
        logger.warning("[BackgroundFetch] TIMEOUT: %s", task_id)
        self._finish(task_id)

    def _finish(self, task_id: str) -> None:
        if self._scheduler is not None:
            self._scheduler.finish(task_id)


class IntervalScheduler:
    """asyncio implementation of the host scheduler for server hosts.

    Fires ``on_task`` every ``minimum_interval_minutes`` and waits for
    ``finish(task_id)`` before starting the next interval.  A task that has
    not finished within ``task_timeout_seconds`` is reported through
    ``on_timeout``.

    Usage::

        scheduler = IntervalScheduler()
        coordinator = ScheduleCoordinator(orchestrator, scheduler)
        coordinator.configure()
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, task_timeout_seconds: float = 120.0, run_immediately: bool = False) -> None:
        """Initialize the scheduler.

        Args:
            task_timeout_seconds: How long a task may run before ``on_timeout``.
            run_immediately:      Fire once at start instead of after one interval.
        """
        self._task_timeout = task_timeout_seconds
        self._run_immediately = run_immediately
        self._config: ScheduleConfig | None = None
        self._on_task: TaskHandler | None = None
        self._on_timeout: TimeoutHandler | None = None
        self._loop_task: asyncio.Task | None = None
        self._finished: dict[str, asyncio.Event] = {}

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def task_timeout_seconds(self) -> float:
        return self._task_timeout

    @property
    def interval_seconds(self) -> float:
        if self._config is None:
            raise RuntimeError("IntervalScheduler.configure() has not been called")
        return self._config.minimum_interval_minutes * 60.0

    def configure(
        self,
        config: ScheduleConfig,
        on_task: TaskHandler,
        on_timeout: TimeoutHandler,
    ) -> None:
        self._config = config
        self._on_task = on_task
        self._on_timeout = on_timeout

    def start(self) -> None:
        """Start the interval loop on the running event loop."""
        if self._config is None or self._on_task is None:
            raise RuntimeError("IntervalScheduler.configure() has not been called")
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("IntervalScheduler started (every %.0f s)", self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to exit."""
        task, self._loop_task = self._loop_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("IntervalScheduler stopped")

    def finish(self, task_id: str) -> None:
        event = self._finished.get(task_id)
        if event is None:
            logger.debug("finish() for unknown task %s", task_id)
            return
        event.set()

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            await self._fire()
            await asyncio.sleep(self.interval_seconds)

    async def _fire(self) -> None:
        task_id = f"healthrelay-sync-{uuid.uuid4().hex[:8]}"
        done = asyncio.Event()
        self._finished[task_id] = done
        runner = asyncio.get_running_loop().create_task(self._on_task(task_id))
        try:
            await asyncio.wait_for(done.wait(), timeout=self._task_timeout)
        except asyncio.TimeoutError:
            if self._on_timeout is not None:
                self._on_timeout(task_id)
            runner.cancel()
        except asyncio.CancelledError:
            runner.cancel()
            raise
        finally:
            self._finished.pop(task_id, None)
