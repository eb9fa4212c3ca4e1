"""HealthRelay API: FastAPI application entry point.

Run locally:
    uvicorn healthrelay.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthrelay.config import Settings, get_settings
from healthrelay.routers import acquisition, health
from healthrelay.wearables.adapters import build_adapters, load_bridge
from healthrelay.wearables.base import SourceProvider
from healthrelay.wearables.config_loader import AcquisitionConfig, get_acquisition_config
from healthrelay.wearables.orchestrator import AcquisitionOrchestrator
from healthrelay.wearables.sync.dispatcher import SyncDispatcher
from healthrelay.wearables.sync.scheduler import (
    IntervalScheduler,
    ScheduleConfig,
    ScheduleCoordinator,
    cycle_time_budget,
)

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthrelay")


# ---------- Wiring ----------

def build_orchestrator(
    settings: Settings,
    config: AcquisitionConfig,
    http_client: httpx.AsyncClient | None = None,
) -> AcquisitionOrchestrator:
    """Assemble adapters, dispatcher and orchestrator from configuration."""
    adapters = build_adapters(settings, config, http_client=http_client)
    dispatcher = SyncDispatcher.from_settings(settings, config, http_client=http_client)
    return AcquisitionOrchestrator(
        adapters,
        dispatcher,
        activity_permission=load_bridge(settings.activity_permission_gate, instantiate=False),
        install_urls={p: config.install_url(p) for p in SourceProvider},
        step_markers=config.step_source_markers,
        provider_timeout_seconds=settings.provider_timeout_seconds,
        locale=settings.locale,
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting HealthRelay API v%s [%s, platform=%s]",
        settings.app_version,
        settings.environment,
        settings.platform,
    )

    async with httpx.AsyncClient() as http_client:
        orchestrator = build_orchestrator(settings, get_acquisition_config(), http_client)
        scheduler = IntervalScheduler(
            task_timeout_seconds=cycle_time_budget(settings, len(orchestrator.adapters))
        )
        coordinator = ScheduleCoordinator(
            orchestrator,
            scheduler if settings.schedule_enabled else None,
            ScheduleConfig.from_settings(settings),
        )
        coordinator.configure()
        if settings.schedule_enabled:
            scheduler.start()

        app.state.orchestrator = orchestrator
        app.state.coordinator = coordinator
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            await scheduler.stop()

    logger.info("HealthRelay API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="HealthRelay API",
        description=(
            "Health-data acquisition relay: reads the day's metrics from the "
            "available provider, normalizes them and syncs them to the backend."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(acquisition.router, prefix=v1_prefix)

    return app


app = create_app()
