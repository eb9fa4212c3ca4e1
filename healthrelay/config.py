"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthRelay"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    # --- Host device ---
    platform: Literal["android", "ios"] = "android"
    locale: Literal["en", "fa"] = "en"
    # "package.module:factory" for the OS activity-recognition prompt; checked
    # before any provider is contacted.  Empty = no OS-level gate.
    activity_permission_gate: str = ""

    # --- Backend ---
    backend_url: str = "https://your-backend.com"
    backend_token: str = ""  # bearer token, issued out of band
    patient_id: int = 1

    # --- Timeouts (seconds) ---
    provider_timeout_seconds: float = 30.0
    sync_timeout_seconds: float = 30.0

    # --- Sync retry ---
    sync_max_attempts: int = 3
    sync_backoff_base_seconds: float = 1.0
    sync_backoff_max_seconds: float = 8.0

    # --- Background schedule (handed to the scheduler collaborator) ---
    schedule_enabled: bool = True
    schedule_minimum_interval_minutes: int = 1440
    schedule_stop_on_terminate: bool = False
    schedule_start_on_boot: bool = True
    schedule_enable_headless: bool = True
    # Upper bound on one periodic task; unset = derived from the timeouts above
    schedule_task_timeout_seconds: float | None = None

    # --- Providers ---
    google_fit_access_token: str = ""
    # "package.module:factory" returning a bridge object; empty = not installed
    health_connect_bridge: str = ""
    healthkit_bridge: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
