"""HealthRelay health-data acquisition pipeline.

This package reads the day's health metrics from whichever provider the host
device offers, falls back between providers, normalizes the result into one
canonical record and syncs it to the collection backend.

Subpackages:
    adapters/  Provider adapters (Health Connect, Google Fit, HealthKit)
    sync/      Backend dispatcher and background schedule coordination

Core modules:
    base           ProviderAdapter ABC and canonical data models
    normalizer     RawResponse → MetricRecord mapping
    orchestrator   Provider selection / fallback state machine
    notices        Localized user-facing notices
    config_loader  Load/validate/hot-reload acquisition_config.yaml
"""

from healthrelay.wearables.base import (
    AuthResult,
    ConnectionStatus,
    MetricRecord,
    ProviderAdapter,
    SourceProvider,
    TimeRange,
)
from healthrelay.wearables.config_loader import AcquisitionConfig, get_acquisition_config

__all__ = [
    "ProviderAdapter",
    "MetricRecord",
    "TimeRange",
    "SourceProvider",
    "AuthResult",
    "ConnectionStatus",
    "AcquisitionConfig",
    "get_acquisition_config",
]
