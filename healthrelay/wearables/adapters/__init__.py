"""Health-data provider adapters for HealthRelay.

Each adapter implements the ProviderAdapter ABC and handles:
- Authorization for every metric read scope
- Fetching the day's samples from its source
- Reporting NOT_INSTALLED / DENIED distinctly so the orchestrator can decide
  between fallback and abort

Available adapters:
    HealthConnectAdapter  Android Health Connect (on-device bridge)
    GoogleFitAdapter      Google Fit REST API
    HealthKitAdapter      Apple HealthKit (on-device bridge)
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

from healthrelay.config import Settings
from healthrelay.wearables.adapters.google_fit import GoogleFitAdapter
from healthrelay.wearables.adapters.health_connect import HealthConnectAdapter
from healthrelay.wearables.adapters.healthkit import HealthKitAdapter
from healthrelay.wearables.base import ProviderAdapter, SourceProvider
from healthrelay.wearables.config_loader import AcquisitionConfig

__all__ = [
    "HealthConnectAdapter",
    "GoogleFitAdapter",
    "HealthKitAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
    "build_adapters",
    "load_bridge",
]

logger = logging.getLogger("healthrelay.wearables.adapters")

# Registry: provider → adapter class
ADAPTER_REGISTRY: dict[SourceProvider, type[ProviderAdapter]] = {
    SourceProvider.HEALTH_CONNECT: HealthConnectAdapter,
    SourceProvider.GOOGLE_FIT: GoogleFitAdapter,
    SourceProvider.HEALTHKIT: HealthKitAdapter,
}


def get_adapter(provider: SourceProvider | str) -> type[ProviderAdapter]:
    """Return the adapter class for a provider.

    Raises:
        KeyError: If the provider is not registered.
    """
    try:
        key = SourceProvider(provider)
    except ValueError:
        key = None
    if key not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for provider '{provider}'. "
            f"Available: {[p.value for p in ADAPTER_REGISTRY]}"
        )
    return ADAPTER_REGISTRY[key]


def load_bridge(path: str, instantiate: bool = True) -> Any | None:
    """Import a native bridge from ``"package.module:attribute"``.

    With ``instantiate`` a callable attribute is called with no arguments and
    its result used; otherwise the attribute itself is returned.
    An empty path means the SDK is not present on this host.

    Raises:
        ValueError:  If the path is not in ``module:attribute`` form.
        ImportError: If the module cannot be imported.
    """
    if not path:
        return None
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Bridge path must look like 'module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    return target() if instantiate and callable(target) else target


def build_adapters(
    settings: Settings,
    config: AcquisitionConfig,
    http_client: Any | None = None,
) -> list[ProviderAdapter]:
    """Instantiate the platform's adapters in fallback order.

    Args:
        settings:    Application settings (platform, tokens, bridge paths).
        config:      Acquisition config (provider order, read scopes).
        http_client: Shared httpx.AsyncClient for HTTP-backed adapters.

    Returns:
        Adapters sorted by priority, highest first.
    """
    adapters: list[ProviderAdapter] = []
    for priority, provider in enumerate(config.provider_order(settings.platform), start=1):
        scopes = config.read_scopes(provider)
        if provider == SourceProvider.HEALTH_CONNECT:
            adapter: ProviderAdapter = HealthConnectAdapter(
                bridge=load_bridge(settings.health_connect_bridge),
                permissions=scopes,
                priority=priority,
            )
        elif provider == SourceProvider.GOOGLE_FIT:
            adapter = GoogleFitAdapter(
                access_token=settings.google_fit_access_token,
                scopes=scopes,
                priority=priority,
                http_client=http_client,
            )
        else:
            adapter = HealthKitAdapter(
                bridge=load_bridge(settings.healthkit_bridge),
                permissions=scopes,
                priority=priority,
            )
        adapters.append(adapter)

    logger.info(
        "Providers for %s: %s",
        settings.platform,
        " > ".join(a.DISPLAY_NAME for a in adapters),
    )
    return adapters
