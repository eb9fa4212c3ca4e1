"""Load, validate, and hot-reload the HealthRelay acquisition configuration.

The config lives in ``acquisition_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_acquisition_config()``
to re-read from disk without a restart.

Usage::

    from healthrelay.wearables.config_loader import get_acquisition_config

    config = get_acquisition_config()
    order = config.provider_order("android")        # [HEALTH_CONNECT, GOOGLE_FIT]
    label = config.device_label(SourceProvider.HEALTHKIT)  # "Apple Health"
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from healthrelay.wearables.base import METRIC_KEYS, SourceProvider

logger = logging.getLogger("healthrelay.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "acquisition_config.yaml"

_DEFAULT_STEP_MARKERS = ["estimated_steps", "aggregate"]


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Per-provider settings."""

    provider: SourceProvider
    device_label: str
    install_url: str | None
    read_scopes: dict[str, list[str]]

    def all_scopes(self) -> list[str]:
        """Flattened read scopes in metric order, without duplicates."""
        seen: list[str] = []
        for metric in METRIC_KEYS:
            for scope in self.read_scopes.get(metric, []):
                if scope not in seen:
                    seen.append(scope)
        return seen


@dataclass
class AcquisitionConfig:
    """Complete, validated acquisition configuration.

    Attributes:
        version:             Config schema version string.
        platforms:           platform → providers in fallback order.
        providers:           Per-provider labels, links and scopes.
        step_source_markers: Source-label markers preferred for step counts.
    """

    version: str
    platforms: dict[str, list[SourceProvider]]
    providers: dict[SourceProvider, ProviderConfig]
    step_source_markers: list[str] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def provider_order(self, platform: str) -> list[SourceProvider]:
        """Return providers for a platform, highest priority first.

        Raises:
            KeyError: If the platform is not configured.
        """
        if platform not in self.platforms:
            raise KeyError(
                f"No providers configured for platform '{platform}'. "
                f"Available: {list(self.platforms)}"
            )
        return list(self.platforms[platform])

    def device_label(self, provider: SourceProvider) -> str:
        cfg = self.providers.get(provider)
        return cfg.device_label if cfg else provider.value

    def install_url(self, provider: SourceProvider) -> str | None:
        cfg = self.providers.get(provider)
        return cfg.install_url if cfg else None

    def read_scopes(self, provider: SourceProvider) -> list[str]:
        cfg = self.providers.get(provider)
        return cfg.all_scopes() if cfg else []


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when acquisition_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Acquisition config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _parse_provider(name: object, errors: list[str]) -> SourceProvider | None:
    try:
        return SourceProvider(name)
    except ValueError:
        errors.append(
            f"Unknown provider {name!r}; expected one of "
            f"{[p.value for p in SourceProvider]}"
        )
        return None


def _validate_and_build(raw: dict) -> AcquisitionConfig:
    """Validate the raw YAML dict and construct an AcquisitionConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Platforms ──
    platforms_raw = raw.get("platforms") or {}
    if not platforms_raw:
        errors.append("'platforms' section is missing or empty")

    platforms: dict[str, list[SourceProvider]] = {}
    for platform, names in platforms_raw.items():
        if not isinstance(names, list) or not names:
            errors.append(f"platforms.{platform} must be a non-empty list of providers")
            continue
        ordered: list[SourceProvider] = []
        for name in names:
            provider = _parse_provider(name, errors)
            if provider is None:
                continue
            if provider in ordered:
                errors.append(f"platforms.{platform} lists '{name}' more than once")
                continue
            ordered.append(provider)
        platforms[str(platform)] = ordered

    # ── Providers ──
    providers: dict[SourceProvider, ProviderConfig] = {}
    for name, cfg in (raw.get("providers") or {}).items():
        provider = _parse_provider(name, errors)
        if provider is None:
            continue
        if not isinstance(cfg, dict):
            errors.append(f"providers.{name} must be a mapping")
            continue

        scopes: dict[str, list[str]] = {}
        for metric, value in (cfg.get("read_scopes") or {}).items():
            if metric not in METRIC_KEYS:
                errors.append(f"providers.{name}.read_scopes has unknown metric '{metric}'")
                continue
            scopes[metric] = [value] if isinstance(value, str) else [str(v) for v in value]

        missing = [m for m in METRIC_KEYS if m not in scopes]
        if missing:
            logger.warning(
                "Provider %s has no read scope for: %s", name, ", ".join(missing)
            )

        providers[provider] = ProviderConfig(
            provider=provider,
            device_label=str(cfg.get("device_label") or name),
            install_url=cfg.get("install_url"),
            read_scopes=scopes,
        )

    for platform, ordered in platforms.items():
        for provider in ordered:
            if provider not in providers:
                errors.append(
                    f"platforms.{platform} references '{provider.value}' "
                    "which has no providers section"
                )

    markers = raw.get("step_source_markers", _DEFAULT_STEP_MARKERS)
    if not isinstance(markers, list):
        errors.append("'step_source_markers' must be a list of strings")
        markers = []

    if errors:
        raise ConfigValidationError(
            f"acquisition_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return AcquisitionConfig(
        version=version,
        platforms=platforms,
        providers=providers,
        step_source_markers=[str(m) for m in markers],
    )


def load_acquisition_config(path: Path | None = None) -> AcquisitionConfig:
    """Load and validate the acquisition config from disk.

    Args:
        path: Override path to YAML. Uses the bundled file by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded acquisition config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: AcquisitionConfig | None = None
_config_lock = threading.Lock()


def get_acquisition_config() -> AcquisitionConfig:
    """Return the global AcquisitionConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_acquisition_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_acquisition_config()
    return _config


def reload_acquisition_config(path: Path | None = None) -> AcquisitionConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_acquisition_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded acquisition config: %s → %s", old_version, new_config.version)
    return new_config
