"""Map any provider's RawResponse onto the canonical MetricRecord.

Policy per metric: take the first sample in the provider's own ordering
(providers return most-recent-first or a single daily aggregate).  A missing
or empty sample list leaves the field unset; ``None`` means "no data", while
``0`` is a real reading.

Two exceptions:

* **steps**: when several step streams coexist, the sample whose ``source``
  contains an estimated/aggregate marker wins, so overlapping sensors are
  not double counted.
* **sleep**: stored as a session count (``len`` of the list), since that is
  the only granularity every provider offers.  An empty list is 0 sessions;
  an absent key is unset.

``normalize`` is pure and total: malformed input degrades to unset fields
and never raises.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable

from healthrelay.wearables.base import MetricRecord, ProviderAdapter, SourceProvider

logger = logging.getLogger("healthrelay.wearables.normalizer")

DEFAULT_STEP_MARKERS: tuple[str, ...] = ("estimated_steps", "aggregate")

_safe_int = ProviderAdapter._safe_int
_safe_float = ProviderAdapter._safe_float

# RawResponse key → MetricRecord field, for plain single-value metrics
_SIMPLE_FLOAT_METRICS: dict[str, str] = {
    "heart_rate": "heart_rate",
    "oxygen_saturation": "oxygen_saturation",
    "respiratory_rate": "respiratory_rate",
    "body_temperature": "body_temperature",
    "blood_glucose": "blood_glucose",
}


def _samples(raw: Mapping[str, Any], key: str) -> list[Any] | None:
    value = raw.get(key)
    return value if isinstance(value, list) else None


def _first_sample(samples: list[Any] | None) -> Mapping[str, Any] | None:
    if not samples:
        return None
    first = samples[0]
    return first if isinstance(first, Mapping) else None


def _select_step_sample(
    samples: list[Any] | None, markers: Iterable[str]
) -> Mapping[str, Any] | None:
    """Prefer the first sample whose source label contains a marker."""
    if not samples:
        return None
    for sample in samples:
        if not isinstance(sample, Mapping):
            continue
        source = sample.get("source")
        if isinstance(source, str) and any(m in source for m in markers):
            return sample
    return _first_sample(samples)


def normalize(
    raw: Mapping[str, Any] | None,
    provider: SourceProvider,
    *,
    recorded_at: datetime | None = None,
    step_markers: Iterable[str] | None = None,
) -> MetricRecord:
    """Convert a RawResponse into a MetricRecord.

    Args:
        raw:          Metric name → sample list, as returned by ``fetch()``.
        provider:     Provider that produced ``raw``.
        recorded_at:  Record timestamp.  Defaults to now (UTC).  Pass the same
                      value to get field-for-field identical records.
        step_markers: Source-label markers that identify the preferred step
                      stream.  Defaults to ``DEFAULT_STEP_MARKERS``.

    Returns:
        MetricRecord with unset fields for anything missing or malformed.
    """
    if recorded_at is None:
        recorded_at = datetime.now(timezone.utc)
    if not isinstance(raw, Mapping):
        logger.debug("normalize: non-mapping response from %s, all fields unset", provider.value)
        raw = {}

    markers = tuple(step_markers) if step_markers is not None else DEFAULT_STEP_MARKERS

    step_sample = _select_step_sample(_samples(raw, "steps"), markers)
    steps = _safe_int(step_sample.get("value")) if step_sample else None

    sleep_list = _samples(raw, "sleep")
    sleep_sessions = len(sleep_list) if sleep_list is not None else None

    bp = _first_sample(_samples(raw, "blood_pressure"))
    systolic = _safe_float(bp.get("systolic")) if bp else None
    diastolic = _safe_float(bp.get("diastolic")) if bp else None

    simple: dict[str, float | None] = {}
    for key, field_name in _SIMPLE_FLOAT_METRICS.items():
        sample = _first_sample(_samples(raw, key))
        simple[field_name] = _safe_float(sample.get("value")) if sample else None

    return MetricRecord(
        recorded_at=recorded_at,
        source_provider=provider,
        steps=steps,
        sleep_sessions=sleep_sessions,
        systolic_bp=systolic,
        diastolic_bp=diastolic,
        **simple,
    )
