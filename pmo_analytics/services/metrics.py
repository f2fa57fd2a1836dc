# -*- coding: utf-8 -*-
"""
Location: ./pmo_analytics/services/metrics.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

PMO Analytics Metrics Service.

Prometheus instrumentation for the analytics engine. Collectors are
registered once with the default registry when this module is imported;
callers record through the small helper functions below so that the
``metrics_enabled`` switch is honoured in one place.

Supported Metrics:
- pmo_cache_lookups_total: Counter of cache lookups by kind and result (hit/miss)
- pmo_cache_evictions_total: Counter of expired entries removed by sweeps or lazy eviction
- pmo_calculations_total: Counter of recomputations by calculation kind
- pmo_calculation_duration_seconds: Histogram of calculation execution times
- pmo_upstream_retries_total: Counter of retried upstream requests by reason

Environment Variables:
- METRICS_ENABLED: Enable/disable metrics collection (default: "true")

Usage:
    from pmo_analytics.services import metrics

    metrics.record_cache_lookup("evm", hit=True)
    print(metrics.render_latest().decode())
"""

# Third-Party
from prometheus_client import Counter, generate_latest, Histogram, REGISTRY

# First-Party
from pmo_analytics.config import settings

CACHE_LOOKUPS = Counter(
    "pmo_cache_lookups_total",
    "Tiered cache lookups by calculation kind and result",
    labelnames=["kind", "result"],
    registry=REGISTRY,
)
CACHE_EVICTIONS = Counter(
    "pmo_cache_evictions_total",
    "Expired cache entries removed",
    registry=REGISTRY,
)
CALCULATIONS = Counter(
    "pmo_calculations_total",
    "Analytics recomputations by calculation kind",
    labelnames=["kind"],
    registry=REGISTRY,
)
CALCULATION_DURATION = Histogram(
    "pmo_calculation_duration_seconds",
    "Analytics calculation execution time",
    labelnames=["kind"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    registry=REGISTRY,
)
UPSTREAM_RETRIES = Counter(
    "pmo_upstream_retries_total",
    "Upstream requests retried by the resilient HTTP client",
    labelnames=["reason"],
    registry=REGISTRY,
)


def record_cache_lookup(kind: str, hit: bool) -> None:
    """Count a cache lookup.

    Args:
        kind: Calculation kind looked up
        hit: Whether a fresh value was found
    """
    if settings.metrics_enabled:
        CACHE_LOOKUPS.labels(kind=kind, result="hit" if hit else "miss").inc()


def record_evictions(count: int) -> None:
    """Count expired entries removed from the cache.

    Args:
        count: Number of entries removed
    """
    if settings.metrics_enabled and count > 0:
        CACHE_EVICTIONS.inc(count)


def record_calculation(kind: str, seconds: float) -> None:
    """Count a recomputation and observe its duration.

    Args:
        kind: Calculation kind recomputed
        seconds: Execution time in seconds
    """
    if settings.metrics_enabled:
        CALCULATIONS.labels(kind=kind).inc()
        CALCULATION_DURATION.labels(kind=kind).observe(seconds)


def record_upstream_retry(reason: str) -> None:
    """Count a retried upstream request.

    Args:
        reason: HTTP status code or exception class name that triggered the retry
    """
    if settings.metrics_enabled:
        UPSTREAM_RETRIES.labels(reason=reason).inc()


def render_latest() -> bytes:
    """Render all registered collectors in Prometheus text format.

    Returns:
        bytes: Exposition payload
    """
    return generate_latest(REGISTRY)
