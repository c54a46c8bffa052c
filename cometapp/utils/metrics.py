# cometapp/utils/metrics.py
from __future__ import annotations

from typing import Final

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

__all__ = [
    "MET_REQUESTS",
    "REQ_LATENCY",
    "MET_PROVIDER_CALLS",
    "PROVIDER_LATENCY",
    "GAUGE_PROVIDER_UP",
    "MET_CACHE_LOOKUPS",
    "MET_CACHE_DEGRADED",
    "MET_DEDUP",
    "GAUGE_APP_UP",
    "export_prometheus",
    "CONTENT_TYPE_LATEST",
]

# HTTP
MET_REQUESTS: Final = Counter("comet_api_requests_total", "API requests", ["route"])
REQ_LATENCY: Final = Histogram("comet_request_seconds", "API request latency", ["route"])
GAUGE_APP_UP: Final = Gauge("comet_app_up", "1 if app is running")

# Upstream providers
MET_PROVIDER_CALLS: Final = Counter(
    "comet_provider_calls_total", "Provider calls by outcome", ["provider", "outcome"]
)
PROVIDER_LATENCY: Final = Histogram(
    "comet_provider_seconds", "Provider call latency", ["provider"]
)
GAUGE_PROVIDER_UP: Final = Gauge(
    "comet_provider_active", "1 if the provider's last call succeeded", ["provider"]
)

# Cache / dedup
MET_CACHE_LOOKUPS: Final = Counter(
    "comet_cache_lookups_total", "Cache lookups by result", ["dataset", "result"]
)
MET_CACHE_DEGRADED: Final = Counter(
    "comet_cache_degraded_total", "Disk mirror disabled after an I/O error"
)
MET_DEDUP: Final = Counter(
    "comet_dedup_requests_total", "Deduplicated calls by result", ["result"]
)


def export_prometheus() -> bytes:
    return generate_latest(REGISTRY)
