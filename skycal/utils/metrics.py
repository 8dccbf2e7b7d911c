# skycal/utils/metrics.py
"""Prometheus metric families shared by the engine and the HTTP layer (keep names stable!)."""
from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Gauge, Histogram

__all__ = [
    "MET_REQUESTS",
    "REQ_LATENCY",
    "GAUGE_APP_UP",
    "CACHE_LOOKUPS",
    "CACHE_ENTRIES",
    "EVENTS_DETECTED",
    "REFINE_FAILURES",
    "REFINE_LATENCY",
    "SAMPLE_BODY_FAILURES",
    "STALE_DISCARDS",
]

# HTTP
MET_REQUESTS: Final = Counter("skycal_api_requests_total", "API requests", ["route"])
REQ_LATENCY: Final = Histogram("skycal_request_seconds", "API request latency", ["route"])
GAUGE_APP_UP: Final = Gauge("skycal_app_up", "1 if app is running")

# Cache
CACHE_LOOKUPS: Final = Counter("skycal_cache_lookups_total", "Result cache lookups", ["result"])
CACHE_ENTRIES: Final = Gauge("skycal_cache_entries", "Result cache population")

# Engine
EVENTS_DETECTED: Final = Counter("skycal_events_detected_total", "Raw events emitted by the detector", ["kind"])
REFINE_FAILURES: Final = Counter("skycal_refine_failures_total", "Refinements degraded to sample time", ["kind"])
REFINE_LATENCY: Final = Histogram("skycal_refine_seconds", "Per-event refinement latency", ["kind"])
SAMPLE_BODY_FAILURES: Final = Counter(
    "skycal_sample_body_failures_total", "Bodies skipped while sampling", ["body"]
)
STALE_DISCARDS: Final = Counter("skycal_stale_discards_total", "Results dropped for a superseded request")
