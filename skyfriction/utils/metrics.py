from __future__ import annotations
from typing import Final

from prometheus_client import Counter, Gauge, Histogram

# HTTP surface (keep names stable; dashboards key on them)
MET_REQUESTS: Final = Counter("skyf_api_requests_total", "API requests", ["route"])
REQ_LATENCY: Final = Histogram("skyf_request_seconds", "API request latency", ["route"])
GAUGE_APP_UP: Final = Gauge("skyf_app_up", "1 if app is running")

# Engine
EPHEM_FETCHES: Final = Counter("skyf_ephemeris_fetches_total", "Horizons fetches", ["kind", "outcome"])
EPHEM_RUN_REUSE: Final = Counter("skyf_ephemeris_run_reuse_total", "Stored ephemeris runs reused", ["kind"])
CACHE_LOOKUPS: Final = Counter("skyf_cache_lookups_total", "Provenance cache lookups", ["kind", "result"])
CACHE_WRITE_FAILURES: Final = Counter("skyf_cache_write_failures_total", "Provenance cache write failures", ["kind"])

# Batch
BATCH_USERS: Final = Counter("skyf_batch_users_total", "Users processed by the daily batch")
BATCH_EVENTS: Final = Counter("skyf_batch_events_total", "Friction events written")
BATCH_FRAGS: Final = Counter("skyf_batch_frags_total", "Frags written")
BATCH_ERRORS: Final = Counter("skyf_batch_errors_total", "Per-user batch failures")
BATCH_SECONDS: Final = Histogram("skyf_batch_seconds", "Daily batch wall time")
