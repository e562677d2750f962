# skyfriction/api/deps.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from skyfriction.core.horizons import EphemerisClient
from skyfriction.core.orchestrator import BatchOrchestrator
from skyfriction.core.provenance import ProvenanceCache
from skyfriction.core.service import EngineService
from skyfriction.core.store import MemoryStore, SQLiteStore, Store
from skyfriction.core.timezones import TimezoneConverter
from skyfriction.utils.cache import MemoryCacheBackend, SQLiteCacheBackend
from skyfriction.utils.ratelimit import TokenBucketLimiter
from skyfriction.version import ASSET_VERSION, BATCH_ENGINE_VERSION

log = logging.getLogger(__name__)

EXTENSION_KEY = "skyfriction"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    """Everything the routes need, built once per app."""
    cfg: Any
    store: Store
    cache: ProvenanceCache
    engine: EngineService
    orchestrator: BatchOrchestrator
    limiter: TokenBucketLimiter
    clock: Callable[[], datetime] = _utcnow


def build_services(cfg: Any, *, session: Any = None, clock: Optional[Callable[[], datetime]] = None) -> Services:
    clock = clock or _utcnow
    storage = cfg.storage
    if str(storage.backend).lower() == "sqlite":
        store: Store = SQLiteStore(storage.db_path)
        backend: Any = SQLiteCacheBackend(storage.db_path)
    else:
        store = MemoryStore()
        backend = MemoryCacheBackend()
    log.info("storage backend=%s", storage.backend)

    converter = TimezoneConverter()
    client = EphemerisClient(session, base_url=cfg.horizons.url, timeout_s=cfg.horizons.timeout_s)
    cache = ProvenanceCache(backend)
    engine = EngineService(client, cache, store, converter=converter, clock=clock, step=cfg.horizons.step)
    orchestrator = BatchOrchestrator(
        engine,
        store,
        converter=converter,
        engine_version=cfg.batch.engine_version or BATCH_ENGINE_VERSION,
        asset_version=cfg.batch.asset_version or ASSET_VERSION,
        pinned_limit=cfg.batch.pinned_limit,
        max_workers=cfg.batch.max_workers,
        templates=cfg.text.templates,
    )
    rl = cfg.ratelimit
    limiter = TokenBucketLimiter(rl.per_minute, burst=rl.burst, max_keys=rl.max_keys)
    return Services(cfg=cfg, store=store, cache=cache, engine=engine, orchestrator=orchestrator,
                    limiter=limiter, clock=clock)
