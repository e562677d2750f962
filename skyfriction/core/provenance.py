# skyfriction/core/provenance.py
from __future__ import annotations

"""
Content-addressed cache for engine outputs.

Key: (subject scope, kind, engine version, inputs hash, date key?, secondary
subject key?). Entries are write-once per key; there is no TTL. A new engine
version or different inputs produce a new key and the old entry stays behind
as audit trail.

Failure policy
- read error   → logged, treated as a miss
- write error  → logged, counted, value still returned to the caller
"""

import hashlib
import json
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from skyfriction.utils.cache import CacheKey, LRUCache
from skyfriction.utils.metrics import CACHE_LOOKUPS, CACHE_WRITE_FAILURES

log = logging.getLogger(__name__)

__all__ = [
    "canonical_json",
    "hash_inputs",
    "sha256_hex",
    "make_key",
    "CacheBackend",
    "ProvenanceCache",
]


def canonical_json(obj: Any) -> str:
    """Keys sorted at every depth, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def hash_inputs(inputs: Dict[str, Any]) -> str:
    return sha256_hex(canonical_json(inputs))


def make_key(
    subject_scope: str,
    kind: str,
    engine_version: str,
    inputs_hash: str,
    date_key: Optional[str] = None,
    secondary_subject_key: Optional[str] = None,
) -> CacheKey:
    return (
        str(subject_scope),
        str(kind),
        str(engine_version),
        str(inputs_hash),
        date_key or "",
        secondary_subject_key or "",
    )


class CacheBackend(Protocol):
    """`set` should raise CacheWriteError; ProvenanceCache treats any write exception as non-fatal."""
    def get(self, key: CacheKey) -> Optional[Dict[str, Any]]: ...
    def set(self, key: CacheKey, value: Dict[str, Any], run_id: Optional[str] = None) -> None: ...


class ProvenanceCache:
    def __init__(self, backend: CacheBackend, *, memo_capacity: int = 1024):
        self.backend = backend
        self.memo = LRUCache(memo_capacity) if memo_capacity > 0 else None

    def get(
        self,
        subject_scope: str,
        kind: str,
        engine_version: str,
        inputs_hash: str,
        date_key: Optional[str] = None,
        secondary_subject_key: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        key = make_key(subject_scope, kind, engine_version, inputs_hash, date_key, secondary_subject_key)
        if self.memo is not None:
            hit = self.memo.get(key)
            if hit is not None:
                CACHE_LOOKUPS.labels(kind=kind, result="hit").inc()
                return json.loads(hit)
        try:
            out = self.backend.get(key)
        except Exception as e:
            log.warning("cache read failed kind=%s subject=%s: %s", kind, subject_scope, e)
            out = None
        CACHE_LOOKUPS.labels(kind=kind, result="hit" if out is not None else "miss").inc()
        if out is not None and self.memo is not None:
            self.memo.set(key, canonical_json(out))
        return out

    def put(
        self,
        subject_scope: str,
        kind: str,
        engine_version: str,
        inputs_hash: str,
        output: Dict[str, Any],
        date_key: Optional[str] = None,
        secondary_subject_key: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> bool:
        """Store `output`; returns False (after logging) when the backend refused it."""
        key = make_key(subject_scope, kind, engine_version, inputs_hash, date_key, secondary_subject_key)
        try:
            self.backend.set(key, output, run_id=run_id)
        except Exception as e:
            # CacheWriteError from our backends, anything else from a broken store
            CACHE_WRITE_FAILURES.labels(kind=kind).inc()
            log.warning("cache write failed kind=%s subject=%s inputs=%s: %s: %s",
                        kind, subject_scope, inputs_hash[:12], type(e).__name__, e)
            return False
        if self.memo is not None:
            self.memo.set(key, canonical_json(output))
        return True

    def read_through(
        self,
        subject_scope: str,
        kind: str,
        engine_version: str,
        inputs_hash: str,
        compute: Callable[[], Dict[str, Any]],
        *,
        date_key: Optional[str] = None,
        secondary_subject_key: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        cached = self.get(subject_scope, kind, engine_version, inputs_hash, date_key, secondary_subject_key)
        if cached is not None:
            return cached
        out = compute()
        self.put(subject_scope, kind, engine_version, inputs_hash, out,
                 date_key=date_key, secondary_subject_key=secondary_subject_key, run_id=run_id)
        return out
