# skyfriction/utils/ratelimit.py
from __future__ import annotations

"""
Token-bucket rate limiter for Flask.

The limiter is an object owned by the app (no module globals), so tests and
workers get their own buckets. The bucket map is capacity-bounded: when
`max_keys` is reached the least recently used bucket is evicted.

- Pluggable key function (IP, or a scoped prefix like "recompute:<ip>")
- Thread-safe (per-process) via RLock
- X-RateLimit-* headers on success and 429, Retry-After on 429
- Env toggle: SKYF_RL_DISABLE -> disable limiter entirely
"""

import math
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import wraps
from threading import RLock
from typing import Any, Callable, Optional, Tuple

from flask import current_app, jsonify, make_response, request

__all__ = ["TokenBucketLimiter", "rate_limit", "ip_key", "scoped_ip_key"]


# ───────────────────────── key functions ─────────────────────────
def _first_forwarded_for(req) -> str:
    xff = req.headers.get("X-Forwarded-For", "")
    return (xff.split(",")[0].strip() if xff else "") or (req.remote_addr or "unknown")


def ip_key(req) -> str:
    return _first_forwarded_for(req)


def scoped_ip_key(scope: str) -> Callable[[Any], str]:
    """Bucket per client IP under a named scope, e.g. 'recompute:203.0.113.7'."""
    def _key(req) -> str:
        return f"{scope}:{_first_forwarded_for(req)}"
    return _key


# ───────────────────────── bucket / math ─────────────────────────
@dataclass
class Bucket:
    tokens: float       # current tokens
    ts: float           # last refill time (monotonic)


class TokenBucketLimiter:
    def __init__(
        self,
        per_minute: int,
        *,
        burst: Optional[int] = None,
        max_keys: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if per_minute <= 0:
            raise ValueError("per_minute must be > 0")
        if max_keys <= 0:
            raise ValueError("max_keys must be > 0")
        self.limit = int(per_minute)
        self.capacity = float(burst if burst is not None else max(self.limit, 1))
        self.rate = float(self.limit) / 60.0  # tokens per second
        self.max_keys = int(max_keys)
        self.clock = clock
        self._buckets: "OrderedDict[str, Bucket]" = OrderedDict()
        self._lock = RLock()

    def __len__(self) -> int:
        return len(self._buckets)

    @property
    def policy(self) -> str:
        return f"{self.limit};w=60;burst={int(self.capacity)}"

    def acquire(self, key: str, cost: float = 1.0) -> Tuple[bool, int, int]:
        """
        Try to take `cost` tokens from `key`'s bucket.
        Returns (allowed, remaining, seconds): seconds is Retry-After when
        refused, else seconds until the next token.
        """
        now = self.clock()
        with self._lock:
            b = self._buckets.get(key)
            if b is None:
                b = Bucket(tokens=self.capacity, ts=now)
                self._buckets[key] = b
                while len(self._buckets) > self.max_keys:
                    self._buckets.popitem(last=False)
            else:
                if now > b.ts:
                    b.tokens = min(self.capacity, b.tokens + (now - b.ts) * self.rate)
                    b.ts = now
                self._buckets.move_to_end(key)

            if b.tokens + 1e-12 < cost:
                deficit = max(0.0, cost - b.tokens)
                return False, 0, max(1, math.ceil(deficit / self.rate))

            b.tokens -= cost
            nxt = max(0, math.ceil((1.0 - (b.tokens % 1.0)) / self.rate)) if b.tokens < self.capacity else 0
            return True, max(0, int(b.tokens)), nxt


# ───────────────────────── public decorator ─────────────────────────
def rate_limit(
    key_fn: Optional[Callable[[Any], str]] = None,
    *,
    limiter_attr: str = "limiter",
    cost: float = 1.0,
):
    """
    Guard a view with the app's limiter (`app.extensions[limiter_attr]`).

    On limit, returns 429 JSON:
        {"ok": False, "error": "rate_limited", "details": {"retry_after_seconds": N}}
    """
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            limiter: Optional[TokenBucketLimiter] = current_app.extensions.get(limiter_attr)
            if limiter is None or os.getenv("SKYF_RL_DISABLE", "0").lower() in ("1", "true", "yes", "on"):
                return f(*args, **kwargs)
            if request.method in ("HEAD", "OPTIONS"):
                return f(*args, **kwargs)

            bucket_key = str((key_fn or ip_key)(request))
            allowed, remaining, seconds = limiter.acquire(bucket_key, cost)
            if not allowed:
                payload = {
                    "ok": False,
                    "error": "rate_limited",
                    "details": {"retry_after_seconds": seconds},
                }
                resp = make_response(jsonify(payload), 429)
                resp.headers["Retry-After"] = str(seconds)
                resp.headers["X-RateLimit-Limit"] = str(limiter.limit)
                resp.headers["X-RateLimit-Remaining"] = "0"
                resp.headers["X-RateLimit-Reset"] = str(seconds)
                resp.headers["X-RateLimit-Policy"] = limiter.policy
                return resp

            resp = make_response(f(*args, **kwargs))
            resp.headers.setdefault("X-RateLimit-Limit", str(limiter.limit))
            resp.headers["X-RateLimit-Remaining"] = str(remaining)
            resp.headers.setdefault("X-RateLimit-Reset", str(seconds))
            resp.headers.setdefault("X-RateLimit-Policy", limiter.policy)
            return resp

        return wrapper

    return decorator
