# skycal/utils/ratelimit.py
from __future__ import annotations

"""
Token-bucket rate limiter for the Flask views.

- One bucket per client + endpoint (pluggable key function)
- Per-request cost (a cache refresh can cost more than a cached read)
- Thread-safe (per-process) via RLock
- X-RateLimit-* headers on every limited response, Retry-After on 429
- Env toggles, read per request:
    SKYCAL_RL_DISABLE    -> disable limiter entirely
    SKYCAL_RL_ALLOWLIST  -> comma-separated client ids/IPs to skip
"""

import math
import os
import time
from dataclasses import dataclass
from functools import wraps
from threading import RLock
from typing import Any, Callable, Dict, Optional, Set

from flask import jsonify, make_response, request

__all__ = ["rate_limit", "endpoint_key", "reset_buckets"]

_IDLE_EVICT_S = 180.0
_CLEANUP_EVERY_S = 30.0

# ───────────────────────── env toggles ─────────────────────────
def _disabled() -> bool:
    return os.getenv("SKYCAL_RL_DISABLE", "0").lower() in ("1", "true", "yes", "on")

def _allowlist() -> Set[str]:
    return {s.strip() for s in os.getenv("SKYCAL_RL_ALLOWLIST", "").split(",") if s.strip()}

# ───────────────────────── key functions ─────────────────────────
def _client_ip(req) -> str:
    xff = req.headers.get("X-Forwarded-For", "")
    return (xff.split(",")[0].strip() if xff else "") or (req.remote_addr or "anon")

def endpoint_key(req) -> str:
    """Bucket per client IP + endpoint."""
    return f"{_client_ip(req)}:{(req.endpoint or req.path) or '*'}"

# ───────────────────────── buckets ─────────────────────────
@dataclass
class Bucket:
    tokens: float
    capacity: float
    rate: float         # tokens per second
    ts: float           # last refill (monotonic)
    limit: int          # advertised per-minute limit


class _Buckets:
    def __init__(self):
        self.lock = RLock()
        self.items: Dict[str, Bucket] = {}
        self.last_cleanup = 0.0

    def take(self, key: str, *, limit: int, capacity: float, cost: float, now: float):
        """(allowed, bucket) after refilling and, when allowed, consuming `cost`."""
        with self.lock:
            self._cleanup(now)
            b = self.items.get(key)
            if b is None:
                b = Bucket(tokens=capacity, capacity=capacity, rate=limit / 60.0, ts=now, limit=limit)
                self.items[key] = b
            elif now > b.ts:
                b.tokens = min(b.capacity, b.tokens + (now - b.ts) * b.rate)
                b.ts = now
            if b.tokens + 1e-12 < cost:
                return False, b
            b.tokens -= cost
            return True, b

    def _cleanup(self, now: float) -> None:
        if now - self.last_cleanup < _CLEANUP_EVERY_S:
            return
        self.last_cleanup = now
        idle = [k for k, b in self.items.items() if b.tokens >= b.capacity and now - b.ts > _IDLE_EVICT_S]
        for k in idle:
            self.items.pop(k, None)

    def clear(self) -> None:
        with self.lock:
            self.items.clear()
            self.last_cleanup = 0.0


_BUCKETS = _Buckets()

def reset_buckets() -> None:
    _BUCKETS.clear()

# ───────────────────────── decorator ─────────────────────────
def rate_limit(
    max_per_minute: int,
    key_fn: Optional[Callable[[Any], str]] = None,
    *,
    burst: Optional[int] = None,
    cost: float = 1.0,
    cost_fn: Optional[Callable[[Any], float]] = None,
):
    """
    Limit a view to `max_per_minute` (bucket capacity `burst`, default the same).

    On limit returns 429:
        {"ok": False, "error": "rate_limited", "details": {"retry_after_seconds": N}}
    """
    if max_per_minute <= 0:
        raise ValueError("max_per_minute must be > 0")

    limit = int(max_per_minute)
    capacity = float(burst if burst is not None else limit)
    policy = f"{limit};w=60;burst={int(capacity)}"

    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if _disabled() or request.method in ("HEAD", "OPTIONS"):
                return f(*args, **kwargs)

            key = str((key_fn or endpoint_key)(request))
            allow = _allowlist()
            if key in allow or key.split(":", 1)[0] in allow:
                return f(*args, **kwargs)

            req_cost = max(0.0, float(cost_fn(request)) if cost_fn else float(cost))
            ok, b = _BUCKETS.take(key, limit=limit, capacity=capacity, cost=req_cost, now=time.monotonic())

            if not ok:
                retry_after = max(1, math.ceil((req_cost - b.tokens) / b.rate))
                resp = make_response(jsonify({
                    "ok": False,
                    "error": "rate_limited",
                    "details": {"retry_after_seconds": retry_after},
                }), 429)
                resp.headers["Retry-After"] = str(retry_after)
                resp.headers["X-RateLimit-Limit"] = str(limit)
                resp.headers["X-RateLimit-Remaining"] = "0"
                resp.headers["X-RateLimit-Reset"] = str(retry_after)
                resp.headers["X-RateLimit-Policy"] = policy
                return resp

            remaining = max(0, int(b.tokens))
            resp = make_response(f(*args, **kwargs))
            resp.headers.setdefault("X-RateLimit-Limit", str(limit))
            resp.headers["X-RateLimit-Remaining"] = str(remaining)
            resp.headers.setdefault("X-RateLimit-Policy", policy)
            return resp

        return wrapper

    return decorator
