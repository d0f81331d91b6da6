from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request


def _debug(msg: str) -> None:
    print(f"[ratelimit] {msg}")


@dataclass(frozen=True)
class RateLimitRule:
    """`requests` tokens per `window_seconds`, refilled continuously."""

    requests: int
    window_seconds: float

    @property
    def refill_per_second(self) -> float:
        return float(self.requests) / float(self.window_seconds)


@dataclass
class _Bucket:
    tokens: float
    last_refill: float
    last_seen: float


class TokenBucketLimiter:
    """In-memory token buckets keyed by (client, route class).

    Buckets idle for longer than `idle_seconds` are dropped by a sweep that
    runs at most once every `sweep_seconds`. State is per process.
    """

    def __init__(
        self,
        *,
        idle_seconds: float = 600.0,
        sweep_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_seconds = float(idle_seconds)
        self.sweep_seconds = float(sweep_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, key: str, rule: RateLimitRule) -> bool:
        """Take one token from `key`'s bucket; False when it is empty."""
        now = self._clock()
        with self._lock:
            self._sweep_locked(now)
            b = self._buckets.get(key)
            if b is None:
                b = _Bucket(tokens=float(rule.requests), last_refill=now, last_seen=now)
                self._buckets[key] = b
            else:
                elapsed = max(0.0, now - b.last_refill)
                b.tokens = min(float(rule.requests), b.tokens + elapsed * rule.refill_per_second)
                b.last_refill = now
            b.last_seen = now
            if b.tokens >= 1.0:
                b.tokens -= 1.0
                return True
            return False

    def maybe_sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        if now - self._last_sweep < self.sweep_seconds:
            return 0
        self._last_sweep = now
        stale = [k for k, b in self._buckets.items() if now - b.last_seen > self.idle_seconds]
        for k in stale:
            del self._buckets[k]
        if stale:
            _debug(f"dropped {len(stale)} idle buckets")
        return len(stale)


def client_ip(request: Request, *, trust_proxy: bool = False) -> str:
    """Caller address; forwarded headers are only believed behind a trusted proxy."""
    if trust_proxy:
        fwd: Optional[str] = request.headers.get("x-forwarded-for")
        if fwd:
            first = fwd.split(",")[0].strip()
            if first:
                return first
        real = (request.headers.get("x-real-ip") or "").strip()
        if real:
            return real
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"
