"""In-process rate limiting for the approval endpoint.

Per-process token buckets keyed by caller. This only slows nonce guessing
from a single process' view; put a proxy limiter in front for anything wider.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass
class TokenBucket:
    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def full(cls, capacity: float, refill_rate_per_sec: float) -> "TokenBucket":
        return cls(capacity, refill_rate_per_sec, capacity, time.monotonic())

    def take(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + max(0.0, now - self.last_ts) * self.refill_rate_per_sec)
        self.last_ts = now
        if self.tokens < cost:
            return False
        self.tokens -= cost
        return True


class RateLimiter:
    """Keyed token buckets. Unknown keys beyond ``max_keys`` are refused."""

    def __init__(self, capacity: float, refill_rate_per_sec: float, max_keys: int = 10000):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = max(1, int(max_keys))
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    return False
                bucket = self._buckets[key] = TokenBucket.full(self._capacity, self._refill)
            return bucket.take(cost)


_UNIT_SECONDS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hour": 3600.0, "hours": 3600.0,
}


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse '30/m' style limits into (capacity, refill_rate_per_sec)."""
    text = (spec or "").strip().lower()
    count, sep, unit = text.partition("/")
    if not sep:
        raise ValueError(f"invalid rate limit {spec!r}; expected like '30/m' or '10/s'")
    n = float(count)
    if n <= 0:
        raise ValueError("rate must be positive")
    seconds = _UNIT_SECONDS.get(unit.strip())
    if seconds is None:
        raise ValueError(f"unsupported rate unit: {unit!r}")
    return n, n / seconds
