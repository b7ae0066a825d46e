"""Best-effort in-process rate limiting for outbound notifications.

This is intentionally simple:
 - Per-process (not distributed)
 - Thread-safe
 - Injectable clock so behavior is testable without sleeping
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class TokenBucket:
    """A basic token bucket limiter.

    capacity: max tokens
    refill_rate_per_sec: tokens added per second
    """

    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    def allow(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        # Tolerate float drift at exact interval boundaries.
        if self.tokens + 1e-9 >= cost:
            self.tokens = max(0.0, self.tokens - cost)
            return True
        return False


class MinIntervalLimiter:
    """At most one event per `min_interval_s`; excess events are rejected, not queued."""

    def __init__(self, min_interval_s: float, clock: Callable[[], float] = time.monotonic):
        if min_interval_s < 0:
            raise ValueError("min_interval_s must be non-negative")
        self._min_interval = float(min_interval_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._bucket: TokenBucket | None = None

    @property
    def min_interval_s(self) -> float:
        return self._min_interval

    def allow(self) -> bool:
        if self._min_interval == 0:
            return True
        with self._lock:
            now = self._clock()
            if self._bucket is None:
                self._bucket = TokenBucket.new(1.0, 1.0 / self._min_interval, now)
            return self._bucket.allow(now)


def parse_interval(spec: str) -> float:
    """Parse a compact interval like '10s', '500ms' or '2m' into seconds."""
    s = (spec or "").strip().lower()
    if not s:
        raise ValueError("empty interval spec")
    for suffix, scale in (("ms", 0.001), ("s", 1.0), ("m", 60.0), ("h", 3600.0)):
        if s.endswith(suffix):
            num, unit_scale = s[: -len(suffix)], scale
            break
    else:
        num, unit_scale = s, 1.0
    value = float(num) * unit_scale
    if value < 0:
        raise ValueError("interval must be non-negative")
    return value

