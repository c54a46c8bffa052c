# cometapp/utils/ratelimit.py
from __future__ import annotations

"""
Token-bucket limiter for outbound provider calls (asyncio).

Features
- One bucket per upstream provider (COBS 60/min, JPL 20/min, TheSkyLive 30/min)
- Burst capacity defaults to one minute's worth of tokens
- acquire() sleeps until a token is available; the caller's own timeout
  (asyncio.wait_for) bounds the wait
- Thread-safe refill/consume (no awaits inside the critical section)
- Env toggle:
    COMET_RL_DISABLE      -> disable outbound limiting entirely
"""

import asyncio
import math
import os
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Optional

__all__ = ["Bucket", "TokenBucket", "rate_limit_disabled"]


def rate_limit_disabled() -> bool:
    return os.getenv("COMET_RL_DISABLE", "0").lower() in ("1", "true", "yes", "on")


# ───────────────────────── bucket / math ─────────────────────────
@dataclass
class Bucket:
    tokens: float       # current tokens
    capacity: float     # burst capacity
    rate: float         # tokens per second
    ts: float           # last refill time (monotonic)
    limit: int          # advertised limit (per minute)


def _refill(b: Bucket, now: float) -> None:
    if now > b.ts:
        b.tokens = min(b.capacity, b.tokens + (now - b.ts) * b.rate)
        b.ts = now


# ───────────────────────── public limiter ─────────────────────────
class TokenBucket:
    """
    Args:
        max_per_minute: steady rate (tokens/min).
        burst: bucket capacity (defaults to max_per_minute).
        clock: monotonic seconds; injectable for tests.
    """

    def __init__(
        self,
        max_per_minute: int,
        *,
        burst: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        disabled: Optional[bool] = None,
    ):
        if max_per_minute <= 0:
            raise ValueError("max_per_minute must be > 0")
        limit = int(max_per_minute)
        capacity = float(burst if burst is not None else max(limit, 1))
        self.clock = clock
        self.disabled = rate_limit_disabled() if disabled is None else disabled
        self._lock = RLock()
        self._b = Bucket(tokens=capacity, capacity=capacity, rate=limit / 60.0,
                         ts=clock(), limit=limit)

    @property
    def limit(self) -> int:
        return self._b.limit

    def try_acquire(self, cost: float = 1.0) -> float:
        """
        Consume `cost` tokens if available and return 0.0; otherwise return
        the seconds until enough tokens will have accrued.
        """
        if self.disabled:
            return 0.0
        cost = max(0.0, float(cost))
        with self._lock:
            b = self._b
            _refill(b, self.clock())
            if b.tokens + 1e-12 >= cost:
                b.tokens -= cost
                return 0.0
            return (cost - b.tokens) / b.rate

    async def acquire(self, cost: float = 1.0) -> None:
        while True:
            wait = self.try_acquire(cost)
            if wait <= 0.0:
                return
            await asyncio.sleep(wait)

    def remaining(self) -> int:
        with self._lock:
            _refill(self._b, self.clock())
            return max(0, int(math.floor(self._b.tokens)))
