# cometapp/utils/dedupe.py
from __future__ import annotations

"""
Collapse concurrent identical async calls into one underlying call.

- dedupe(key, fn): the first caller schedules fn() as a task and registers
  it; later callers for the same key await that same task.
- Registration and lookup happen without an intervening await, so two
  "first" callers cannot both schedule fn().
- The slot is cleared once, by a done-callback on the task, and only if the
  slot still holds that task. Done-callbacks run before any awaiting
  coroutine resumes, so the slot is gone by the time the first waiter sees
  the result.
- Waiters await through asyncio.shield(): cancelling one caller does not
  cancel the shared call for everybody else.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

from cometapp.utils.metrics import MET_DEDUP

log = logging.getLogger(__name__)

__all__ = ["PendingRequest", "RequestDeduplicator"]

T = TypeVar("T")


@dataclass
class PendingRequest:
    key: str
    future: "asyncio.Future[Any]"
    waiters: int = 1


class RequestDeduplicator:
    def __init__(self) -> None:
        self.pending: Dict[str, PendingRequest] = {}
        self.hits = 0
        self.misses = 0
        self.lock = threading.RLock()

    def dedupe(self, key: str, fn: Callable[[], Awaitable[T]]) -> "Awaitable[T]":
        with self.lock:
            req = self.pending.get(key)
            hit = req is not None
            if req is not None:
                req.waiters += 1
                self.hits += 1
            else:
                fut = asyncio.ensure_future(fn())
                req = PendingRequest(key=key, future=fut)
                self.pending[key] = req
                self.misses += 1
                fut.add_done_callback(lambda f, k=key: self._settle(k, f))
        MET_DEDUP.labels(result="hit" if hit else "miss").inc()
        log.debug("dedupe %s key=%s", "hit" if hit else "miss", key)
        return asyncio.shield(req.future)

    def _settle(self, key: str, fut: "asyncio.Future[Any]") -> None:
        with self.lock:
            cur = self.pending.get(key)
            if cur is not None and cur.future is fut:
                del self.pending[key]
        if not fut.cancelled() and fut.exception() is not None:
            log.debug("dedupe key=%s settled with %s", key, type(fut.exception()).__name__)

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            hits, misses, pending = self.hits, self.misses, len(self.pending)
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate": (hits / total) if total else 0.0,
            "pending": pending,
        }

    def pending_keys(self) -> List[str]:
        with self.lock:
            return sorted(self.pending)

    def clear(self, key: str) -> None:
        """Forget a pending key so the next caller starts a fresh call."""
        with self.lock:
            self.pending.pop(key, None)
