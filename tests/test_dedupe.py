# tests/test_dedupe.py
from __future__ import annotations

import asyncio

import pytest

from cometapp.utils.dedupe import RequestDeduplicator


class Upstream:
    def __init__(self, result=None, error: Exception = None, delay: float = 0.01):
        self.calls = 0
        self.result = result
        self.error = error
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result if self.result is not None else {"call": self.calls}


def test_concurrent_callers_share_one_call() -> None:
    dd = RequestDeduplicator()
    fn = Upstream()

    async def _go():
        return await asyncio.gather(*(dd.dedupe("comet-data", fn) for _ in range(20)))

    results = asyncio.run(_go())
    assert fn.calls == 1
    assert all(r is results[0] for r in results)
    st = dd.stats()
    assert st["misses"] == 1 and st["hits"] == 19 and st["pending"] == 0
    assert st["hit_rate"] == pytest.approx(0.95)


def test_shared_failure_reaches_every_caller() -> None:
    dd = RequestDeduplicator()
    boom = RuntimeError("upstream down")
    fn = Upstream(error=boom)

    async def _go():
        return await asyncio.gather(
            *(dd.dedupe("comet-data", fn) for _ in range(5)), return_exceptions=True
        )

    results = asyncio.run(_go())
    assert fn.calls == 1
    assert all(r is boom for r in results)
    assert dd.pending_keys() == []


def test_slot_cleared_after_settlement() -> None:
    dd = RequestDeduplicator()
    fn = Upstream()

    async def _go():
        first = await dd.dedupe("k", fn)
        second = await dd.dedupe("k", fn)
        return first, second

    first, second = asyncio.run(_go())
    assert fn.calls == 2
    assert first == {"call": 1} and second == {"call": 2}


def test_distinct_keys_do_not_collapse() -> None:
    dd = RequestDeduplicator()
    fn = Upstream()

    async def _go():
        await asyncio.gather(dd.dedupe("cobs:3I", fn), dd.dedupe("cobs:12P", fn))

    asyncio.run(_go())
    assert fn.calls == 2


def test_cancelled_waiter_does_not_cancel_others() -> None:
    dd = RequestDeduplicator()
    fn = Upstream(result="ok", delay=0.05)

    async def _go():
        a = asyncio.ensure_future(dd.dedupe("k", fn))
        b = asyncio.ensure_future(dd.dedupe("k", fn))
        await asyncio.sleep(0.01)
        a.cancel()
        return await b, a

    value, a = asyncio.run(_go())
    assert value == "ok"
    assert a.cancelled()
    assert fn.calls == 1


def test_pending_keys_while_in_flight_and_clear() -> None:
    dd = RequestDeduplicator()
    fn = Upstream(delay=0.05)

    async def _go():
        pending = dd.dedupe("k", fn)
        seen = dd.pending_keys()
        dd.clear("k")
        again = dd.dedupe("k", fn)
        await asyncio.gather(pending, again)
        return seen

    assert asyncio.run(_go()) == ["k"]
    assert fn.calls == 2
    assert dd.pending_keys() == []
