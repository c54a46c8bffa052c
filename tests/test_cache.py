# tests/test_cache.py
from __future__ import annotations

import asyncio
import logging
import os

import pytest

from cometapp.utils.cache import (
    CacheEntry,
    CachePolicy,
    CacheStore,
    FileStore,
    StorageIOError,
    dataset_of,
)

POLICY = CachePolicy(max_age=300.0, stale_window=3600.0)


def _store(clock, **kw) -> CacheStore:
    return CacheStore({"comet-data": POLICY, "cobs": POLICY}, clock=clock, **kw)


class BrokenStore(FileStore):
    """Every disk operation fails as if the volume went read-only."""
    def __init__(self, root: str):
        super().__init__(root)
        self.writes = 0

    def read_bytes(self, name):
        raise StorageIOError("read", name, OSError(30, "Read-only file system"))

    def write_bytes(self, name, data):
        self.writes += 1
        raise StorageIOError("write", name, OSError(30, "Read-only file system"))


# ─────────────────────────────────────────────────────────────────────────────
# Policy & classification
# ─────────────────────────────────────────────────────────────────────────────
def test_policy_requires_stale_window_past_max_age() -> None:
    with pytest.raises(ValueError):
        CachePolicy(max_age=300.0, stale_window=300.0)
    with pytest.raises(ValueError):
        CachePolicy(max_age=-1.0, stale_window=10.0)


def test_dataset_is_key_prefix() -> None:
    assert dataset_of("cobs:3I") == "cobs"
    assert dataset_of("comet-data") == "comet-data"


def test_fresh_then_stale_then_miss(fake_clock) -> None:
    cache = _store(fake_clock)
    assert cache.get("comet-data").miss

    cache.put("comet-data", {"v": 1})
    hit = cache.get("comet-data")
    assert hit.fresh and hit.payload == {"v": 1}

    fake_clock.advance(300.0)
    assert cache.get("comet-data").fresh

    fake_clock.advance(1.0)
    hit = cache.get("comet-data")
    assert hit.stale and hit.payload == {"v": 1}
    assert hit.age == pytest.approx(301.0)

    fake_clock.advance(3300.0)
    assert cache.get("comet-data").miss


def test_peek_returns_any_age(fake_clock) -> None:
    cache = _store(fake_clock)
    cache.put("comet-data", {"v": 1})
    fake_clock.advance(10 * 86400)
    assert cache.get("comet-data").miss
    entry = cache.peek("comet-data")
    assert entry is not None and entry.payload == {"v": 1}


def test_schema_bump_is_a_miss(fake_clock) -> None:
    cache = _store(fake_clock)
    cache.put("comet-data", {"v": 1})
    cache.register("comet-data", CachePolicy(max_age=300.0, stale_window=3600.0, schema_version=2))
    assert cache.get("comet-data").miss
    assert cache.peek("comet-data") is None


def test_keys_share_their_dataset_policy(fake_clock) -> None:
    cache = CacheStore(
        {"cobs": CachePolicy(max_age=10.0, stale_window=20.0)},
        default_policy=CachePolicy(max_age=1000.0, stale_window=2000.0),
        clock=fake_clock,
    )
    cache.put("cobs:3I", [1])
    cache.put("other", [2])
    fake_clock.advance(15.0)
    assert cache.get("cobs:3I").stale
    assert cache.get("other").fresh


def test_invalidate_and_clear(fake_clock) -> None:
    cache = _store(fake_clock)
    cache.put("comet-data", 1)
    cache.put("cobs:3I", 2)
    cache.invalidate("comet-data")
    assert cache.get("comet-data").miss
    cache.clear()
    assert cache.peek("cobs:3I") is None
    assert cache.status()["lookups"] == {"fresh": 0, "stale": 0, "miss": 0}


def test_status_reports_keys(fake_clock) -> None:
    cache = _store(fake_clock)
    cache.put("comet-data", {"v": 1})
    cache.get("comet-data")
    cache.get("cobs:3I")
    fake_clock.advance(100.0)

    st = cache.status()
    assert st["persistent"] is False
    assert st["entries"] == 1
    assert st["lookups"] == {"fresh": 1, "stale": 0, "miss": 1}
    assert st["hit_rate"] == pytest.approx(0.5)
    row = st["keys"]["comet-data"]
    assert row["state"] == "fresh"
    assert row["age_seconds"] == 100.0
    assert row["next_refresh_in"] == 200.0
    assert row["dataset"] == "comet-data"


# ─────────────────────────────────────────────────────────────────────────────
# Disk mirror
# ─────────────────────────────────────────────────────────────────────────────
def test_disk_round_trip_survives_restart(tmp_path, fake_clock) -> None:
    root = str(tmp_path / "cache")

    async def _go():
        first = _store(fake_clock, store=FileStore(root))
        await first.save("cobs:3I", {"observations": [1, 2, 3]})

        second = _store(fake_clock, store=FileStore(root))
        return await second.load("cobs:3I")

    hit = asyncio.run(_go())
    assert hit.fresh
    assert hit.payload == {"observations": [1, 2, 3]}
    assert os.path.exists(FileStore(root).path_for("cobs:3I"))


def test_disk_entry_honours_original_timestamp(tmp_path, fake_clock) -> None:
    root = str(tmp_path)

    async def _go():
        await _store(fake_clock, store=FileStore(root)).save("comet-data", {"v": 1})
        fake_clock.advance(600.0)
        return await _store(fake_clock, store=FileStore(root)).load("comet-data")

    assert asyncio.run(_go()).stale


def test_corrupt_disk_entry_is_a_miss(tmp_path, fake_clock, caplog) -> None:
    fs = FileStore(str(tmp_path))
    fs.write_bytes("comet-data", b"{not json")
    cache = _store(fake_clock, store=fs)
    with caplog.at_level(logging.WARNING, logger="cometapp.utils.cache"):
        assert asyncio.run(cache.load("comet-data")).miss
    assert "corrupt" in caplog.text
    assert cache.persistent


def test_file_store_sanitises_names(tmp_path) -> None:
    fs = FileStore(str(tmp_path))
    path = fs.path_for("cobs:3I/ATLAS")
    assert os.path.dirname(path) == str(tmp_path)
    assert fs.read_bytes("missing") is None
    fs.delete("missing")


def test_keys_that_sanitise_alike_keep_separate_files(tmp_path, fake_clock) -> None:
    fs = FileStore(str(tmp_path))
    assert fs.path_for("cobs:C/2025 R2") != fs.path_for("cobs:C 2025 R2")

    async def _go():
        await _store(fake_clock, store=FileStore(str(tmp_path))).save("cobs:C/2025 R2", {"n": 3})
        restarted = _store(fake_clock, store=FileStore(str(tmp_path)))
        return await restarted.load("cobs:C 2025 R2"), await restarted.load("cobs:C/2025 R2")

    other, same = asyncio.run(_go())
    assert other.miss
    assert same.fresh and same.payload == {"n": 3}


def test_disk_entry_under_foreign_key_is_a_miss(tmp_path, fake_clock, caplog) -> None:
    fs = FileStore(str(tmp_path))
    foreign = CacheEntry(payload={"n": 1}, stored_at=fake_clock(), schema_version=1, key="cobs:12P")
    fs.write_bytes("cobs:3I", foreign.to_json())
    with caplog.at_level(logging.WARNING, logger="cometapp.utils.cache"):
        assert asyncio.run(_store(fake_clock, store=fs).load("cobs:3I")).miss
    assert "belongs to" in caplog.text


def test_entry_json_round_trip() -> None:
    e = CacheEntry(payload={"a": [1, 2]}, stored_at=12.5, schema_version=3)
    assert CacheEntry.from_json(e.to_json()) == e


def test_write_failure_degrades_to_memory_only(tmp_path, fake_clock, caplog) -> None:
    broken = BrokenStore(str(tmp_path))
    cache = _store(fake_clock, store=broken)

    async def _go():
        await cache.save("comet-data", {"v": 1})
        await cache.save("comet-data", {"v": 2})
        return await cache.load("comet-data")

    with caplog.at_level(logging.ERROR, logger="cometapp.utils.cache"):
        hit = asyncio.run(_go())

    assert hit.fresh and hit.payload == {"v": 2}
    assert cache.persistent is False
    assert broken.writes == 1
    assert sum("memory-only" in r.getMessage() for r in caplog.records) == 1


def test_read_failure_degrades_and_misses(tmp_path, fake_clock) -> None:
    cache = _store(fake_clock, store=BrokenStore(str(tmp_path)))
    assert asyncio.run(cache.load("comet-data")).miss
    assert cache.persistent is False
