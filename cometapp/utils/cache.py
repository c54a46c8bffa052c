# cometapp/utils/cache.py
from __future__ import annotations

"""
Two-level dataset cache: an in-memory map with an optional on-disk JSON mirror.

- Per-dataset policy (max_age, stale_window, schema_version); the dataset is
  the key prefix before ':' ("cobs:3I" → "cobs").
- get() classifies an entry as fresh / stale / miss. A schema_version
  mismatch is always a miss.
- Entries are immutable and published by replacing the dict slot, so readers
  never observe a half-written entry.
- Disk reads/writes run in a worker thread (asyncio.to_thread). The first
  OSError switches the store to memory-only for the rest of the process.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from cometapp.utils.metrics import MET_CACHE_DEGRADED, MET_CACHE_LOOKUPS

log = logging.getLogger(__name__)

__all__ = [
    "StorageIOError",
    "CachePolicy",
    "CacheEntry",
    "CacheStatus",
    "CacheLookup",
    "FileStore",
    "CacheStore",
    "dataset_of",
]


class StorageIOError(RuntimeError):
    def __init__(self, op: str, name: str, cause: BaseException):
        super().__init__(f"{op} {name!r}: {cause}")
        self.op = op
        self.name = name


# ───────────────────────── value types ─────────────────────────
@dataclass(frozen=True)
class CachePolicy:
    max_age: float          # seconds considered fresh
    stale_window: float     # seconds considered usable while refreshing
    schema_version: int = 1

    def __post_init__(self) -> None:
        if self.max_age < 0:
            raise ValueError("max_age must be >= 0")
        if self.stale_window <= self.max_age:
            raise ValueError("stale_window must be > max_age")


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    stored_at: float
    schema_version: int
    key: Optional[str] = None

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def to_json(self) -> bytes:
        return json.dumps(
            {"key": self.key, "payload": self.payload, "stored_at": self.stored_at,
             "schema_version": self.schema_version},
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "CacheEntry":
        obj = json.loads(raw.decode("utf-8"))
        return cls(
            payload=obj["payload"],
            stored_at=float(obj["stored_at"]),
            schema_version=int(obj["schema_version"]),
            key=obj.get("key"),
        )


class CacheStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISS = "miss"


@dataclass(frozen=True)
class CacheLookup:
    status: CacheStatus
    payload: Any = None
    age: Optional[float] = None

    @property
    def fresh(self) -> bool:
        return self.status is CacheStatus.FRESH

    @property
    def stale(self) -> bool:
        return self.status is CacheStatus.STALE

    @property
    def miss(self) -> bool:
        return self.status is CacheStatus.MISS


_MISS = CacheLookup(CacheStatus.MISS)


def dataset_of(key: str) -> str:
    return key.split(":", 1)[0]


# ───────────────────────── disk store ─────────────────────────
_SAFE = re.compile(r"[^A-Za-z0-9._-]+")


class FileStore:
    """
    Flat directory of blobs; writes are atomic (temp file + os.replace).
    File names are the sanitised key plus a digest of the raw key, so keys
    that sanitise alike never share a file.
    """

    def __init__(self, root: str):
        self.root = root

    def path_for(self, name: str) -> str:
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:10]
        return os.path.join(self.root, f"{_SAFE.sub('_', name)}-{digest}.json")

    def read_bytes(self, name: str) -> Optional[bytes]:
        path = self.path_for(name)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError("read", name, e) from e

    def write_bytes(self, name: str, data: bytes) -> None:
        path = self.path_for(name)
        try:
            os.makedirs(self.root, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageIOError("write", name, e) from e

    def delete(self, name: str) -> None:
        try:
            os.unlink(self.path_for(name))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError("delete", name, e) from e


# ───────────────────────── cache store ─────────────────────────
class CacheStore:
    def __init__(
        self,
        policies: Mapping[str, CachePolicy],
        *,
        default_policy: Optional[CachePolicy] = None,
        store: Optional[FileStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.policies: Dict[str, CachePolicy] = dict(policies)
        self.default_policy = default_policy or CachePolicy(max_age=300.0, stale_window=3600.0)
        self.store = store
        self.clock = clock
        self.entries: Dict[str, CacheEntry] = {}
        self.lock = threading.Lock()
        self.counts: Dict[str, int] = {"fresh": 0, "stale": 0, "miss": 0}

    # ── policy ──
    def policy_for(self, key: str) -> CachePolicy:
        return self.policies.get(dataset_of(key), self.default_policy)

    def register(self, dataset: str, policy: CachePolicy) -> None:
        with self.lock:
            self.policies[dataset] = policy

    @property
    def persistent(self) -> bool:
        return self.store is not None

    # ── classification ──
    def _classify(self, key: str, entry: Optional[CacheEntry]) -> CacheLookup:
        policy = self.policy_for(key)
        if entry is None or entry.schema_version != policy.schema_version:
            return _MISS
        age = entry.age(self.clock())
        if age <= policy.max_age:
            return CacheLookup(CacheStatus.FRESH, entry.payload, age)
        if age <= policy.stale_window:
            return CacheLookup(CacheStatus.STALE, entry.payload, age)
        return _MISS

    def _count(self, key: str, res: CacheLookup) -> CacheLookup:
        with self.lock:
            self.counts[res.status.value] += 1
        MET_CACHE_LOOKUPS.labels(dataset=dataset_of(key), result=res.status.value).inc()
        return res

    # ── memory level (synchronous, never touches disk) ──
    def get(self, key: str) -> CacheLookup:
        with self.lock:
            entry = self.entries.get(key)
        return self._count(key, self._classify(key, entry))

    def put(self, key: str, payload: Any) -> CacheEntry:
        entry = CacheEntry(
            payload=payload,
            stored_at=self.clock(),
            schema_version=self.policy_for(key).schema_version,
            key=key,
        )
        with self.lock:
            self.entries[key] = entry
        return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Last good entry of any age (schema-checked), or None."""
        with self.lock:
            entry = self.entries.get(key)
        if entry is None or entry.schema_version != self.policy_for(key).schema_version:
            return None
        return entry

    def invalidate(self, key: str) -> None:
        with self.lock:
            self.entries.pop(key, None)
        if self.store is not None:
            try:
                self.store.delete(key)
            except StorageIOError as e:
                self._degrade(e)

    def clear(self) -> None:
        with self.lock:
            self.entries = {}
            self.counts = {"fresh": 0, "stale": 0, "miss": 0}

    # ── disk level (async; I/O in a worker thread) ──
    async def load(self, key: str) -> CacheLookup:
        """
        Memory first; on a memory miss, warm from the disk mirror and classify
        the result. Disk failures degrade the store and count as a miss.
        """
        with self.lock:
            entry = self.entries.get(key)
        if entry is None and self.store is not None:
            entry = await self._read_disk(key)
            if entry is not None and entry.schema_version == self.policy_for(key).schema_version:
                with self.lock:
                    self.entries.setdefault(key, entry)
        return self._count(key, self._classify(key, entry))

    async def save(self, key: str, payload: Any) -> CacheEntry:
        entry = self.put(key, payload)
        store = self.store
        if store is not None:
            try:
                await asyncio.to_thread(store.write_bytes, key, entry.to_json())
            except StorageIOError as e:
                self._degrade(e)
            except (TypeError, ValueError) as e:
                log.warning("cache: payload for %s is not JSON-serialisable: %s", key, e)
        return entry

    async def _read_disk(self, key: str) -> Optional[CacheEntry]:
        store = self.store
        if store is None:
            return None
        try:
            raw = await asyncio.to_thread(store.read_bytes, key)
        except StorageIOError as e:
            self._degrade(e)
            return None
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            log.warning("cache: ignoring corrupt disk entry %s: %s", key, e)
            return None
        if entry.key != key:
            log.warning("cache: disk entry for %s belongs to %r, ignoring", key, entry.key)
            return None
        return entry

    def _degrade(self, err: StorageIOError) -> None:
        with self.lock:
            if self.store is None:
                return
            self.store = None
        MET_CACHE_DEGRADED.inc()
        log.error("cache: disk mirror disabled, continuing memory-only: %s", err)

    # ── observability ──
    def status(self) -> Dict[str, Any]:
        now = self.clock()
        with self.lock:
            entries = dict(self.entries)
            counts = dict(self.counts)
        keys: Dict[str, Any] = {}
        for key, entry in sorted(entries.items()):
            policy = self.policy_for(key)
            age = entry.age(now)
            keys[key] = {
                "dataset": dataset_of(key),
                "state": self._classify(key, entry).status.value,
                "age_seconds": round(age, 1),
                "next_refresh_in": round(max(0.0, policy.max_age - age), 1),
                "schema_version": entry.schema_version,
            }
        total = sum(counts.values())
        hits = counts["fresh"] + counts["stale"]
        return {
            "persistent": self.persistent,
            "entries": len(entries),
            "lookups": counts,
            "hit_rate": (hits / total) if total else 0.0,
            "keys": keys,
        }
