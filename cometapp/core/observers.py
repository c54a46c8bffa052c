# cometapp/core/observers.py
# -----------------------------------------------------------------------------
# Observer roll-up over normalised observation rows (Observation.to_dict()).
# Works on the cached dict form so the engine can summarise a dataset
# without rebuilding Observation objects.
# -----------------------------------------------------------------------------
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping
import math

__all__ = ["summarise_observers", "observer_statistics"]


def _usable(mag: Any) -> bool:
    return isinstance(mag, (int, float)) and not isinstance(mag, bool) and math.isfinite(mag)


def summarise_observers(observations: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    One row per observer: count, mean magnitude, latest report.
    Most active first; ties broken by id so the order is stable.
    """
    acc: Dict[str, Dict[str, Any]] = {}
    for ob in observations:
        mag = ob.get("magnitude")
        if not _usable(mag):
            continue
        oid = str(ob.get("observer_id") or "unknown")
        row = acc.setdefault(oid, {
            "id": oid,
            "name": ob.get("observer_name") or oid,
            "observation_count": 0,
            "_sum": 0.0,
            "latest_observation": "",
        })
        row["observation_count"] += 1
        row["_sum"] += float(mag)
        when = str(ob.get("date") or "")
        if when > row["latest_observation"]:
            row["latest_observation"] = when

    out = []
    for row in acc.values():
        total = row.pop("_sum")
        row["average_magnitude"] = round(total / row["observation_count"], 2)
        out.append(row)
    out.sort(key=lambda r: (-r["observation_count"], r["id"]))
    return out


def observer_statistics(observers: List[Mapping[str, Any]], top: int = 10) -> Dict[str, Any]:
    total = sum(int(o["observation_count"]) for o in observers)
    return {
        "total_observers": len(observers),
        "total_observations": total,
        "average_observations_per_observer": round(total / len(observers), 2) if observers else 0.0,
        "top_observers": list(observers[:top]),
    }
