# cometapp/api/routes.py
"""
Comet API: canonical routes
- Enhanced state for 3I/ATLAS (multi-source, cached, deduplicated)
- Activity classification for posted observations
- Analytic orbital positions (target + companion comets)
- COBS observations per designation, plus their trend and observer roll-ups
- Heliocentric comet / Earth state with orbital trail for the 3D view
- Ops: /api/health, /api/cache-stats

Notes:
- Every handler reads the engine from app.state; nothing here owns state.
- Errors use the {"ok": false, "error": <code>, "details": ...} envelope.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from cometapp.core.activity import classify, classify_observations
from cometapp.core.aggregator import SourceAggregationEngine
from cometapp.core.constants import COMPANION_COMETS, TARGET_DESIGNATION, TARGET_NAME
from cometapp.core.frames import to_equatorial
from cometapp.core.models import Observation, OrbitalElements
from cometapp.core.observers import observer_statistics
from cometapp.core.orbits import orbital_position
from cometapp.core.timescales import iso, parse_instant
from cometapp.version import VERSION

log = logging.getLogger(__name__)
api = APIRouter()


# ───────────────────────── helpers ─────────────────────────
def _json_error(code: str, details: Any = None, http: int = 400) -> JSONResponse:
    out: Dict[str, Any] = {"ok": False, "error": code}
    if details is not None:
        out["details"] = details
    return JSONResponse(out, status_code=http)


def _engine(request: Request) -> SourceAggregationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("aggregation engine not initialised")
    return engine


def _lookup_elements(designation: str, engine: SourceAggregationEngine) -> Optional[OrbitalElements]:
    """
    Resolve a user-facing name/designation/slug to elements.
    Raises KeyError for unknown bodies; returns None when no elements are held.
    """
    needle = designation.strip().lower()
    if needle in (TARGET_NAME.lower(), TARGET_DESIGNATION.lower(), "3i", "3i-atlas"):
        return engine.elements
    for slug, info in COMPANION_COMETS.items():
        names = {slug, str(info["name"]).lower(), str(info["designation"]).lower()}
        if needle in names:
            raw = info.get("elements")
            return OrbitalElements.from_dict(raw) if raw else None
    raise KeyError(designation)


# ───────────────────────── request models ─────────────────────────
class ObservationIn(BaseModel):
    date: datetime
    magnitude: Optional[float] = None
    observer_id: str = ""
    filter: str = "visual"
    aperture: Optional[float] = None
    coma: Optional[float] = None

    def to_observation(self) -> Observation:
        return Observation(
            date=parse_instant(self.date),
            magnitude=self.magnitude,
            observer_id=self.observer_id,
            filter=self.filter,
            aperture=self.aperture,
            coma=self.coma,
            source="request",
        )


class ActivityRequest(BaseModel):
    observations: List[ObservationIn] = Field(default_factory=list)
    heliocentric_distance: Optional[float] = None
    current_magnitude: Optional[float] = None


# ───────────────────────── health / ops ─────────────────────────
@api.get("/api/health")
def health():
    return {"ok": True, "status": "up", "version": VERSION}


@api.get("/api/cache-stats")
def cache_stats(request: Request):
    return {"ok": True, **_engine(request).cache_stats()}


# ───────────────────────── comet data ─────────────────────────
@api.get("/api/comet-data")
async def comet_data(request: Request):
    state = await _engine(request).get_enhanced_state()
    return {"ok": True, "data": state}


@api.get("/api/observations")
async def observations(request: Request, designation: str = Query(TARGET_NAME, min_length=1)):
    try:
        payload = await _engine(request).get_observations(designation)
    except ValueError as e:
        return _json_error("bad_designation", str(e))
    return {"ok": True, **payload}


@api.post("/api/activity")
def activity(body: ActivityRequest):
    if body.observations or body.current_magnitude is None:
        obs = [o.to_observation() for o in body.observations]
        result = classify_observations(obs, body.heliocentric_distance)
    else:
        result = classify(body.current_magnitude, body.heliocentric_distance)
    return {"ok": True, "activity": result.to_dict()}


@api.get("/api/orbital-position")
def orbital_position_endpoint(
    request: Request,
    designation: str = Query(TARGET_NAME, min_length=1),
    at: Optional[str] = None,
):
    engine = _engine(request)
    try:
        when = parse_instant(at) if at else engine.clock()
    except ValueError as e:
        return _json_error("bad_instant", str(e))
    try:
        elements = _lookup_elements(designation, engine)
    except KeyError:
        return _json_error("unknown_designation", designation, http=404)
    if elements is None:
        return _json_error("no_elements", designation, http=404)

    pos = orbital_position(elements, when)
    return {
        "ok": True,
        "designation": designation,
        "at": iso(when),
        "position": pos.to_dict() if pos else None,
        "equatorial": to_equatorial(pos, when).to_dict() if pos else None,
    }


@api.get("/api/companions")
def companions(request: Request, at: Optional[str] = None):
    engine = _engine(request)
    try:
        when = parse_instant(at) if at else None
    except ValueError as e:
        return _json_error("bad_instant", str(e))
    return {"ok": True, "comets": engine.companion_positions(when)}


# ───────────────────────── derived datasets ─────────────────────────
@api.get("/api/solar-system-position")
async def solar_system_position(request: Request, trail_days: int = Query(60, ge=1, le=5000)):
    return {"ok": True, "data": await _engine(request).get_solar_system_position(trail_days)}


@api.get("/api/trend-analysis")
async def trend_analysis(
    request: Request,
    days: int = Query(30, ge=1, le=3650),
    prediction: bool = False,
    designation: str = Query(TARGET_NAME, min_length=1),
):
    try:
        payload = await _engine(request).get_trend_analysis(days, designation)
    except ValueError as e:
        return _json_error("bad_designation", str(e))
    data = {k: v for k, v in payload.items() if prediction or k != "prediction"}
    return {"ok": True, "data": data}


@api.get("/api/observers")
async def observers(
    request: Request,
    designation: str = Query(TARGET_NAME, min_length=1),
    min_obs: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    stats: bool = True,
):
    try:
        payload = await _engine(request).get_observer_summary(designation)
    except ValueError as e:
        return _json_error("bad_designation", str(e))
    rows = [o for o in payload["observers"] if o["observation_count"] >= min_obs]
    out: Dict[str, Any] = {
        "ok": True,
        "designation": payload["designation"],
        "observers": rows[:limit],
        "total_observers": len(payload["observers"]),
        "filters": {"min_obs": min_obs, "limit": limit},
    }
    if stats:
        out["statistics"] = observer_statistics(rows)
    if "error" in payload:
        out["error"] = payload["error"]
    return out
