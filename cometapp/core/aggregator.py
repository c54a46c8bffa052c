# cometapp/core/aggregator.py
# -----------------------------------------------------------------------------
# Source Aggregation Engine
#
# One cycle:
#   1. COBS / JPL Horizons / TheSkyLive are called concurrently, each under
#      its own asyncio.wait_for timeout → Succeeded(data) | Failed(reason)
#   2. HealthRegistry records NOT_ATTEMPTED → IN_FLIGHT → SUCCEEDED | FAILED
#   3. merge() (pure) walks FALLBACK_TABLE slot by slot; the analytic orbit
#      is the last resort for every positional slot
#   4. the record is written through the cache under "comet-data"
#
# Callers always go through the deduplicator with the dataset key, so
# concurrent polls collapse into one upstream cycle. get_enhanced_state()
# never raises: with every provider down it serves the last good record
# (any age) or, with an empty cache, a record built from the elements alone.
#
# Derived datasets (trend-analysis, observers, solar-system-position) use the
# same fresh / stale / miss path under their own dataset keys.
# -----------------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
import asyncio
import copy
import logging
import math
import threading

from cometapp.core.activity import (
    analyze_trend,
    classify,
    classify_observations,
    confidence_level,
    latest_day_median,
    light_curve,
)
from cometapp.core.constants import (
    AU_KM,
    AU_PER_DAY_TO_KM_S,
    COBS_DESIGNATION_ALIASES,
    COMPANION_COMETS,
    DATASET_COBS,
    DATASET_COMET_DATA,
    DATASET_OBSERVERS,
    DATASET_SOLAR_SYSTEM,
    DATASET_TREND,
    GM_SUN_AU3_D2,
    PROVIDER_COBS,
    PROVIDER_JPL,
    PROVIDER_SKYLIVE,
    PROVIDERS,
    SECONDS_PER_DAY,
    TARGET_COBS_DESIGNATION,
    TARGET_DESIGNATION,
    TARGET_NAME,
    clamp,
)
from cometapp.core.frames import angular_separation, earth_position, to_equatorial
from cometapp.core.models import (
    EquatorialPosition,
    HealthState,
    Observation,
    OrbitalElements,
    Position3D,
    SourceHealth,
)
from cometapp.core.observers import summarise_observers
from cometapp.core.orbits import (
    NonConvergence,
    default_elements,
    solve_position,
    solve_velocity,
    vis_viva_speed,
)
from cometapp.core.sources import EphemerisData, LiveCoordinates, ProviderUnavailable
from cometapp.core.timescales import days_between, iso, parse_instant, utc_now
from cometapp.utils.cache import CacheStore
from cometapp.utils.dedupe import RequestDeduplicator
from cometapp.utils.metrics import GAUGE_PROVIDER_UP, MET_PROVIDER_CALLS

log = logging.getLogger(__name__)

__all__ = [
    "Succeeded",
    "Failed",
    "Outcome",
    "HealthRegistry",
    "AnalyticEstimate",
    "Resolved",
    "ELEMENTS",
    "FALLBACK_TABLE",
    "estimate_from_elements",
    "merge",
    "velocity_changes",
    "validate_consistency",
    "normalise_designation",
    "orbital_track",
    "SourceAggregationEngine",
]

ELEMENTS = "orbital_elements"


# ─────────────────────────────────────────────────────────────────────────────
# Tagged provider outcomes
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Succeeded:
    data: Any
    latency_ms: float = 0.0


@dataclass(frozen=True)
class Failed:
    reason: str
    timed_out: bool = False
    latency_ms: float = 0.0


Outcome = Union[Succeeded, Failed]


# ─────────────────────────────────────────────────────────────────────────────
# Provider health
# ─────────────────────────────────────────────────────────────────────────────
class HealthRegistry:
    """Per-provider SourceHealth, safe to share between concurrent cycles."""

    def __init__(self, providers: Tuple[str, ...] = PROVIDERS, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._lock = threading.Lock()
        self._health: Dict[str, SourceHealth] = {p: SourceHealth() for p in providers}

    def get(self, provider: str) -> SourceHealth:
        with self._lock:
            return self._health.get(provider, SourceHealth())

    def snapshot(self) -> Dict[str, SourceHealth]:
        with self._lock:
            return dict(self._health)

    def begin(self, provider: str) -> None:
        with self._lock:
            prev = self._health.get(provider, SourceHealth())
            self._health[provider] = replace(prev, state=HealthState.IN_FLIGHT)

    def succeed(self, provider: str, latency_ms: Optional[float] = None) -> None:
        self._finish(provider, SourceHealth(
            state=HealthState.SUCCEEDED,
            last_updated=self.clock(),
            latency_ms=latency_ms,
        ))

    def fail(self, provider: str, reason: str, latency_ms: Optional[float] = None) -> None:
        with self._lock:
            prev = self._health.get(provider, SourceHealth())
        self._finish(provider, SourceHealth(
            state=HealthState.FAILED,
            last_updated=prev.last_updated,
            error=reason,
            latency_ms=latency_ms,
        ))

    def _finish(self, provider: str, new: SourceHealth) -> None:
        with self._lock:
            prev = self._health.get(provider, SourceHealth())
            self._health[provider] = new
        GAUGE_PROVIDER_UP.labels(provider=provider).set(1.0 if new.active else 0.0)
        if new.active and prev.state is HealthState.FAILED:
            log.info("source %s recovered", provider)
        elif not new.active and prev.state is not HealthState.FAILED:
            log.warning("source %s failed: %s", provider, new.error)

    def to_dict(self) -> Dict[str, Any]:
        return {name: h.to_dict() for name, h in self.snapshot().items()}


# ─────────────────────────────────────────────────────────────────────────────
# Analytic estimate (fallback for every positional slot)
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class AnalyticEstimate:
    at: datetime
    position: Position3D
    equatorial: EquatorialPosition
    velocity: Tuple[float, float, float]    # AU/day
    speed_km_s: float                       # vis-viva


def estimate_from_elements(elements: OrbitalElements, at: datetime) -> Optional[AnalyticEstimate]:
    try:
        pos = solve_position(elements, at)
        vel = solve_velocity(elements, at)
    except NonConvergence as e:
        log.warning("analytic estimate unavailable: %s", e)
        return None
    return AnalyticEstimate(
        at=at,
        position=pos,
        equatorial=to_equatorial(pos, at),
        velocity=vel,
        speed_km_s=vis_viva_speed(elements, pos.distance),
    )


@dataclass(frozen=True)
class Velocity:
    heliocentric_km_s: float
    vector: Tuple[float, float, float]      # AU/day, ecliptic


# ─────────────────────────────────────────────────────────────────────────────
# Fallback table
# ─────────────────────────────────────────────────────────────────────────────
def _jpl_velocity(e: EphemerisData) -> Velocity:
    return Velocity(e.speed_km_s, e.velocity)


def _elements_velocity(est: AnalyticEstimate) -> Velocity:
    return Velocity(est.speed_km_s, est.velocity)


def _positive(x: Optional[float]) -> Optional[float]:
    return x if x is not None and x > 0 else None


# slot → ((source, extractor), …) in priority order. An extractor returning
# None passes the slot on to the next source.
FALLBACK_TABLE: Dict[str, Tuple[Tuple[str, Callable[[Any], Any]], ...]] = {
    "observations": (
        (PROVIDER_COBS, lambda obs: list(obs) or None),
    ),
    "magnitude": (
        (PROVIDER_COBS, latest_day_median),
        (PROVIDER_SKYLIVE, lambda live: _positive(live.magnitude)),
    ),
    "sky_position": (
        (PROVIDER_JPL, lambda eph: eph.equatorial),
        (PROVIDER_SKYLIVE, LiveCoordinates.to_equatorial),
        (ELEMENTS, lambda est: est.equatorial),
    ),
    "heliocentric_distance": (
        (PROVIDER_JPL, lambda eph: eph.position.distance),
        (ELEMENTS, lambda est: est.position.distance),
    ),
    "geocentric_distance": (
        (PROVIDER_JPL, lambda eph: eph.equatorial.geocentric_distance),
        (PROVIDER_SKYLIVE, lambda live: live.geocentric_distance),
        (ELEMENTS, lambda est: est.equatorial.geocentric_distance),
    ),
    "velocity": (
        (PROVIDER_JPL, _jpl_velocity),
        (ELEMENTS, _elements_velocity),
    ),
}

SLOT_DEFAULTS: Dict[str, Any] = {
    "observations": [],
    "magnitude": 0.0,
    "sky_position": None,
    "heliocentric_distance": 0.0,
    "geocentric_distance": 0.0,
    "velocity": None,
}


@dataclass(frozen=True)
class Resolved:
    value: Any
    source: Optional[str]


def merge(
    outcomes: Mapping[str, Outcome],
    estimate: Optional[AnalyticEstimate] = None,
) -> Dict[str, Resolved]:
    """Resolve every slot of FALLBACK_TABLE from the successful outcomes."""
    available: Dict[str, Any] = {
        name: o.data for name, o in outcomes.items() if isinstance(o, Succeeded)
    }
    if estimate is not None:
        available[ELEMENTS] = estimate

    out: Dict[str, Resolved] = {}
    for slot, chain in FALLBACK_TABLE.items():
        out[slot] = Resolved(SLOT_DEFAULTS[slot], None)
        for source, extract in chain:
            if source not in available:
                continue
            value = extract(available[source])
            if value is not None:
                out[slot] = Resolved(value, source)
                break
    return out


# ─────────────────────────────────────────────────────────────────────────────
# Derived quantities
# ─────────────────────────────────────────────────────────────────────────────
_ZERO_CHANGES = {"acceleration": 0.0, "direction_change": 0.0, "trend_7day": 0.0}


def _angle_between(a: Tuple[float, float, float], b: Tuple[float, float, float]) -> float:
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(x * x for x in b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    c = sum(x * y for x, y in zip(a, b)) / (na * nb)
    return math.degrees(math.acos(max(-1.0, min(1.0, c))))


def velocity_changes(elements: OrbitalElements, at: datetime) -> Dict[str, float]:
    """
    acceleration      km/s² (μ/r²)
    direction_change  deg/day between velocity vectors 1 day apart
    trend_7day        km/s per day over the past week
    """
    try:
        r = solve_position(elements, at).distance
        r_week = solve_position(elements, at - timedelta(days=7)).distance
        v0 = solve_velocity(elements, at - timedelta(hours=12))
        v1 = solve_velocity(elements, at + timedelta(hours=12))
    except NonConvergence as e:
        log.warning("velocity_changes unavailable: %s", e)
        return dict(_ZERO_CHANGES)
    accel = GM_SUN_AU3_D2 / (r * r) * AU_KM / (SECONDS_PER_DAY ** 2)
    trend = (vis_viva_speed(elements, r) - vis_viva_speed(elements, r_week)) / 7.0
    return {
        "acceleration": accel,
        "direction_change": round(_angle_between(v0, v1), 6),
        "trend_7day": round(trend, 6),
    }


def _earth_velocity(at: datetime) -> Tuple[float, float, float]:
    h = timedelta(hours=12)
    a, b = earth_position(at - h), earth_position(at + h)
    return (b.x - a.x, b.y - a.y, b.z - a.z)


def _angular_rate(elements: OrbitalElements, at: datetime) -> float:
    """arcsec/day of apparent motion from the analytic orbit."""
    h = timedelta(hours=12)
    try:
        a = to_equatorial(solve_position(elements, at - h), at - h)
        b = to_equatorial(solve_position(elements, at + h), at + h)
    except NonConvergence:
        return 0.0
    return angular_separation(a.ra, a.dec, b.ra, b.dec)


_ACCURACY_BY_SOURCE = {
    PROVIDER_JPL: (1.0, 0.95),
    PROVIDER_SKYLIVE: (3.0, 0.85),
    ELEMENTS: (10.0, 0.7),
}


def validate_consistency(
    outcomes: Mapping[str, Outcome],
    *,
    position_uncertainty_arcsec: float = 0.0,
    magnitude_tolerance: float = 0.5,
    position_tolerance_arcsec: float = 5.0,
) -> Dict[str, Any]:
    """
    Cross-check one cycle's outcomes: COBS vs TheSkyLive magnitude, number
    of active sources, JPL vs TheSkyLive sky position.
    """
    warnings: List[str] = []
    confidence = 1.0
    ok = {n: o.data for n, o in outcomes.items() if isinstance(o, Succeeded)}

    mags = [m for m in (
        latest_day_median(ok[PROVIDER_COBS]) if PROVIDER_COBS in ok else None,
        _positive(ok[PROVIDER_SKYLIVE].magnitude) if PROVIDER_SKYLIVE in ok else None,
    ) if m is not None]
    if len(mags) > 1:
        diff = max(mags) - min(mags)
        if diff > magnitude_tolerance:
            warnings.append(f"Magnitude inconsistency: {diff:.2f} mag difference between sources")
            confidence -= 0.1

    active = len(ok)
    if active < 2:
        warnings.append(f"Only {active} data source(s) active - reduced reliability")
        confidence -= 0.2 * (3 - active)

    uncertainty = position_uncertainty_arcsec
    if PROVIDER_JPL in ok and PROVIDER_SKYLIVE in ok:
        a, b = ok[PROVIDER_JPL].equatorial, ok[PROVIDER_SKYLIVE]
        uncertainty = max(uncertainty, angular_separation(a.ra, a.dec, b.ra, b.dec))
    if uncertainty > position_tolerance_arcsec:
        warnings.append(f"Position uncertainty exceeds {position_tolerance_arcsec:g} arcseconds")
        confidence -= 0.1

    return {
        "is_consistent": not warnings,
        "warnings": warnings,
        "confidence": round(max(0.1, confidence), 2),
        "uncertainty_arcsec": round(uncertainty, 3),
    }


def _r(x: Optional[float], nd: int = 6) -> Optional[float]:
    return None if x is None else round(float(x), nd)


_ALIASES = {k.upper(): v for k, v in COBS_DESIGNATION_ALIASES.items()}


def normalise_designation(designation: str) -> str:
    """Alias → COBS designation, whitespace collapsed, upper-cased."""
    raw = " ".join(str(designation).split())
    if not raw:
        raise ValueError("designation must be non-empty")
    return _ALIASES.get(raw.upper(), raw).upper()


def orbital_track(
    elements: OrbitalElements,
    at: datetime,
    offsets_days: Iterable[int],
    max_distance: float = math.inf,
) -> List[Dict[str, Any]]:
    """Analytic positions at at+offset; stops at the first point beyond max_distance."""
    rows: List[Dict[str, Any]] = []
    for d in offsets_days:
        t = at + timedelta(days=d)
        try:
            p = solve_position(elements, t)
        except NonConvergence as e:
            log.warning("orbital track cut at %s: %s", iso(t), e)
            break
        if p.distance > max_distance:
            break
        rows.append({"date": iso(t), "x": _r(p.x), "y": _r(p.y), "z": _r(p.z),
                     "distance_from_sun": _r(p.distance)})
    return rows


def _vector(v: Tuple[float, float, float]) -> Dict[str, float]:
    mag = math.sqrt(sum(c * c for c in v))
    return {"x": _r(v[0], 8), "y": _r(v[1], 8), "z": _r(v[2], 8),
            "magnitude": _r(mag, 8), "km_s": _r(mag * AU_PER_DAY_TO_KM_S, 3)}


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────
class SourceAggregationEngine:
    def __init__(
        self,
        cobs: Any,
        horizons: Any,
        skylive: Any,
        *,
        cache: CacheStore,
        dedup: Optional[RequestDeduplicator] = None,
        health: Optional[HealthRegistry] = None,
        elements: Optional[OrbitalElements] = None,
        clock: Callable[[], datetime] = utc_now,
        default_timeout_s: float = 10.0,
        magnitude_tolerance: float = 0.5,
        position_tolerance_arcsec: float = 5.0,
    ):
        self.clients: Dict[str, Any] = {
            PROVIDER_COBS: cobs,
            PROVIDER_JPL: horizons,
            PROVIDER_SKYLIVE: skylive,
        }
        self.cache = cache
        self.dedup = dedup or RequestDeduplicator()
        self.health = health or HealthRegistry(clock=clock)
        self.elements = elements or default_elements()
        self.clock = clock
        self.default_timeout_s = default_timeout_s
        self.magnitude_tolerance = magnitude_tolerance
        self.position_tolerance_arcsec = position_tolerance_arcsec
        self._background: Set["asyncio.Future[Any]"] = set()

    # ── provider calls ──
    def timeout_for(self, provider: str) -> float:
        return float(getattr(self.clients.get(provider), "timeout_s", self.default_timeout_s))

    async def _call(self, provider: str, fn: Callable[[], Awaitable[Any]]) -> Outcome:
        timeout = self.timeout_for(provider)
        self.health.begin(provider)
        t0 = perf_counter()
        try:
            data = await asyncio.wait_for(fn(), timeout)
        except asyncio.TimeoutError:
            outcome: Outcome = Failed(f"timeout after {timeout:g}s", timed_out=True)
        except ProviderUnavailable as e:
            outcome = Failed(str(e))
        except Exception as e:
            log.exception("provider %s raised unexpectedly", provider)
            outcome = Failed(f"{type(e).__name__}: {e}")
        else:
            outcome = Succeeded(data)
        ms = (perf_counter() - t0) * 1000.0

        if isinstance(outcome, Succeeded):
            outcome = replace(outcome, latency_ms=ms)
            self.health.succeed(provider, ms)
            MET_PROVIDER_CALLS.labels(provider=provider, outcome="ok").inc()
        else:
            outcome = replace(outcome, latency_ms=ms)
            self.health.fail(provider, outcome.reason, ms)
            MET_PROVIDER_CALLS.labels(
                provider=provider, outcome="timeout" if outcome.timed_out else "error"
            ).inc()
        return outcome

    async def _not_configured(self, provider: str) -> Outcome:
        self.health.fail(provider, "not configured")
        return Failed("not configured")

    async def gather(self, at: datetime) -> Dict[str, Outcome]:
        """One concurrent round of provider calls; waits for all three."""
        factories: Dict[str, Callable[[], Awaitable[Any]]] = {}
        cobs, jpl, sky = (self.clients[p] for p in PROVIDERS)
        if cobs is not None:
            factories[PROVIDER_COBS] = lambda: cobs.fetch_observations()
        if jpl is not None:
            factories[PROVIDER_JPL] = lambda: jpl.fetch_ephemeris(at)
        if sky is not None:
            factories[PROVIDER_SKYLIVE] = lambda: sky.fetch_live_coordinates()

        names = list(PROVIDERS)
        results = await asyncio.gather(*(
            self._call(n, factories[n]) if n in factories else self._not_configured(n)
            for n in names
        ))
        return dict(zip(names, results))

    # ── record assembly ──
    def build_record(self, outcomes: Mapping[str, Outcome], at: datetime) -> Dict[str, Any]:
        estimate = estimate_from_elements(self.elements, at)
        slots = merge(outcomes, estimate)

        observations: List[Observation] = slots["observations"].value
        magnitude = float(slots["magnitude"].value or 0.0)
        sky = slots["sky_position"]
        helio = float(slots["heliocentric_distance"].value or 0.0)
        geo = float(slots["geocentric_distance"].value or 0.0)
        vel = slots["velocity"]

        if observations:
            activity = classify_observations(observations, helio)
        else:
            activity = classify(magnitude if magnitude > 0 else None, helio)

        if vel.value is not None:
            ve = _earth_velocity(at)
            rel = tuple(a - b for a, b in zip(vel.value.vector, ve))
            geo_speed = math.sqrt(sum(x * x for x in rel)) * AU_PER_DAY_TO_KM_S
            current_velocity = {
                "heliocentric": round(vel.value.heliocentric_km_s, 3),
                "geocentric": round(geo_speed, 3),
                "angular": round(_angular_rate(self.elements, at), 1),
                "source": vel.source,
            }
        else:
            current_velocity = {"heliocentric": 0.0, "geocentric": 0.0, "angular": 0.0, "source": None}

        base_unc, base_conf = _ACCURACY_BY_SOURCE.get(sky.source, (10.0, 0.5))
        consistency = validate_consistency(
            outcomes,
            position_uncertainty_arcsec=base_unc,
            magnitude_tolerance=self.magnitude_tolerance,
            position_tolerance_arcsec=self.position_tolerance_arcsec,
        )
        last_obs = iso(observations[-1].date) if observations else ""

        position = sky.value.to_dict() if sky.value is not None else None
        if position is not None:
            position["heliocentric_distance"] = _r(helio)
            position["geocentric_distance"] = _r(geo)

        T = self.elements.perihelion_time
        return {
            "comet": {
                "name": TARGET_NAME,
                "designation": TARGET_DESIGNATION,
                "current_magnitude": round(magnitude, 2),
                "magnitude_source": slots["magnitude"].source,
                "perihelion_date": iso(T),
                "observations": [o.to_dict() for o in observations],
                "light_curve": light_curve(observations),
            },
            "stats": {
                "total_observations": len(observations),
                "active_observers": len({o.observer_id for o in observations}),
                "current_magnitude": round(magnitude, 2),
                "days_until_perihelion": int(math.floor(days_between(at, T))),
            },
            "orbital_mechanics": {
                "current_distance": {
                    "heliocentric": _r(helio),
                    "geocentric": _r(geo),
                    "heliocentric_source": slots["heliocentric_distance"].source,
                    "geocentric_source": slots["geocentric_distance"].source,
                },
                "current_velocity": current_velocity,
                "velocity_changes": velocity_changes(self.elements, at),
                "position_accuracy": {
                    "uncertainty_arcsec": consistency["uncertainty_arcsec"],
                    "last_observation": last_obs,
                    "prediction_confidence": min(base_conf, consistency["confidence"]),
                },
            },
            "jpl_ephemeris": {
                "current_position": position,
                "source": sky.source,
            },
            "activity": activity.to_dict(),
            "source_status": self.health.to_dict(),
            "consistency": {k: consistency[k] for k in ("is_consistent", "warnings", "confidence")},
            "generated_at": iso(at),
        }

    # ── refresh cycle ──
    async def refresh(self) -> Dict[str, Any]:
        """
        Run one provider cycle and write the merged record through the cache.
        With every provider failed the cache is left untouched and the last
        good record (any age) is served instead.
        """
        at = self.clock()
        try:
            outcomes = await self.gather(at)
            if any(isinstance(o, Succeeded) for o in outcomes.values()):
                record = self.build_record(outcomes, at)
                await self.cache.save(DATASET_COMET_DATA, record)
                return record

            last = self.cache.peek(DATASET_COMET_DATA)
            if last is not None:
                log.warning("all sources failed; serving last good record from %s",
                            last.payload.get("generated_at"))
                record = copy.deepcopy(last.payload)
                record["source_status"] = self.health.to_dict()
                return record
            log.warning("all sources failed and nothing cached; serving analytic record")
            return self.build_record(outcomes, at)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("refresh cycle failed")
            return self.build_record({}, at)

    def _refresh_in_background(self, key: str, fn: Callable[[], Awaitable[Any]]) -> None:
        fut = asyncio.ensure_future(self.dedup.dedupe(key, fn))
        self._background.add(fut)
        fut.add_done_callback(self._background_done)

    def _background_done(self, fut: "asyncio.Future[Any]") -> None:
        self._background.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            log.warning("background refresh failed: %s", fut.exception())

    async def drain(self) -> None:
        """Wait for outstanding background refreshes (shutdown / tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _serve(self, key: str, fn: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """Fresh → cached; stale → cached plus a deduplicated background refresh; miss → fn."""
        hit = await self.cache.load(key)
        if hit.fresh:
            return hit.payload
        if hit.stale:
            log.info("%s stale (age %.0fs); refreshing in background", key, hit.age or 0.0)
            self._refresh_in_background(key, fn)
            return hit.payload
        return await self.dedup.dedupe(key, fn)

    async def get_enhanced_state(self) -> Dict[str, Any]:
        return await self._serve(DATASET_COMET_DATA, self.refresh)

    # ── companion datasets ──
    async def get_observations(self, designation: str = TARGET_COBS_DESIGNATION) -> Dict[str, Any]:
        des = normalise_designation(designation)
        return await self._serve(f"{DATASET_COBS}:{des}", lambda: self._fetch_observations(des))

    async def _fetch_observations(self, des: str) -> Dict[str, Any]:
        key = f"{DATASET_COBS}:{des}"
        client = self.clients[PROVIDER_COBS]
        error: Optional[str] = None
        if client is None:
            error = "not configured"
        else:
            try:
                obs = await asyncio.wait_for(
                    client.fetch_observations(des), self.timeout_for(PROVIDER_COBS)
                )
            except asyncio.TimeoutError:
                error = f"timeout after {self.timeout_for(PROVIDER_COBS):g}s"
            except ProviderUnavailable as e:
                error = str(e)
            else:
                payload = {
                    "designation": des,
                    "observations": [o.to_dict() for o in obs],
                    "light_curve": light_curve(obs),
                    "fetched_at": iso(self.clock()),
                }
                await self.cache.save(key, payload)
                return payload

        log.warning("observations for %s unavailable: %s", des, error)
        last = self.cache.peek(key)
        if last is not None:
            return last.payload
        return {"designation": des, "observations": [], "light_curve": [],
                "fetched_at": iso(self.clock()), "error": error}

    # ── derived datasets ──
    async def get_trend_analysis(self, days: int = 30, designation: str = TARGET_COBS_DESIGNATION) -> Dict[str, Any]:
        if days < 1:
            raise ValueError("days must be >= 1")
        des = normalise_designation(designation)
        key = f"{DATASET_TREND}:{des}:{days}"
        return await self._serve(key, lambda: self._build_trend(key, des, days))

    async def _build_trend(self, key: str, des: str, days: int) -> Dict[str, Any]:
        obs = await self.get_observations(des)
        curve = obs.get("light_curve") or []
        trend = analyze_trend(curve, days, now=self.clock())
        last, rate = trend["last_magnitude"], trend["rate"]
        payload: Dict[str, Any] = {
            "designation": des,
            **trend,
            "confidence_level": confidence_level(trend["confidence"]),
            "data_points": len(curve),
            "prediction": None if last is None else {
                "next_week": round(last + rate * 7.0, 2),
                "next_month": round(last + rate * 30.0, 2),
                "confidence": trend["confidence"],
            },
            "generated_at": iso(self.clock()),
        }
        if "error" in obs:
            payload["error"] = obs["error"]
        else:
            await self.cache.save(key, payload)
        return payload

    async def get_observer_summary(self, designation: str = TARGET_COBS_DESIGNATION) -> Dict[str, Any]:
        des = normalise_designation(designation)
        key = f"{DATASET_OBSERVERS}:{des}"
        return await self._serve(key, lambda: self._build_observers(key, des))

    async def _build_observers(self, key: str, des: str) -> Dict[str, Any]:
        obs = await self.get_observations(des)
        payload: Dict[str, Any] = {
            "designation": des,
            "observers": summarise_observers(obs.get("observations") or []),
            "generated_at": iso(self.clock()),
        }
        if "error" in obs:
            payload["error"] = obs["error"]
        else:
            await self.cache.save(key, payload)
        return payload

    async def get_solar_system_position(self, trail_days: int = 60) -> Dict[str, Any]:
        trail_days = int(clamp(trail_days, 30, 1000))
        key = f"{DATASET_SOLAR_SYSTEM}:{trail_days}"
        return await self._serve(key, lambda: self._build_solar_system(key, trail_days))

    async def _build_solar_system(self, key: str, trail_days: int) -> Dict[str, Any]:
        """
        Comet + Earth heliocentric state for the 3D view. The current state
        comes from Horizons when it answers, else from the elements; trail
        and projection are always analytic. Only Horizons-backed payloads
        are cached; otherwise the last good payload wins over an estimate.
        """
        at = self.clock()
        jpl = self.clients[PROVIDER_JPL]
        outcome: Outcome = Failed("not configured")
        if jpl is not None:
            outcome = await self._call(PROVIDER_JPL, lambda: jpl.fetch_ephemeris(at))

        if isinstance(outcome, Succeeded):
            pos, vel, source = outcome.data.position, outcome.data.velocity, PROVIDER_JPL
        else:
            last = self.cache.peek(key)
            if last is not None:
                log.warning("solar-system: horizons unavailable (%s); serving last good payload", outcome.reason)
                return last.payload
            est = estimate_from_elements(self.elements, at)
            if est is None:
                return {"error": "no position available", "metadata": {"epoch": iso(at)}}
            pos, vel, source = est.position, est.velocity, ELEMENTS

        earth = earth_position(at)
        geo = math.sqrt((pos.x - earth.x) ** 2 + (pos.y - earth.y) ** 2 + (pos.z - earth.z) ** 2)
        el = self.elements
        payload: Dict[str, Any] = {
            "comet_position": {
                "x": _r(pos.x), "y": _r(pos.y), "z": _r(pos.z),
                "distance_from_sun": _r(pos.distance),
                "distance_from_earth": _r(geo),
            },
            "earth_position": {k: _r(v) for k, v in earth.to_dict().items()},
            "sun_position": {"x": 0.0, "y": 0.0, "z": 0.0},
            "orbital_trail": orbital_track(el, at, range(-trail_days, 1)),
            "orbital_projection": orbital_track(el, at, range(0, 721, 2), max_distance=100.0),
            "orbital_plane": {
                "inclination": el.inclination,
                "ascending_node": el.ascending_node,
                "argument_of_periapsis": el.arg_perihelion,
                "eccentricity": el.eccentricity,
                "perihelion_distance": el.perihelion_distance,
            },
            "velocities": {
                "comet_velocity": _vector(vel),
                "earth_velocity": _vector(_earth_velocity(at)),
            },
            "metadata": {
                "reference_frame": "heliocentric_ecliptic",
                "coordinate_system": "ecliptic_j2000",
                "epoch": iso(at),
                "data_source": source,
                "trail_source": ELEMENTS,
                "trail_period_days": trail_days,
            },
        }
        if source == PROVIDER_JPL:
            await self.cache.save(key, payload)
        return payload

    def companion_positions(self, at: Optional[datetime] = None) -> List[Dict[str, Any]]:
        at = parse_instant(at) if at is not None else self.clock()
        rows: List[Dict[str, Any]] = []
        bodies = [("3i-atlas", TARGET_NAME, TARGET_DESIGNATION, self.elements)]
        for slug, info in COMPANION_COMETS.items():
            raw = info.get("elements")
            el = OrbitalElements.from_dict(raw) if raw else None
            bodies.append((slug, info["name"], info["designation"], el))

        for slug, name, des, el in bodies:
            row: Dict[str, Any] = {"id": slug, "name": name, "designation": des,
                                   "elements_available": el is not None, "position": None}
            if el is not None:
                try:
                    pos = solve_position(el, at)
                except NonConvergence as e:
                    log.warning("companion %s: %s", slug, e)
                else:
                    row["position"] = {**pos.to_dict(), **to_equatorial(pos, at).to_dict()}
            rows.append(row)
        return rows

    def cache_stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.status(),
            "dedup": self.dedup.stats(),
            "sources": self.health.to_dict(),
        }
