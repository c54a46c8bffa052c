# cometapp/core/sources.py
# -----------------------------------------------------------------------------
# Upstream provider clients (httpx, asyncio)
#
#   CobsClient.fetch_observations()       COBS JSON  → List[Observation]
#   HorizonsClient.fetch_ephemeris(at)    Horizons VECTORS text → EphemerisData at `at`
#   SkyLiveClient.fetch_live_coordinates() TheSkyLive HTML → LiveCoordinates
#
# Provider-native shapes never leave this module: every client either returns
# the normalised types below or raises ProviderUnavailable. Parsers are plain
# functions so they can be tested without a network.
# -----------------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging
import math
import re

import httpx

from cometapp.core.constants import (
    AU_PER_DAY_TO_KM_S,
    PROVIDER_COBS,
    PROVIDER_JPL,
    PROVIDER_SKYLIVE,
    wrap_deg,
)
from cometapp.core.frames import to_equatorial
from cometapp.core.orbits import propagate_state
from cometapp.core.models import EquatorialPosition, Observation, Position3D
from cometapp.core.timescales import days_between, datetime_from_tdb_jd, to_utc, utc_now
from cometapp.utils.metrics import PROVIDER_LATENCY
from cometapp.utils.ratelimit import TokenBucket

log = logging.getLogger(__name__)

__all__ = [
    "ProviderUnavailable",
    "ProviderSettings",
    "EphemerisData",
    "LiveCoordinates",
    "parse_cobs_observations",
    "parse_horizons_vectors",
    "parse_horizons_epoch",
    "parse_skylive_html",
    "parse_ra_hms",
    "parse_dec_dms",
    "CobsClient",
    "HorizonsClient",
    "SkyLiveClient",
]


class ProviderUnavailable(RuntimeError):
    """Network error, non-2xx, or an unusable payload from one provider."""
    def __init__(self, provider: str, reason: str, **context: Any):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason
        self.context = context


@dataclass(frozen=True)
class ProviderSettings:
    base_url: str
    timeout_s: float = 8.0
    per_minute: int = 30
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "ProviderSettings":
        known = {"base_url", "timeout_s", "per_minute"}
        return cls(
            base_url=str(raw["base_url"]),
            timeout_s=float(raw.get("timeout_s", 8.0)),
            per_minute=int(raw.get("per_minute", 30)),
            params={k: v for k, v in raw.items() if k not in known},
        )


# ─────────────────────────────────────────────────────────────────────────────
# Normalised payloads
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class EphemerisData:
    position: Position3D                        # heliocentric ecliptic, AU
    velocity: Tuple[float, float, float]        # AU/day
    equatorial: EquatorialPosition
    epoch: datetime                             # instant the state refers to
    vector_epoch: Optional[datetime] = None     # instant of the Horizons row it came from

    @property
    def speed_km_s(self) -> float:
        vx, vy, vz = self.velocity
        return math.sqrt(vx * vx + vy * vy + vz * vz) * AU_PER_DAY_TO_KM_S


@dataclass(frozen=True)
class LiveCoordinates:
    ra: float
    dec: float
    geocentric_distance: Optional[float] = None
    magnitude: Optional[float] = None
    heliocentric_distance: Optional[float] = None
    fetched_at: Optional[datetime] = None

    def to_equatorial(self) -> EquatorialPosition:
        return EquatorialPosition(
            ra=self.ra,
            dec=self.dec,
            heliocentric_distance=self.heliocentric_distance,
            geocentric_distance=self.geocentric_distance,
        )


# ─────────────────────────────────────────────────────────────────────────────
# COBS
# ─────────────────────────────────────────────────────────────────────────────
MAG_MIN, MAG_MAX = -8.0, 22.0
MAX_OBS_AGE_DAYS = 730


def _num(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _quality(err: Optional[float]) -> Optional[str]:
    if err is None:
        return None
    if err <= 0.1:
        return "excellent"
    if err <= 0.2:
        return "good"
    if err <= 0.4:
        return "fair"
    return "poor"


def _cobs_record(obj: Mapping[str, Any], now: datetime) -> Optional[Observation]:
    raw_date = obj.get("obs_date")
    observer = obj.get("observer")
    mag = _num(obj.get("magnitude"))
    if not raw_date or not isinstance(observer, Mapping) or mag is None:
        return None
    if not (MAG_MIN <= mag <= MAG_MAX):
        return None
    try:
        when = to_utc(datetime.fromisoformat(str(raw_date).strip().replace("Z", "+00:00")))
    except ValueError:
        return None
    if when > now + timedelta(days=1) or when < now - timedelta(days=MAX_OBS_AGE_DAYS):
        return None

    name = f"{observer.get('first_name') or ''} {observer.get('last_name') or ''}".strip()
    method = obj.get("obs_method") if isinstance(obj.get("obs_method"), Mapping) else {}
    return Observation(
        date=when,
        magnitude=mag,
        observer_id=str(observer.get("icq_name") or "UNKNOWN").lower(),
        observer_name=name,
        filter=str(method.get("key") or "V"),
        aperture=_num(obj.get("instrument_aperture")),
        coma=_num(obj.get("coma_diameter")),
        quality=_quality(_num(obj.get("magnitude_error"))),
        source=PROVIDER_COBS,
    )


def parse_cobs_observations(payload: Any, now: Optional[datetime] = None) -> List[Observation]:
    """
    COBS obs_list JSON → observations, oldest first. Malformed, out-of-range
    or implausibly dated records are dropped; an error envelope or an empty
    result raises ProviderUnavailable.
    """
    if not isinstance(payload, Mapping):
        raise ProviderUnavailable(PROVIDER_COBS, "payload is not a JSON object")
    code = payload.get("code")
    if code is not None and str(code) != "200":
        raise ProviderUnavailable(PROVIDER_COBS, f"api error {code}: {payload.get('message', 'unknown')}")

    now = now or utc_now()
    objects = payload.get("objects") or []
    out: List[Observation] = []
    dropped = 0
    for obj in objects:
        rec = _cobs_record(obj, now) if isinstance(obj, Mapping) else None
        if rec is None:
            dropped += 1
            continue
        out.append(rec)
    if dropped:
        log.debug("cobs: dropped %d of %d records", dropped, len(objects))
    if not out:
        raise ProviderUnavailable(PROVIDER_COBS, "no valid observations")
    out.sort(key=lambda o: o.date)
    return out


# ─────────────────────────────────────────────────────────────────────────────
# JPL Horizons
# ─────────────────────────────────────────────────────────────────────────────
_NUM = r"([-+]?\d*\.?\d+(?:[Ee][-+]?\d+)?)"
# \b keeps "X" from matching inside "VX"
_VECTOR_FIELDS = tuple(
    (label, re.compile(r"\b" + label + r"\s*=\s*" + _NUM))
    for label in ("X", "Y", "Z", "VX", "VY", "VZ")
)


def parse_horizons_vectors(text: str) -> Tuple[Position3D, Tuple[float, float, float]]:
    """First state vector of the $$SOE … $$EOE block (AU, AU/day)."""
    start = text.find("$$SOE")
    end = text.find("$$EOE", start + 1)
    if start < 0 or end < 0:
        raise ProviderUnavailable(PROVIDER_JPL, "no $$SOE/$$EOE block in response")
    block = text[start + 5:end]

    found = []
    for label, rx in _VECTOR_FIELDS:
        m = rx.search(block)
        if m is None:
            raise ProviderUnavailable(PROVIDER_JPL, f"missing {label} component")
        found.append(float(m.group(1)))
    x, y, z, vx, vy, vz = found
    return Position3D(x, y, z), (vx, vy, vz)


_RE_EPOCH = re.compile(r"^\s*(\d{7}\.\d+)\s*=\s*A\.D\.", re.M)


def parse_horizons_epoch(text: str) -> Optional[datetime]:
    """UTC instant of the first row in the $$SOE block (Horizons labels it in TDB)."""
    start = text.find("$$SOE")
    if start < 0:
        return None
    m = _RE_EPOCH.search(text, start)
    return datetime_from_tdb_jd(float(m.group(1))) if m else None


# ─────────────────────────────────────────────────────────────────────────────
# TheSkyLive
# ─────────────────────────────────────────────────────────────────────────────
_RE_RA = re.compile(r'<number class="raApparent">([^<]+)</number>', re.I)
_RE_DEC = re.compile(r'<number class="decApparent">([^<]+)</number>', re.I)
_RE_DIST = re.compile(r'<number class="distanceAU">([^<]+)</number>', re.I)
_RE_MAG = re.compile(r"latest observed magnitude[^>]*is <number>([^<]+)</number>", re.I)
_RE_HMS = re.compile(r"(\d+)h\s*(\d+)m\s*(\d+(?:\.\d+)?)s")
_RE_DMS = re.compile(r"([+\-−]?)(\d+)°\s*(\d+)['’]\s*(\d+(?:\.\d+)?)[\"”]")


def parse_ra_hms(s: str) -> Optional[float]:
    m = _RE_HMS.search(s)
    if not m:
        return None
    h, mi, sec = int(m.group(1)), int(m.group(2)), float(m.group(3))
    return wrap_deg((h + mi / 60.0 + sec / 3600.0) * 15.0)


def parse_dec_dms(s: str) -> Optional[float]:
    m = _RE_DMS.search(s)
    if not m:
        return None
    sign = -1.0 if m.group(1) in ("-", "−") else 1.0
    d, mi, sec = int(m.group(2)), int(m.group(3)), float(m.group(4))
    return sign * (d + mi / 60.0 + sec / 3600.0)


def parse_skylive_html(html: str) -> LiveCoordinates:
    """
    Apparent RA/Dec are required; Earth distance and magnitude are optional.
    TheSkyLive does not publish a heliocentric distance, so it stays None.
    """
    ra_m, dec_m = _RE_RA.search(html), _RE_DEC.search(html)
    ra = parse_ra_hms(ra_m.group(1)) if ra_m else None
    dec = parse_dec_dms(dec_m.group(1)) if dec_m else None
    if ra is None or dec is None:
        raise ProviderUnavailable(PROVIDER_SKYLIVE, "apparent RA/Dec not found in page")

    dist_m, mag_m = _RE_DIST.search(html), _RE_MAG.search(html)
    delta = _num(dist_m.group(1).strip()) if dist_m else None
    return LiveCoordinates(
        ra=ra,
        dec=dec,
        geocentric_distance=delta if delta and delta > 0 else None,
        magnitude=_num(mag_m.group(1).strip()) if mag_m else None,
        heliocentric_distance=None,
        fetched_at=utc_now(),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Clients
# ─────────────────────────────────────────────────────────────────────────────
class _ProviderClient:
    name = "provider"
    accept = "*/*"

    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: ProviderSettings,
        *,
        limiter: Optional[TokenBucket] = None,
        user_agent: str = "cometapp",
    ):
        self.http = http
        self.settings = settings
        self.limiter = limiter or TokenBucket(settings.per_minute)
        self.user_agent = user_agent

    @property
    def timeout_s(self) -> float:
        return self.settings.timeout_s

    async def _get(self, params: Optional[Mapping[str, Any]] = None) -> httpx.Response:
        await self.limiter.acquire()
        t0 = perf_counter()
        try:
            resp = await self.http.get(
                self.settings.base_url,
                params=dict(params or {}),
                headers={"User-Agent": self.user_agent, "Accept": self.accept},
                timeout=self.settings.timeout_s,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderUnavailable(self.name, f"http {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.name, f"{type(e).__name__}: {e}") from e
        finally:
            PROVIDER_LATENCY.labels(provider=self.name).observe(perf_counter() - t0)
        return resp


class CobsClient(_ProviderClient):
    name = PROVIDER_COBS
    accept = "application/json"

    def __init__(self, http: httpx.AsyncClient, settings: ProviderSettings,
                 *, designation: str = "3I", **kw: Any):
        super().__init__(http, settings, **kw)
        self.designation = designation

    async def fetch_observations(self, designation: Optional[str] = None) -> List[Observation]:
        des = designation or self.designation
        resp = await self._get({
            "des": des,
            "from_date": self.settings.params.get("from_date", "2024-01-01"),
            "format": "json",
            "page": 1,
        })
        try:
            payload = resp.json()
        except ValueError as e:
            raise ProviderUnavailable(self.name, "response is not JSON", designation=des) from e
        obs = parse_cobs_observations(payload)
        log.info("cobs: %d observations for %s", len(obs), des)
        return obs


class HorizonsClient(_ProviderClient):
    name = PROVIDER_JPL
    accept = "text/plain"

    def __init__(self, http: httpx.AsyncClient, settings: ProviderSettings,
                 *, command: str = "'C/2025 N1'", **kw: Any):
        super().__init__(http, settings, **kw)
        self.command = settings.params.get("command", command)

    def query_params(self, at: datetime) -> Dict[str, str]:
        day = to_utc(at).replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "format": "text",
            "COMMAND": self.command,
            "EPHEM_TYPE": "VECTORS",
            "START_TIME": day.strftime("%Y-%m-%d"),
            "STOP_TIME": (day + timedelta(days=1)).strftime("%Y-%m-%d"),
            "STEP_SIZE": "1d",
            "CENTER": "500@10",
            "REF_PLANE": "ECLIPTIC",
            "OUT_UNITS": "AU-D",
        }

    async def fetch_ephemeris(self, at: Optional[datetime] = None) -> EphemerisData:
        """
        State vector for `at`. Horizons answers with the daily row; it is
        carried forward to `at` before the sky position is derived.
        """
        at = to_utc(at) if at else utc_now()
        resp = await self._get(self.query_params(at))
        pos, vel = parse_horizons_vectors(resp.text)
        row = parse_horizons_epoch(resp.text) or at.replace(hour=0, minute=0, second=0, microsecond=0)
        dt = days_between(row, at)
        if dt:
            pos, vel = propagate_state(pos, vel, dt)
        return EphemerisData(
            position=pos,
            velocity=vel,
            equatorial=to_equatorial(pos, at),
            epoch=at,
            vector_epoch=row,
        )


class SkyLiveClient(_ProviderClient):
    name = PROVIDER_SKYLIVE
    accept = "text/html"

    async def fetch_live_coordinates(self) -> LiveCoordinates:
        resp = await self._get()
        return parse_skylive_html(resp.text)
