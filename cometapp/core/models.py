# cometapp/core/models.py
# -----------------------------------------------------------------------------
# Value types shared by the solver, the classifier and the aggregation engine.
#
# • Orbital elements are validated on construction (ValueError).
# • Everything handed across a module boundary is frozen.
# • to_dict() renders the snake_case JSON surface.
# -----------------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import math

from cometapp.core.constants import PARABOLIC_EPS
from cometapp.core.timescales import iso, parse_instant

__all__ = [
    "OrbitalElements",
    "Position3D",
    "EquatorialPosition",
    "Observation",
    "ActivityLevel",
    "ActivityResult",
    "HealthState",
    "SourceHealth",
]


# ─────────────────────────────────────────────────────────────────────────────
# Orbits
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class OrbitalElements:
    eccentricity: float
    perihelion_distance: float      # q, AU
    inclination: float              # deg
    ascending_node: float           # Ω, deg
    arg_perihelion: float           # ω, deg
    perihelion_time: datetime       # T, aware UTC

    def __post_init__(self) -> None:
        for name in ("eccentricity", "perihelion_distance", "inclination",
                     "ascending_node", "arg_perihelion"):
            v = getattr(self, name)
            if not isinstance(v, (int, float)) or not math.isfinite(v):
                raise ValueError(f"{name} must be a finite number")
        if self.eccentricity < 0.0:
            raise ValueError("eccentricity must be >= 0")
        if self.perihelion_distance <= 0.0:
            raise ValueError("perihelion_distance must be > 0")
        if not isinstance(self.perihelion_time, datetime):
            raise ValueError("perihelion_time must be a datetime")
        if self.perihelion_time.tzinfo is None:
            raise ValueError("perihelion_time must be timezone-aware")

    @property
    def is_hyperbolic(self) -> bool:
        return self.eccentricity > 1.0

    @property
    def is_parabolic(self) -> bool:
        return abs(self.eccentricity - 1.0) < PARABOLIC_EPS

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "OrbitalElements":
        """Build from a plain mapping; perihelion_time may be ISO text."""
        try:
            return cls(
                eccentricity=float(raw["eccentricity"]),
                perihelion_distance=float(raw["perihelion_distance"]),
                inclination=float(raw["inclination"]),
                ascending_node=float(raw["ascending_node"]),
                arg_perihelion=float(raw["arg_perihelion"]),
                perihelion_time=parse_instant(raw["perihelion_time"]),
            )
        except KeyError as e:
            raise ValueError(f"missing orbital element: {e.args[0]}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eccentricity": self.eccentricity,
            "perihelion_distance": self.perihelion_distance,
            "inclination": self.inclination,
            "ascending_node": self.ascending_node,
            "arg_perihelion": self.arg_perihelion,
            "perihelion_time": iso(self.perihelion_time),
        }


@dataclass(frozen=True)
class Position3D:
    """Heliocentric ecliptic J2000, AU."""
    x: float
    y: float
    z: float

    @property
    def distance(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class EquatorialPosition:
    ra: float                       # deg, [0, 360)
    dec: float                      # deg, [-90, 90]
    heliocentric_distance: Optional[float] = None
    geocentric_distance: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ra": self.ra,
            "dec": self.dec,
            "heliocentric_distance": self.heliocentric_distance,
            "geocentric_distance": self.geocentric_distance,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Observations & activity
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Observation:
    date: datetime
    magnitude: Optional[float]
    observer_id: str = ""
    filter: str = "visual"
    aperture: Optional[float] = None
    coma: Optional[float] = None
    quality: Optional[str] = None
    observer_name: str = ""
    source: str = "cobs"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": iso(self.date),
            "magnitude": self.magnitude,
            "observer_id": self.observer_id,
            "observer_name": self.observer_name,
            "filter": self.filter,
            "aperture": self.aperture,
            "coma": self.coma,
            "quality": self.quality,
            "source": self.source,
        }


class ActivityLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    EXTREME = "EXTREME"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


@dataclass(frozen=True)
class ActivityResult:
    level: ActivityLevel
    current_magnitude: float = 0.0
    expected_magnitude: float = 0.0
    brightness_delta: float = 0.0
    heliocentric_distance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "current_magnitude": self.current_magnitude,
            "expected_magnitude": self.expected_magnitude,
            "brightness_delta": self.brightness_delta,
            "heliocentric_distance": self.heliocentric_distance,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Provider health
# ─────────────────────────────────────────────────────────────────────────────
class HealthState(str, Enum):
    NOT_ATTEMPTED = "NOT_ATTEMPTED"
    IN_FLIGHT = "IN_FLIGHT"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SourceHealth:
    state: HealthState = HealthState.NOT_ATTEMPTED
    last_updated: Optional[datetime] = None
    error: Optional[str] = None
    latency_ms: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.state is HealthState.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "active": self.active,
            "state": self.state.value,
            "last_updated": iso(self.last_updated),
        }
        if self.error:
            out["error"] = self.error
        if self.latency_ms is not None:
            out["latency_ms"] = round(self.latency_ms, 1)
        out.update(self.extra)
        return out
