# cometapp/core/frames.py
# -----------------------------------------------------------------------------
# Heliocentric ecliptic → geocentric equatorial (RA/Dec)
#
# • Earth from the single-term solar theory (≈0.01° over decades); adequate
#   for a dashboard that also shows JPL coordinates when they are available.
# • Mean obliquity at J2000; no precession / nutation / aberration.
# • Never raises on finite numeric input; a zero-length geocentric vector
#   gives RA = Dec = 0.
# -----------------------------------------------------------------------------
from __future__ import annotations

from datetime import datetime
from typing import Tuple
import math

from cometapp.core.constants import OBLIQUITY_J2000_DEG, clamp, wrap_deg
from cometapp.core.models import EquatorialPosition, OrbitalElements, Position3D
from cometapp.core.orbits import solve_position
from cometapp.core.timescales import days_since_j2000

__all__ = [
    "earth_position",
    "ecliptic_to_equatorial",
    "to_equatorial",
    "equatorial_from_elements",
    "angular_separation",
    "ARCSEC_PER_RAD",
]

ARCSEC_PER_RAD = 206264.806247

_EPS = math.radians(OBLIQUITY_J2000_DEG)
_COS_EPS = math.cos(_EPS)
_SIN_EPS = math.sin(_EPS)


def earth_position(at: datetime) -> Position3D:
    """Heliocentric ecliptic Earth = −(geocentric Sun)."""
    n = days_since_j2000(at)
    L = wrap_deg(280.460 + 0.9856474 * n)
    g = math.radians(wrap_deg(357.528 + 0.9856003 * n))
    lam = math.radians(L + 1.915 * math.sin(g) + 0.020 * math.sin(2.0 * g))
    R = 1.00014 - 0.01671 * math.cos(g) - 0.00014 * math.cos(2.0 * g)
    return Position3D(-R * math.cos(lam), -R * math.sin(lam), 0.0)


def ecliptic_to_equatorial(x: float, y: float, z: float) -> Tuple[float, float, float]:
    """Rotate about +X by the obliquity."""
    return (
        x,
        y * _COS_EPS - z * _SIN_EPS,
        y * _SIN_EPS + z * _COS_EPS,
    )


def to_equatorial(pos: Position3D, at: datetime) -> EquatorialPosition:
    earth = earth_position(at)
    gx, gy, gz = pos.x - earth.x, pos.y - earth.y, pos.z - earth.z
    delta = math.sqrt(gx * gx + gy * gy + gz * gz)

    xe, ye, ze = ecliptic_to_equatorial(gx, gy, gz)
    if delta > 0.0:
        ra = wrap_deg(math.degrees(math.atan2(ye, xe)))
        dec = math.degrees(math.asin(clamp(ze / delta, -1.0, 1.0)))
    else:
        ra, dec = 0.0, 0.0

    return EquatorialPosition(
        ra=ra,
        dec=dec,
        heliocentric_distance=pos.distance,
        geocentric_distance=delta,
    )


def equatorial_from_elements(elements: OrbitalElements, at: datetime) -> EquatorialPosition:
    """Solver + converter in one step. Propagates NonConvergence."""
    return to_equatorial(solve_position(elements, at), at)


def angular_separation(
    ra1: float, dec1: float, ra2: float, dec2: float,
) -> float:
    """Great-circle separation in arcseconds (inputs in degrees)."""
    d1, d2 = math.radians(dec1), math.radians(dec2)
    dra = math.radians(ra1 - ra2)
    c = math.sin(d1) * math.sin(d2) + math.cos(d1) * math.cos(d2) * math.cos(dra)
    return math.acos(clamp(c, -1.0, 1.0)) * ARCSEC_PER_RAD
