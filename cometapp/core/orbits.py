# cometapp/core/orbits.py
# -----------------------------------------------------------------------------
# Two-body orbital solver for comets (elliptic / parabolic / hyperbolic)
#
# Public API
#   solve_position(elements, at)   -> Position3D   (raises NonConvergence)
#   orbital_position(elements, at) -> Optional[Position3D]
#   solve_velocity(elements, at)   -> (vx, vy, vz) AU/day
#   vis_viva_speed(elements, r)    -> km/s
#   propagate_state(pos, vel, dt)  -> (Position3D, velocity) dt days later
#   default_elements()             -> OrbitalElements for 3I/ATLAS
#
# Notes
# • Heliocentric ecliptic J2000, AU, days. μ = k².
# • Newton–Raphson with a hard iteration cap; no silent fallbacks.
# • Parabolic orbits (|e − 1| < 1e-9) use Barker's equation in closed form.
# • Pure functions; no I/O, no awaits.
# -----------------------------------------------------------------------------
from __future__ import annotations

from datetime import datetime, timedelta
from functools import lru_cache
from typing import Optional, Tuple
import logging
import math

from cometapp.core.constants import (
    ATLAS_3I_ELEMENTS_RAW,
    AU_PER_DAY_TO_KM_S,
    GM_SUN_AU3_D2,
    KEPLER_MAX_ITER,
    KEPLER_TOL_RAD,
)
from cometapp.core.models import OrbitalElements, Position3D
from cometapp.core.timescales import days_between

log = logging.getLogger(__name__)

__all__ = [
    "NonConvergence",
    "solve_kepler_elliptic",
    "solve_kepler_hyperbolic",
    "solve_barker",
    "mean_motion",
    "solve_position",
    "orbital_position",
    "solve_velocity",
    "vis_viva_speed",
    "propagate_state",
    "default_elements",
]


class NonConvergence(RuntimeError):
    """Newton iteration did not reach tolerance within the iteration cap."""
    def __init__(self, kind: str, iterations: int, residual: float):
        super().__init__(f"{kind}: no convergence after {iterations} iterations (|dx|={residual:.3e})")
        self.kind = kind
        self.iterations = iterations
        self.residual = residual


# ─────────────────────────────────────────────────────────────────────────────
# Anomaly solvers
# ─────────────────────────────────────────────────────────────────────────────
def solve_kepler_elliptic(
    M: float,
    e: float,
    *,
    max_iter: int = KEPLER_MAX_ITER,
    tol: float = KEPLER_TOL_RAD,
) -> float:
    """
    Solve M = E − e·sin E for E (radians). M is reduced to (−π, π] first.
    """
    M = math.remainder(M, 2.0 * math.pi)
    if M == 0.0:
        return 0.0
    E = M if e < 0.8 else math.copysign(math.pi, M)
    dE = float("inf")
    for _ in range(max_iter):
        f = E - e * math.sin(E) - M
        fp = 1.0 - e * math.cos(E)
        dE = f / fp
        E -= dE
        if abs(dE) < tol:
            return E
    raise NonConvergence("elliptic", max_iter, abs(dE))


def solve_kepler_hyperbolic(
    M: float,
    e: float,
    *,
    max_iter: int = KEPLER_MAX_ITER,
    tol: float = KEPLER_TOL_RAD,
) -> float:
    """
    Solve M = e·sinh H − H for H.

    Start at sign(M)·ln(2|M|/e + 1.8), which sits on or just past the root
    for near-parabolic cases where asinh(M/e) badly undershoots.
    """
    if M == 0.0:
        return 0.0
    H = math.copysign(math.log(2.0 * abs(M) / e + 1.8), M)
    dH = float("inf")
    try:
        for _ in range(max_iter):
            f = e * math.sinh(H) - H - M
            fp = e * math.cosh(H) - 1.0
            dH = f / fp
            H -= dH
            if abs(dH) < tol:
                return H
    except (OverflowError, ZeroDivisionError) as exc:
        raise NonConvergence("hyperbolic", max_iter, float("inf")) from exc
    raise NonConvergence("hyperbolic", max_iter, abs(dH))


def solve_barker(W: float) -> float:
    """
    Barker's equation D³ + 3D = W (so D + D³/3 = W/3), returned as D = tan(ν/2).

    Closed form: Y = ∛(W/2 + √(W²/4 + 1)), D = Y − 1/Y. Evaluated on |W|
    so the cube-root argument never suffers cancellation.
    """
    s = abs(W)
    Y = (s / 2.0 + math.sqrt(s * s / 4.0 + 1.0)) ** (1.0 / 3.0)
    return math.copysign(Y - 1.0 / Y, W)


# ─────────────────────────────────────────────────────────────────────────────
# Positions
# ─────────────────────────────────────────────────────────────────────────────
def mean_motion(elements: OrbitalElements) -> float:
    """rad/day from the semi-major axis (|a| for hyperbolae)."""
    e = elements.eccentricity
    a = elements.perihelion_distance / (1.0 - e)
    return math.sqrt(GM_SUN_AU3_D2 / abs(a) ** 3)


def _orbital_plane(elements: OrbitalElements, at: datetime) -> Tuple[float, float]:
    e = elements.eccentricity
    q = elements.perihelion_distance
    t = days_between(elements.perihelion_time, at)

    if elements.is_parabolic:
        W = 3.0 * math.sqrt(GM_SUN_AU3_D2 / (2.0 * q ** 3)) * t
        D = solve_barker(W)
        return q * (1.0 - D * D), 2.0 * q * D

    a = q / (1.0 - e)
    M = mean_motion(elements) * t

    if e < 1.0:
        E = solve_kepler_elliptic(M, e)
        return a * (math.cos(E) - e), a * math.sqrt(1.0 - e * e) * math.sin(E)

    H = solve_kepler_hyperbolic(M, e)
    aa = abs(a)
    return aa * (e - math.cosh(H)), aa * math.sqrt(e * e - 1.0) * math.sinh(H)


def _to_ecliptic(xo: float, yo: float, elements: OrbitalElements) -> Position3D:
    i = math.radians(elements.inclination)
    O = math.radians(elements.ascending_node)
    w = math.radians(elements.arg_perihelion)

    cO, sO = math.cos(O), math.sin(O)
    cw, sw = math.cos(w), math.sin(w)
    ci, si = math.cos(i), math.sin(i)

    x = (cO * cw - sO * sw * ci) * xo + (-cO * sw - sO * cw * ci) * yo
    y = (sO * cw + cO * sw * ci) * xo + (-sO * sw + cO * cw * ci) * yo
    z = (sw * si) * xo + (cw * si) * yo
    return Position3D(x, y, z)


def solve_position(elements: OrbitalElements, at: datetime) -> Position3D:
    """
    Heliocentric ecliptic position at `at`. Raises NonConvergence when the
    anomaly solver exceeds its iteration budget.
    """
    xo, yo = _orbital_plane(elements, at)
    return _to_ecliptic(xo, yo, elements)


def orbital_position(elements: OrbitalElements, at: datetime) -> Optional[Position3D]:
    try:
        return solve_position(elements, at)
    except NonConvergence as e:
        log.warning("orbital_position: %s (e=%.6f at %s)", e, elements.eccentricity, at)
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Velocities
# ─────────────────────────────────────────────────────────────────────────────
def solve_velocity(
    elements: OrbitalElements,
    at: datetime,
    step_days: float = 0.01,
) -> Tuple[float, float, float]:
    """Central difference of the analytic position, AU/day."""
    h = timedelta(days=step_days)
    p1 = solve_position(elements, at - h)
    p2 = solve_position(elements, at + h)
    k = 1.0 / (2.0 * step_days)
    return ((p2.x - p1.x) * k, (p2.y - p1.y) * k, (p2.z - p1.z) * k)


def vis_viva_speed(elements: OrbitalElements, r: float) -> float:
    """|v| in km/s at heliocentric distance r (AU); 1/a = 0 for a parabola."""
    if r <= 0.0:
        raise ValueError("r must be > 0")
    if elements.is_parabolic:
        inv_a = 0.0
    else:
        inv_a = (1.0 - elements.eccentricity) / elements.perihelion_distance
    v2 = GM_SUN_AU3_D2 * (2.0 / r - inv_a)
    return math.sqrt(max(0.0, v2)) * AU_PER_DAY_TO_KM_S


def propagate_state(
    pos: Position3D,
    vel: Tuple[float, float, float],
    dt_days: float,
) -> Tuple[Position3D, Tuple[float, float, float]]:
    """
    Second-order Taylor step under solar gravity. Good to well under an
    arcsecond over a day at r ~ 1 AU; not meant for multi-day spans.
    """
    r = pos.distance
    if r <= 0.0:
        raise ValueError("r must be > 0")
    k = -GM_SUN_AU3_D2 / r ** 3
    ax, ay, az = k * pos.x, k * pos.y, k * pos.z
    vx, vy, vz = vel
    h = 0.5 * dt_days * dt_days
    moved = Position3D(
        pos.x + vx * dt_days + ax * h,
        pos.y + vy * dt_days + ay * h,
        pos.z + vz * dt_days + az * h,
    )
    return moved, (vx + ax * dt_days, vy + ay * dt_days, vz + az * dt_days)


# ─────────────────────────────────────────────────────────────────────────────
# Element sets
# ─────────────────────────────────────────────────────────────────────────────
@lru_cache(maxsize=1)
def default_elements() -> OrbitalElements:
    return OrbitalElements.from_dict(ATLAS_3I_ELEMENTS_RAW)
