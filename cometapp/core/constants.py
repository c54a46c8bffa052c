# -*- coding: utf-8 -*-
"""
cometapp: core constants & small helpers

Purpose
-------
Single source of truth for:
- physical constants (GM☉, AU, day length)
- frame constants (J2000 obliquity, J2000 epoch JD)
- the tracked body (3I/ATLAS) and its brightness-model parameters
- companion comets shown next to it
- solver budgets (Newton iteration cap / tolerance)
- tiny angle helpers (wrap / clamp)

Design
------
- Pure-Python, no external dependencies.
- Safe to import from any core module.
- Functions are pure; constants are immutable by convention.

Notes
-----
- Orbital elements for 3I/ATLAS are the MPEC 2025-SI6 solution; the
  perihelion distance (1.356320 AU) is the value the dashboard publishes.
"""

from __future__ import annotations
from typing import Dict, Tuple
import math

__all__ = [
    # physics
    "GM_SUN_AU3_D2", "AU_KM", "SECONDS_PER_DAY", "AU_PER_DAY_TO_KM_S",
    # frames / time
    "OBLIQUITY_J2000_DEG", "JD_J2000",
    # tracked body
    "TARGET_NAME", "TARGET_DESIGNATION", "TARGET_COBS_DESIGNATION",
    "ATLAS_3I_ELEMENTS_RAW", "ABSOLUTE_MAGNITUDE_H", "ACTIVITY_SLOPE_N",
    "COMPANION_COMETS", "COBS_DESIGNATION_ALIASES",
    # solver
    "KEPLER_MAX_ITER", "KEPLER_TOL_RAD", "PARABOLIC_EPS",
    # datasets
    "DATASET_COMET_DATA", "DATASET_COBS", "DATASET_SOLAR_SYSTEM", "DATASET_TREND", "DATASET_OBSERVERS",
    "PROVIDER_COBS", "PROVIDER_JPL", "PROVIDER_SKYLIVE", "PROVIDERS",
    # helpers
    "wrap_deg", "clamp",
]

# ── physics ──────────────────────────────────────────────────────────────────
GM_SUN_AU3_D2: float = 2.9591220828559115e-04   # k² in AU³/day²
AU_KM: float = 149_597_870.7
SECONDS_PER_DAY: float = 86_400.0
AU_PER_DAY_TO_KM_S: float = AU_KM / SECONDS_PER_DAY

# ── frames / time ────────────────────────────────────────────────────────────
OBLIQUITY_J2000_DEG: float = 23.4392811
JD_J2000: float = 2451545.0

# ── tracked body ─────────────────────────────────────────────────────────────
TARGET_NAME: str = "3I/ATLAS"
TARGET_DESIGNATION: str = "C/2025 N1"
TARGET_COBS_DESIGNATION: str = "3I"

# MPEC 2025-SI6 (epoch 2025 Nov 21). Angles in degrees, q in AU.
ATLAS_3I_ELEMENTS_RAW: Dict[str, object] = {
    "eccentricity": 6.138559,
    "perihelion_distance": 1.356320,
    "inclination": 175.1131,
    "ascending_node": 322.1574,
    "arg_perihelion": 128.0127,
    "perihelion_time": "2025-10-29T11:35:31+00:00",
}

# Brightness model m = H + 5·log10(Δ) + n·log10(r) with Δ ≈ r (see activity.py).
ABSOLUTE_MAGNITUDE_H: float = 15.5
ACTIVITY_SLOPE_N: float = 4.0

# Companions: name → (designation, COBS id, raw elements or None).
# Elements are the published osculating solutions near each perihelion.
COMPANION_COMETS: Dict[str, Dict[str, object]] = {
    "halley": {
        "name": "Halley",
        "designation": "1P/Halley",
        "cobs_designation": "1P",
        "elements": {
            "eccentricity": 0.96714,
            "perihelion_distance": 0.58598,
            "inclination": 162.2627,
            "ascending_node": 58.42008,
            "arg_perihelion": 111.3325,
            "perihelion_time": "1986-02-09T11:00:00+00:00",
        },
    },
    "tsuchinshan": {
        "name": "Tsuchinshan-ATLAS",
        "designation": "C/2023 A3",
        "cobs_designation": "C/2023 A3",
        "elements": {
            "eccentricity": 1.000119,
            "perihelion_distance": 0.391410,
            "inclination": 139.1112,
            "ascending_node": 21.5597,
            "arg_perihelion": 308.4924,
            "perihelion_time": "2024-09-27T17:54:00+00:00",
        },
    },
    "swan": {
        "name": "SWAN",
        "designation": "C/2025 R2",
        "cobs_designation": "C/2025 R2",
        "elements": None,
    },
    "lemmon": {
        "name": "Lemmon",
        "designation": "C/2025 A6",
        "cobs_designation": "C/2025 A6",
        "elements": None,
    },
    "atlas-k1": {
        "name": "ATLAS",
        "designation": "C/2025 K1",
        "cobs_designation": "C/2025 K1",
        "elements": None,
    },
}

# User-facing names → COBS query designation.
COBS_DESIGNATION_ALIASES: Dict[str, str] = {
    "3I/ATLAS": "3I",
    "C/2025 N1": "3I",
    "C/2025 R2 (SWAN)": "C/2025 R2",
    "C/2025 A6 (Lemmon)": "C/2025 A6",
    "C/2025 K1 (ATLAS)": "C/2025 K1",
}

# ── solver budgets ───────────────────────────────────────────────────────────
KEPLER_MAX_ITER: int = 50
KEPLER_TOL_RAD: float = 1e-8
PARABOLIC_EPS: float = 1e-9    # |e − 1| below this is treated as a parabola

# ── dataset keys / provider names ────────────────────────────────────────────
DATASET_COMET_DATA: str = "comet-data"
DATASET_COBS: str = "cobs"
DATASET_SOLAR_SYSTEM: str = "solar-system-position"
DATASET_TREND: str = "trend-analysis"
DATASET_OBSERVERS: str = "observers"

PROVIDER_COBS: str = "cobs"
PROVIDER_JPL: str = "jpl_horizons"
PROVIDER_SKYLIVE: str = "theskylive"
PROVIDERS: Tuple[str, ...] = (PROVIDER_COBS, PROVIDER_JPL, PROVIDER_SKYLIVE)


# ── tiny helpers (no external imports) ───────────────────────────────────────
def wrap_deg(x: float) -> float:
    """
    Wrap any angle to [0, 360).
    """
    x = math.fmod(float(x), 360.0)
    x = x + 360.0 if x < 0.0 else x
    return 0.0 if x >= 360.0 else x


def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x
