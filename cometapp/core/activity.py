# cometapp/core/activity.py
# -----------------------------------------------------------------------------
# Activity classification from brightness residuals
#
#   expected = H + 5·log10(Δ) + n·log10(r),  H = 15.5, n = 4.0
#
# Δ (geocentric distance) is approximated by r in the first term. This is
# the historical dashboard formula and is kept for comparability of the
# published activity levels.
#
#   delta = expected − observed     (positive ⇒ brighter than predicted)
#   ≤ 0.5 LOW | ≤ 1.0 MODERATE | ≤ 2.0 HIGH | > 2.0 EXTREME
#
# The level is decided on the unrounded delta; the reported delta and
# expected magnitude are rounded to 0.1 mag.
# -----------------------------------------------------------------------------
from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, timedelta
from statistics import median
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import math

from cometapp.core.constants import ABSOLUTE_MAGNITUDE_H, ACTIVITY_SLOPE_N
from cometapp.core.models import ActivityLevel, ActivityResult, Observation
from cometapp.core.timescales import to_utc, utc_now

__all__ = [
    "expected_magnitude",
    "level_for_delta",
    "classify",
    "classify_observations",
    "daily_medians",
    "latest_day_median",
    "light_curve",
    "analyze_trend",
    "confidence_level",
    "INSUFFICIENT",
]

INSUFFICIENT = ActivityResult(level=ActivityLevel.INSUFFICIENT_DATA)

_THRESHOLDS = (
    (0.5, ActivityLevel.LOW),
    (1.0, ActivityLevel.MODERATE),
    (2.0, ActivityLevel.HIGH),
)


def _finite(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def expected_magnitude(r: float) -> float:
    log_r = math.log10(r)
    return ABSOLUTE_MAGNITUDE_H + 5.0 * log_r + ACTIVITY_SLOPE_N * log_r


def level_for_delta(delta: float) -> ActivityLevel:
    for upper, level in _THRESHOLDS:
        if delta <= upper:
            return level
    return ActivityLevel.EXTREME


def classify(
    current_magnitude: Optional[float],
    heliocentric_distance: Optional[float],
) -> ActivityResult:
    if not _finite(current_magnitude):
        return INSUFFICIENT
    if not _finite(heliocentric_distance) or heliocentric_distance <= 0.0:
        return INSUFFICIENT

    expected = expected_magnitude(heliocentric_distance)
    delta = expected - current_magnitude
    return ActivityResult(
        level=level_for_delta(delta),
        current_magnitude=float(current_magnitude),
        expected_magnitude=round(expected, 1),
        brightness_delta=round(delta, 1),
        heliocentric_distance=float(heliocentric_distance),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Observation lists
# ─────────────────────────────────────────────────────────────────────────────
def _by_day(observations: Iterable[Observation]) -> "OrderedDict[date, List[float]]":
    days: Dict[date, List[float]] = {}
    for ob in observations:
        if not _finite(ob.magnitude):
            continue
        days.setdefault(to_utc(ob.date).date(), []).append(float(ob.magnitude))
    return OrderedDict(sorted(days.items()))


def daily_medians(observations: Iterable[Observation]) -> "OrderedDict[date, float]":
    return OrderedDict((d, median(mags)) for d, mags in _by_day(observations).items())


def latest_day_median(observations: Iterable[Observation]) -> Optional[float]:
    days = _by_day(observations)
    if not days:
        return None
    return median(next(reversed(days.values())))


def light_curve(observations: Iterable[Observation]) -> List[Dict[str, Any]]:
    """Per-UTC-day median, spread (max − min) and count, oldest first."""
    return [
        {
            "date": d.isoformat(),
            "magnitude": round(median(mags), 2),
            "spread": round(max(mags) - min(mags), 2),
            "count": len(mags),
        }
        for d, mags in _by_day(observations).items()
    ]


def classify_observations(
    observations: Sequence[Observation],
    heliocentric_distance: Optional[float],
) -> ActivityResult:
    """
    Empty input or any observation without a magnitude yields
    INSUFFICIENT_DATA; otherwise the latest day's median is classified.
    """
    if not observations:
        return INSUFFICIENT
    if any(ob.magnitude is None for ob in observations):
        return INSUFFICIENT
    return classify(latest_day_median(observations), heliocentric_distance)


# ─────────────────────────────────────────────────────────────────────────────
# Light-curve trend
# ─────────────────────────────────────────────────────────────────────────────
STABLE_SLOPE = 0.01     # mag/day


def analyze_trend(
    points: Iterable[Mapping[str, Any]],
    days: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Least-squares line through light-curve rows ({"date", "magnitude"}) of
    the last `days` days. `rate` is mag/day; negative means brightening.
    Fewer than three usable days, or all on one day, reads as stable.
    """
    cutoff = (to_utc(now) if now else utc_now()).date() - timedelta(days=days)
    pts = []
    for p in points:
        d = date.fromisoformat(str(p["date"])[:10])
        m = p.get("magnitude")
        if d >= cutoff and _finite(m):
            pts.append((d, float(m)))
    pts.sort()

    flat: Dict[str, Any] = {
        "trend": "stable", "rate": 0.0, "r2": 0.0, "confidence": 0.0,
        "period_days": days, "points": len(pts), "last_magnitude": pts[-1][1] if pts else None,
    }
    if len(pts) < 3:
        return flat

    d0 = pts[0][0]
    xs = [float((d - d0).days) for d, _ in pts]
    ys = [m for _, m in pts]
    n = len(pts)
    sx, sy = sum(xs), sum(ys)
    sxy = sum(x * y for x, y in zip(xs, ys))
    sxx = sum(x * x for x in xs)
    den = n * sxx - sx * sx
    if den == 0.0:
        return flat

    slope = (n * sxy - sx * sy) / den
    intercept = (sy - slope * sx) / n
    mean = sy / n
    ss_tot = sum((y - mean) ** 2 for y in ys)
    ss_res = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, ys))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0.0 else 0.0

    if abs(slope) < STABLE_SLOPE:
        trend = "stable"
    elif slope < 0.0:
        trend = "brightening"
    else:
        trend = "dimming"
    return {
        **flat,
        "trend": trend,
        "rate": round(slope, 4),
        "r2": round(r2, 4),
        "confidence": round(min(1.0, max(0.0, r2)), 3),
    }


def confidence_level(confidence: float) -> str:
    if confidence > 0.7:
        return "high"
    if confidence > 0.4:
        return "medium"
    return "low"
