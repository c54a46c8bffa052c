# tests/test_activity.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from cometapp.core.activity import (
    analyze_trend,
    classify,
    classify_observations,
    confidence_level,
    daily_medians,
    expected_magnitude,
    latest_day_median,
    level_for_delta,
    light_curve,
)
from cometapp.core.models import ActivityLevel, Observation

D1 = datetime(2025, 11, 14, 20, 0, tzinfo=timezone.utc)
D2 = datetime(2025, 11, 15, 3, 0, tzinfo=timezone.utc)

_RANK = {
    ActivityLevel.LOW: 0,
    ActivityLevel.MODERATE: 1,
    ActivityLevel.HIGH: 2,
    ActivityLevel.EXTREME: 3,
}


def _ob(when: datetime, mag) -> Observation:
    return Observation(date=when, magnitude=mag)


# ─────────────────────────────────────────────────────────────────────────────
# Thresholds
# ─────────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("delta,level", [
    (-3.0, ActivityLevel.LOW),
    (0.49, ActivityLevel.LOW),
    (0.5, ActivityLevel.LOW),
    (0.51, ActivityLevel.MODERATE),
    (0.99, ActivityLevel.MODERATE),
    (1.0, ActivityLevel.MODERATE),
    (1.01, ActivityLevel.HIGH),
    (1.99, ActivityLevel.HIGH),
    (2.0, ActivityLevel.HIGH),
    (2.01, ActivityLevel.EXTREME),
])
def test_level_boundaries(delta, level) -> None:
    assert level_for_delta(delta) is level


@pytest.mark.parametrize("mag,level", [
    (15.0, ActivityLevel.LOW),        # delta 0.5 exactly at r = 1
    (14.5, ActivityLevel.MODERATE),   # 1.0
    (13.5, ActivityLevel.HIGH),       # 2.0
    (13.4, ActivityLevel.EXTREME),
])
def test_classify_at_one_au(mag, level) -> None:
    res = classify(mag, 1.0)
    assert res.expected_magnitude == 15.5
    assert res.level is level


@given(
    a=st.floats(-10.0, 10.0, allow_nan=False),
    b=st.floats(-10.0, 10.0, allow_nan=False),
)
def test_level_is_monotonic_in_delta(a, b) -> None:
    lo, hi = min(a, b), max(a, b)
    assert _RANK[level_for_delta(lo)] <= _RANK[level_for_delta(hi)]


def test_level_uses_unrounded_delta() -> None:
    # delta 0.54 is reported as 0.5 but classified above the LOW ceiling
    res = classify(14.96, 1.0)
    assert res.brightness_delta == 0.5
    assert res.level is ActivityLevel.MODERATE


def test_3i_near_perihelion() -> None:
    res = classify(12.3, 1.356320)
    assert res.level is ActivityLevel.EXTREME
    assert res.expected_magnitude == pytest.approx(round(expected_magnitude(1.356320), 1))
    assert res.brightness_delta == pytest.approx(4.4, abs=0.05)
    assert res.current_magnitude == 12.3
    assert res.heliocentric_distance == 1.356320


@pytest.mark.parametrize("mag,r", [
    (None, 1.0),
    (float("nan"), 1.0),
    (float("inf"), 1.0),
    (12.0, None),
    (12.0, 0.0),
    (12.0, -1.0),
    (True, 1.0),
])
def test_insufficient_inputs(mag, r) -> None:
    res = classify(mag, r)
    assert res.level is ActivityLevel.INSUFFICIENT_DATA
    d = res.to_dict()
    assert d["level"] == "INSUFFICIENT_DATA"
    assert d["current_magnitude"] == 0.0
    assert d["expected_magnitude"] == 0.0
    assert d["brightness_delta"] == 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Observation lists
# ─────────────────────────────────────────────────────────────────────────────
def test_empty_observations_are_insufficient() -> None:
    assert classify_observations([], 1.3).level is ActivityLevel.INSUFFICIENT_DATA


def test_missing_magnitude_is_insufficient() -> None:
    obs = [_ob(D2, 11.0), _ob(D2, None)]
    assert classify_observations(obs, 1.3).level is ActivityLevel.INSUFFICIENT_DATA


def test_latest_day_median_drives_classification() -> None:
    obs = [_ob(D1, 9.0), _ob(D1, 9.2),
           _ob(D2, 10.0), _ob(D2 + timedelta(hours=1), 11.0), _ob(D2 + timedelta(hours=2), 10.2)]
    assert latest_day_median(obs) == 10.2
    res = classify_observations(obs, 1.0)
    assert res.current_magnitude == 10.2
    assert res.level is ActivityLevel.EXTREME


def test_latest_day_median_ignores_non_finite() -> None:
    assert latest_day_median([_ob(D1, float("nan"))]) is None
    assert latest_day_median([]) is None


def test_daily_medians_group_by_utc_day() -> None:
    plus_two = timezone(timedelta(hours=2))
    late_local = datetime(2025, 11, 15, 1, 0, tzinfo=plus_two)   # 14 Nov 23:00 UTC
    meds = daily_medians([_ob(late_local, 9.0), _ob(D1, 9.4), _ob(D2, 10.0)])
    assert [d.isoformat() for d in meds] == ["2025-11-14", "2025-11-15"]
    assert meds[D1.date()] == pytest.approx(9.2)


def test_light_curve_oldest_first() -> None:
    curve = light_curve([_ob(D2, 10.0), _ob(D2, 10.6), _ob(D1, 9.3)])
    assert curve == [
        {"date": "2025-11-14", "magnitude": 9.3, "spread": 0.0, "count": 1},
        {"date": "2025-11-15", "magnitude": 10.3, "spread": 0.6, "count": 2},
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Trend
# ─────────────────────────────────────────────────────────────────────────────
def _curve(mags, end: str = "2025-11-15"):
    last = datetime.fromisoformat(end).date()
    n = len(mags)
    return [{"date": (last - timedelta(days=n - 1 - i)).isoformat(), "magnitude": m}
            for i, m in enumerate(mags)]


def test_trend_brightening() -> None:
    res = analyze_trend(_curve([12.0, 11.8, 11.6, 11.4, 11.2]), 30, now=D2)
    assert res["trend"] == "brightening"
    assert res["rate"] == pytest.approx(-0.2)
    assert res["r2"] == pytest.approx(1.0)
    assert res["confidence"] == 1.0
    assert res["points"] == 5
    assert res["last_magnitude"] == 11.2


def test_trend_dimming_and_stable() -> None:
    assert analyze_trend(_curve([10.0, 10.5, 11.0]), 30, now=D2)["trend"] == "dimming"
    flat = analyze_trend(_curve([10.0, 10.0, 10.0, 10.0]), 30, now=D2)
    assert flat["trend"] == "stable"
    assert flat["r2"] == 0.0


def test_trend_needs_three_days() -> None:
    res = analyze_trend(_curve([12.0, 11.0]), 30, now=D2)
    assert res == {"trend": "stable", "rate": 0.0, "r2": 0.0, "confidence": 0.0,
                   "period_days": 30, "points": 2, "last_magnitude": 11.0}
    assert analyze_trend([], 30, now=D2)["last_magnitude"] is None


def test_trend_window_drops_old_and_unusable_rows() -> None:
    rows = _curve([9.0, 9.0, 9.0], end="2025-09-01") + _curve([12.0, 11.8, 11.6])
    rows.append({"date": "2025-11-15", "magnitude": None})
    res = analyze_trend(rows, 30, now=D2)
    assert res["points"] == 3
    assert res["trend"] == "brightening"


@pytest.mark.parametrize("c,level", [(0.9, "high"), (0.71, "high"), (0.7, "medium"),
                                     (0.5, "medium"), (0.4, "low"), (0.0, "low")])
def test_confidence_level(c, level) -> None:
    assert confidence_level(c) == level
