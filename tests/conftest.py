# tests/conftest.py
from __future__ import annotations

"""
Pytest configuration for the comet backend suite.

- Registers Hypothesis profiles for local dev and CI.
- Freezes the process TZ to UTC.
- Shared fakes: a settable clock and scripted provider clients, so the
  aggregation engine can be driven without a network.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
from hypothesis import settings, HealthCheck

from cometapp.core.models import EquatorialPosition, Observation, Position3D
from cometapp.core.sources import EphemerisData, LiveCoordinates, ProviderUnavailable


# ──────────────────────────────────────────────────────────────────────────────
# Hypothesis profiles
# ──────────────────────────────────────────────────────────────────────────────
settings.register_profile(
    "dev",
    settings(
        deadline=None,
        max_examples=60,
        suppress_health_check=[HealthCheck.too_slow],
    ),
)
settings.register_profile(
    "ci",
    settings(
        deadline=None,
        max_examples=120,
        suppress_health_check=[HealthCheck.too_slow],
    ),
)

_profile = (
    "ci"
    if (os.getenv("CI") or os.getenv("GITHUB_ACTIONS"))
    else os.getenv("HYPOTHESIS_PROFILE", "dev")
)
settings.load_profile(_profile)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "slow: mark test as slow")
    config.addinivalue_line("filterwarnings", "ignore::DeprecationWarning")


def pytest_report_header(config: pytest.Config) -> str:
    return f"Hypothesis profile: '{_profile}'"


# ──────────────────────────────────────────────────────────────────────────────
# Global fixtures
# ──────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session", autouse=True)
def freeze_tz_env():
    prev = os.environ.get("TZ")
    os.environ["TZ"] = "UTC"
    try:
        yield
    finally:
        if prev is None:
            os.environ.pop("TZ", None)
        else:
            os.environ["TZ"] = prev


@pytest.fixture(autouse=True)
def no_outbound_rate_limit(monkeypatch):
    monkeypatch.setenv("COMET_RL_DISABLE", "1")


@pytest.fixture(scope="session")
def ensure_erfa():
    import erfa
    assert hasattr(erfa, "dtf2d"), "ERFA.dtf2d not available"
    return erfa


# ──────────────────────────────────────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────────────────────────────────────
NOW = datetime(2025, 11, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Seconds clock for the cache store; advance() moves it forward."""
    def __init__(self, start: float = 1_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def make_observations(day: datetime = NOW, mags=(10.4, 10.6, 10.5)) -> List[Observation]:
    return [
        Observation(date=day - timedelta(hours=i), magnitude=m, observer_id=f"obs{i}")
        for i, m in enumerate(mags)
    ]


def make_ephemeris(at: datetime = NOW) -> EphemerisData:
    pos = Position3D(-1.2, 1.4, 0.05)
    return EphemerisData(
        position=pos,
        velocity=(-0.02, 0.03, 0.001),
        equatorial=EquatorialPosition(ra=180.0, dec=1.0, heliocentric_distance=pos.distance,
                                      geocentric_distance=2.1),
        epoch=at,
    )


class FakeProvider:
    """
    Scripted provider: mode is "ok", "fail" or "timeout" (sleeps past its own
    timeout_s). Counts calls so tests can assert on fan-out.
    """
    def __init__(self, name: str, mode: str = "ok", data: Any = None, timeout_s: float = 0.2):
        self.name = name
        self.mode = mode
        self.data = data
        self.timeout_s = timeout_s
        self.calls = 0

    async def _run(self) -> Any:
        self.calls += 1
        await asyncio.sleep(0)
        if self.mode == "fail":
            raise ProviderUnavailable(self.name, "http 503")
        if self.mode == "timeout":
            await asyncio.sleep(self.timeout_s * 20)
        return self.data

    async def fetch_observations(self, designation: Optional[str] = None):
        return await self._run()

    async def fetch_ephemeris(self, at: Optional[datetime] = None):
        return await self._run()

    async def fetch_live_coordinates(self):
        return await self._run()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def providers():
    """(cobs, jpl, skylive) all succeeding with canned data."""
    return (
        FakeProvider("cobs", data=make_observations()),
        FakeProvider("jpl_horizons", data=make_ephemeris()),
        FakeProvider("theskylive", data=LiveCoordinates(ra=180.0005, dec=1.0003,
                                                        geocentric_distance=2.1, magnitude=10.6)),
    )
