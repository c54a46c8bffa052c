# cometapp/core/timescales.py
# -----------------------------------------------------------------------------
# Instant handling for the orbital code (ERFA aligned)
#
# Public API:
#   utc_now()                 -> aware UTC datetime
#   parse_instant(value)      -> aware UTC datetime (str | datetime | None)
#   julian_date(dt)           -> JD (UTC) via erfa.dtf2d
#   days_since_j2000(dt)      -> days from JD 2451545.0
#   days_between(a, b)        -> (b − a) in days
#   datetime_from_tdb_jd(jd)  -> aware UTC datetime for a TDB Julian date
#
# Notes:
#   • Naive datetimes are taken to be UTC.
#   • UTC is used in place of TT for the low-order Earth model; the ~69 s
#     offset is far below that model's accuracy.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import erfa  # pyERFA

from cometapp.core.constants import JD_J2000, SECONDS_PER_DAY

_J2000_UTC = datetime(2000, 1, 1, 12, tzinfo=timezone.utc)

__all__ = [
    "utc_now",
    "to_utc",
    "parse_instant",
    "julian_date",
    "days_since_j2000",
    "days_between",
    "datetime_from_tdb_jd",
    "iso",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_instant(value: Union[str, datetime, None]) -> datetime:
    """
    Accept an ISO-8601 string (a trailing 'Z' is allowed), a datetime, or None
    (meaning "now"). Raises ValueError on unparseable strings.
    """
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        return to_utc(value)
    s = str(value).strip()
    if not s:
        raise ValueError("empty instant")
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(s))


def julian_date(dt: datetime) -> float:
    """Two-part ERFA calendar→JD, summed to a float."""
    u = to_utc(dt)
    sec = u.second + u.microsecond / 1e6
    d1, d2 = erfa.dtf2d("UTC", u.year, u.month, u.day, u.hour, u.minute, sec)
    return float(d1) + float(d2)


def days_since_j2000(dt: datetime) -> float:
    return julian_date(dt) - JD_J2000


def days_between(a: datetime, b: datetime) -> float:
    return (to_utc(b) - to_utc(a)).total_seconds() / SECONDS_PER_DAY


def datetime_from_tdb_jd(jd: float) -> datetime:
    """
    TDB Julian date (the Horizons vector time scale) to UTC. TDB is taken as
    TT (they differ by under 2 ms); TT→TAI→UTC goes through ERFA so leap
    seconds are applied.
    """
    tai1, tai2 = erfa.tttai(jd, 0.0)
    u1, u2 = erfa.taiutc(tai1, tai2)
    days = (float(u1) - JD_J2000) + float(u2)
    return _J2000_UTC + timedelta(days=days)


def iso(dt: Optional[datetime]) -> str:
    """ISO string with a 'Z' suffix; empty string for None."""
    if dt is None:
        return ""
    return to_utc(dt).isoformat().replace("+00:00", "Z")
