# skycal/core/timescales.py
# -----------------------------------------------------------------------------
# UTC <-> Julian Date helpers (ERFA aligned; no POSIX timestamp math for JDs)
#
# Guarantees:
#   • ERFA chain:
#       UTC (calendar → JD) → TAI → TT      (erfa.dtf2d → utctai → taitt)
#       JD(UTC) → calendar                   (erfa.d2dtf, leap-second aware)
#   • Two-part JD arithmetic preserved; floats returned in API.
#   • Naive datetimes are taken to be UTC; aware ones are converted.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timezone, timedelta
from typing import Tuple
import math

import erfa  # pyERFA

__all__ = [
    "as_utc",
    "split_jd",
    "jd_utc_from_datetime",
    "datetime_from_jd_utc",
    "jd_tt_from_jd_utc",
    "jd_tt_from_datetime",
]

# ───────────────────────────── helpers ─────────────────────────────

def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def split_jd(jd: float) -> Tuple[float, float]:
    d1 = math.floor(jd)
    d2 = jd - d1
    return float(d1), float(d2)

# ───────────────────────────── Public API ─────────────────────────────

def jd_utc_from_datetime(dt: datetime) -> float:
    """JD(UTC) for a datetime via erfa.dtf2d (microsecond resolution)."""
    u = as_utc(dt)
    try:
        utc1, utc2 = erfa.dtf2d(
            "UTC", u.year, u.month, u.day, u.hour, u.minute,
            u.second + u.microsecond * 1e-6,
        )
    except Exception as e:
        raise ValueError(f"ERFA dtf2d failed for {u.isoformat()}: {e}") from e
    return math.fsum((float(utc1), float(utc2)))

def datetime_from_jd_utc(jd_utc: float) -> datetime:
    """Aware UTC datetime for JD(UTC); a leap second (ss == 60) folds onto the next second."""
    d1, d2 = split_jd(jd_utc)
    iy, im, iday, ihmsf = erfa.d2dtf("UTC", 6, d1, d2)
    h = int(ihmsf["h"]); m = int(ihmsf["m"]); s = int(ihmsf["s"]); f = int(ihmsf["f"])
    leap = s == 60
    out = datetime(int(iy), int(im), int(iday), h, m, 59 if leap else s, f, tzinfo=timezone.utc)
    return out + timedelta(seconds=1) if leap else out

def jd_tt_from_jd_utc(jd_utc: float) -> float:
    utc1, utc2 = split_jd(jd_utc)
    tai1, tai2 = erfa.utctai(utc1, utc2)
    tt1, tt2 = erfa.taitt(tai1, tai2)
    return math.fsum((float(tt1), float(tt2)))

def jd_tt_from_datetime(dt: datetime) -> float:
    return jd_tt_from_jd_utc(jd_utc_from_datetime(dt))
