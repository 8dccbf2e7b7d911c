# skycal/core/constants.py
# -*- coding: utf-8 -*-
"""
SkyCal: core constants & small helpers

Purpose
-------
Single source of truth for:
- tracked body sets & the zodiac sign table
- aspect angles and the detection orb
- year-sampling defaults (interval, default location)
- tiny angle helpers (wrap/Δ/separation/sign lookup/degree formatting)

Design
------
- Pure-Python, no external dependencies.
- Safe to import from any core module.
- Functions are pure; constants are immutable by convention.
"""

from __future__ import annotations
from typing import Dict, Tuple
import math

__all__ = [
    # bodies & signs
    "DEFAULT_BODIES", "SUPPORTED_BODIES", "SIGNS",
    # aspects
    "ASPECT_ANGLES_DEG", "DEFAULT_ORB_DEG",
    # families
    "EVENT_FAMILIES",
    # sampling & location
    "DEFAULT_SAMPLE_INTERVAL_H", "DEFAULT_LATITUDE", "DEFAULT_LONGITUDE",
    # helpers
    "wrap_deg", "delta_deg", "abs_sep_deg", "sign_index", "sign_name",
    "degree_in_sign", "format_degree",
]

# ── canonical bodies ─────────────────────────────────────────────────────────
# Moon excluded; lunations come from core.lunations.
DEFAULT_BODIES: Tuple[str, ...] = (
    "sun", "mercury", "venus", "mars",
    "jupiter", "saturn", "uranus", "neptune", "pluto",
)

SUPPORTED_BODIES: Tuple[str, ...] = ("sun", "moon") + DEFAULT_BODIES[1:]

SIGNS: Tuple[str, ...] = (
    "Aries", "Taurus", "Gemini", "Cancer", "Leo", "Virgo",
    "Libra", "Scorpio", "Sagittarius", "Capricorn", "Aquarius", "Pisces",
)

# ── aspect geometry ──────────────────────────────────────────────────────────
ASPECT_ANGLES_DEG: Dict[str, float] = {
    "conjunct": 0.0,
    "sextile": 60.0,
    "square": 90.0,
    "trine": 120.0,
    "opposition": 180.0,
}

# A pair moving more than 2 x orb between samples can pass exact unseen.
DEFAULT_ORB_DEG: float = 0.5

EVENT_FAMILIES: Tuple[str, ...] = ("ingress", "station", "aspect")

# ── sampling defaults ─────────────────────────────────────────────────────────
DEFAULT_SAMPLE_INTERVAL_H: float = 12.0
DEFAULT_LATITUDE: float = 40.7128    # New York
DEFAULT_LONGITUDE: float = -74.006

# ── tiny angle helpers (no external imports) ──────────────────────────────────
def wrap_deg(x: float) -> float:
    """
    Wrap any angle to [0, 360).
    """
    x = math.fmod(float(x), 360.0)
    x = x + 360.0 if x < 0.0 else x
    return 0.0 if x >= 360.0 else x

def delta_deg(a: float, b: float) -> float:
    """
    Shortest signed difference b - a in degrees, range (-180, 180].
    Handles the 0°/360° seam, e.g. delta_deg(359.8, 0.3) ~= 0.5.
    """
    d = wrap_deg(b) - wrap_deg(a)
    if d > 180.0:
        d -= 360.0
    elif d <= -180.0:
        d += 360.0
    return d

def abs_sep_deg(a: float, b: float) -> float:
    """
    Absolute smallest separation between angles a and b (deg, 0..180].
    """
    return abs(delta_deg(a, b))

def sign_index(lon_deg: float) -> int:
    return min(11, int(wrap_deg(lon_deg) // 30.0))

def sign_name(lon_deg: float) -> str:
    return SIGNS[sign_index(lon_deg)]

def degree_in_sign(lon_deg: float) -> float:
    return wrap_deg(lon_deg) - 30.0 * sign_index(lon_deg)

def format_degree(lon_deg: float) -> str:
    """
    Degree within sign as D°M'S" with each field truncated, e.g. 15.5 -> 15°30'0".
    """
    deg = degree_in_sign(lon_deg)
    minutes = (deg % 1.0) * 60.0
    seconds = (minutes % 1.0) * 60.0
    return f"{math.floor(deg)}°{math.floor(minutes)}'{math.floor(seconds)}\""
