# skycal/core/ephemeris_adapter.py
# -----------------------------------------------------------------------------
# Skyfield position oracle
#
# Highlights
# • Deterministic, testable Config + SkyfieldOracle (one per location)
# • Apparent ecliptic-of-date longitude/latitude, topocentric via wgs84
# • Central-difference speeds on wrapped longitudes (per-body step)
# • JD(TT) from the ERFA chain in core.timescales (no POSIX timestamp math)
# • Eclipse source: lunar via skyfield.eclipselib, solar via New-Moon latitude
# • One kernel per process, loaded under a lock; load errors raise EphemerisError
# -----------------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
import logging
import math
import os
import threading

from skycal.core.constants import SUPPORTED_BODIES, delta_deg
from skycal.core.models import BodyPosition, Eclipse
from skycal.core.timescales import jd_tt_from_datetime

log = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# Constants / environment (bounded; converted into Config defaults)
# ─────────────────────────────────────────────────────────────────────────────
EPHEMERIS_NAME_DEFAULT = "de421"

DE421_JD_MIN = float(os.getenv("SKYCAL_DE421_JD_MIN", "2414992.5"))  # 1899-12-31
DE421_JD_MAX = float(os.getenv("SKYCAL_DE421_JD_MAX", "2469807.5"))  # 2053-10-09
ENFORCE_JD_RANGE = os.getenv("SKYCAL_ENFORCE_JD_RANGE", "1").lower() in ("1", "true", "yes", "on")

# Velocity half-steps (days)
_SPEED_STEP_MAP = {
    "moon": 0.05,     # ±1.2 h
    "mercury": 0.25,  # ±6 h
    "venus": 0.33,    # ±8 h
}
_SPEED_STEP_DEFAULT = float(os.getenv("SKYCAL_SPEED_STEP_DEFAULT", "0.5"))  # ±12 h

_ABS_ZERO_TOL_DEG_ENV = float(os.getenv("SKYCAL_ABS_ZERO_TOL_DEG", "1e-13"))

# Moon |β| at New Moon below which a solar eclipse is flagged.
SOLAR_ECLIPSE_LAT_LIMIT_DEG = float(os.getenv("SKYCAL_SOLAR_ECLIPSE_LAT_LIMIT_DEG", "1.5"))

# ─────────────────────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────────────────────
class EphemerisError(RuntimeError):
    """Categorized error for oracle callers."""
    def __init__(self, stage: str, message: str, **context: Any):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
        self.context = context

# ─────────────────────────────────────────────────────────────────────────────
# Oracle configuration
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Config:
    speed_step_default_d: float = _SPEED_STEP_DEFAULT
    abs_zero_tol_deg: float = _ABS_ZERO_TOL_DEG_ENV
    solar_eclipse_lat_limit_deg: float = SOLAR_ECLIPSE_LAT_LIMIT_DEG

    # JD guard
    enforce_jd_range: bool = ENFORCE_JD_RANGE
    jd_min: float = DE421_JD_MIN
    jd_max: float = DE421_JD_MAX

# ─────────────────────────────────────────────────────────────────────────────
# Global singletons (kernel + timescale are shared by every oracle)
# ─────────────────────────────────────────────────────────────────────────────
_TS = None                 # Skyfield timescale
_MAIN = None               # Main DE421 kernel
_KERNEL_PATH: Optional[str] = None

_LOCK_KERNEL = threading.Lock()

_BODY_KEYS: Dict[str, str] = {
    "sun": "sun",
    "moon": "moon",
    "mercury": "mercury",
    "venus": "venus",
    "mars": "mars",
    "jupiter": "jupiter barycenter",
    "saturn": "saturn barycenter",
    "uranus": "uranus barycenter",
    "neptune": "neptune barycenter",
    "pluto": "pluto barycenter",
}

# ─────────────────────────────────────────────────────────────────────────────
# Math helpers
# ─────────────────────────────────────────────────────────────────────────────
def _wrap360(x: float, *, abs_zero_tol_deg: float) -> float:
    v = float(x) % 360.0
    return 0.0 if math.isclose(v, 0.0, abs_tol=abs_zero_tol_deg) else v

def _atan2deg(y: float, x: float, *, abs_zero_tol_deg: float) -> float:
    return _wrap360(math.degrees(math.atan2(y, x)), abs_zero_tol_deg=abs_zero_tol_deg)

def _speed_step_for(name: str, default: float) -> float:
    return _SPEED_STEP_MAP.get(name, default)

# ─────────────────────────────────────────────────────────────────────────────
# Kernel I/O
# ─────────────────────────────────────────────────────────────────────────────
def _resolve_kernel_path() -> Optional[str]:
    path = os.getenv("SKYCAL_EPHEMERIS")
    if path and os.path.isfile(path):
        return path
    fallback = os.path.join(os.getcwd(), "data", "de421.bsp")
    return fallback if os.path.isfile(fallback) else None

def _looks_like_lfs_pointer(path: str) -> bool:
    try:
        if os.path.getsize(path) <= 512:
            with open(path, "rb") as f:
                head = f.read(128)
            return head.startswith(b"version https://git-lfs.github.com/spec/v1")
    except OSError:
        pass
    return False

def _get_timescale():
    global _TS
    if _TS is not None:
        return _TS
    from skyfield.api import load
    with _LOCK_KERNEL:
        if _TS is None:
            _TS = load.timescale()
    return _TS

def _load_kernel(path: str):
    from skyfield.api import load
    try:
        return load(path)
    except Exception as e:
        raise EphemerisError("kernel", f"Skyfield failed to load kernel: {path}", error=str(e))

def _get_kernel():
    """Thread-safe lazy load of the main kernel."""
    global _MAIN, _KERNEL_PATH
    if _MAIN is not None:
        return _MAIN

    with _LOCK_KERNEL:
        if _MAIN is not None:
            return _MAIN

        path = _resolve_kernel_path()
        if not path:
            raise EphemerisError("kernel", "No local DE421 found (set SKYCAL_EPHEMERIS or place data/de421.bsp)")
        if _looks_like_lfs_pointer(path):
            raise EphemerisError("kernel", f"Kernel looks like a Git LFS pointer: {path}")

        _MAIN = _load_kernel(path)
        _KERNEL_PATH = path
        log.info("Ephemeris kernel loaded: %s", path)

    return _MAIN

def current_kernel_name() -> str:
    if _KERNEL_PATH:
        return os.path.basename(_KERNEL_PATH)
    return EPHEMERIS_NAME_DEFAULT

# ─────────────────────────────────────────────────────────────────────────────
# Skyfield helpers
# ─────────────────────────────────────────────────────────────────────────────
@lru_cache(maxsize=1)
def _get_ecliptic_frame():
    try:
        from skyfield.framelib import ecliptic_frame  # type: ignore
    except Exception as e:
        raise EphemerisError("frame", "Cannot construct ecliptic-of-date frame", error=str(e))
    return ecliptic_frame

def _frame_latlon(geo, ecliptic_frame, *, abs_zero_tol_deg: float) -> Tuple[float, float]:
    """
    Return (lon_deg_mod360, lat_deg) in the ecliptic-of-date frame.

    Fallbacks:
      1) geo.frame_latlon(ecliptic_frame)
      2) geo.frame_xyz(ecliptic_frame)  -> manual lon/lat
    """
    try:
        lat, lon, _ = geo.frame_latlon(ecliptic_frame)
        lon_deg = float(lon.degrees) % 360.0
        lat_deg = float(lat.degrees)
        if math.isfinite(lon_deg) and math.isfinite(lat_deg):
            return lon_deg, lat_deg
    except (AttributeError, ValueError) as e:
        log.debug("frame_latlon failed, trying frame_xyz: %s", e)

    xyz = geo.frame_xyz(ecliptic_frame)
    x, y, z = (float(xyz.au[0]), float(xyz.au[1]), float(xyz.au[2]))
    rho = math.hypot(x, y)
    if math.isfinite(x) and math.isfinite(y) and math.isfinite(z) and (rho > 0.0 or z != 0.0):
        lon = _atan2deg(y, x, abs_zero_tol_deg=abs_zero_tol_deg)
        lat = math.degrees(math.atan2(z, rho)) if rho > 0.0 else (90.0 if z > 0.0 else -90.0)
        return lon % 360.0, float(lat)

    raise EphemerisError("compute", f"Unable to extract ecliptic coordinates from {type(geo)}")

def _observer(main, *, topocentric: bool, latitude: float, longitude: float, elevation_m: float):
    """Earth, or Earth + wgs84 site when topocentric."""
    earth = main["earth"]
    if not topocentric:
        return earth
    from skyfield.api import wgs84
    lon = ((float(longitude) + 180.0) % 360.0) - 180.0
    return earth + wgs84.latlon(float(latitude), lon, elevation_m=float(elevation_m or 0.0))

# ─────────────────────────────────────────────────────────────────────────────
# Oracle
# ─────────────────────────────────────────────────────────────────────────────
class SkyfieldOracle:
    """
    Exact position oracle for one observing site.

    position(body, when) -> BodyPosition with apparent ecliptic-of-date
    longitude/latitude and a central-difference speed in deg/day.
    """

    def __init__(
        self,
        latitude: float,
        longitude: float,
        elevation_m: float = 0.0,
        *,
        topocentric: bool = True,
        cfg: Optional[Config] = None,
    ):
        self.latitude = float(latitude)
        self.longitude = float(longitude)
        self.elevation_m = float(elevation_m)
        self.topocentric = bool(topocentric)
        self.cfg = cfg or Config()
        self._obs = None
        self._lock = threading.Lock()

    # ---- setup ----------------------------------------------------------------
    def _observer(self):
        if self._obs is None:
            main = _get_kernel()
            with self._lock:
                if self._obs is None:
                    self._obs = _observer(
                        main,
                        topocentric=self.topocentric,
                        latitude=self.latitude,
                        longitude=self.longitude,
                        elevation_m=self.elevation_m,
                    )
        return self._obs

    def _body(self, name: str):
        key = _BODY_KEYS.get((name or "").strip().lower())
        if key is None:
            raise EphemerisError("validation", f"Unsupported body '{name}'", supported=list(SUPPORTED_BODIES))
        return _get_kernel()[key]

    def _check_jd_guard(self, jd_tt: float) -> None:
        if self.cfg.enforce_jd_range and not (self.cfg.jd_min <= float(jd_tt) <= self.cfg.jd_max):
            raise EphemerisError("validation", "Julian date outside DE421 nominal span", jd_tt=float(jd_tt))

    def _lonlat_at(self, body, jd_tt: float) -> Tuple[float, float]:
        ts = _get_timescale()
        geo = self._observer().at(ts.tt_jd(jd_tt)).observe(body).apparent()
        return _frame_latlon(geo, _get_ecliptic_frame(), abs_zero_tol_deg=self.cfg.abs_zero_tol_deg)

    # ---- public ---------------------------------------------------------------
    def position(self, body: str, when: datetime) -> BodyPosition:
        jd_tt = jd_tt_from_datetime(when)
        self._check_jd_guard(jd_tt)
        target = self._body(body)
        lon, lat = self._lonlat_at(target, jd_tt)

        h = _speed_step_for(body.lower(), self.cfg.speed_step_default_d)
        lon_p, _ = self._lonlat_at(target, jd_tt + h)
        lon_m, _ = self._lonlat_at(target, jd_tt - h)
        speed = delta_deg(lon_m, lon_p) / (2.0 * h)
        return BodyPosition(longitude=lon, speed=speed, latitude=lat)

    def eclipses(self, year: int) -> List[Eclipse]:
        """Lunar eclipses (eclipselib) plus New Moons close enough to a node for a solar eclipse."""
        from skyfield import almanac, eclipselib

        ts = _get_timescale()
        main = _get_kernel()
        t0 = ts.utc(int(year), 1, 1)
        t1 = ts.utc(int(year) + 1, 1, 1)
        out: List[Eclipse] = []

        times, kinds, _details = eclipselib.lunar_eclipses(t0, t1, main)
        for t, k in zip(times, kinds):
            out.append(Eclipse(
                utc=t.utc_datetime().astimezone(timezone.utc),
                eclipse_type="lunar",
                detail=eclipselib.LUNAR_ECLIPSES[int(k)],
            ))

        earth, moon = main["earth"], main["moon"]
        ef = _get_ecliptic_frame()
        times, phases = almanac.find_discrete(t0, t1, almanac.moon_phases(main))
        for t, ph in zip(times, phases):
            if int(ph) != 0:
                continue
            _lon, beta = _frame_latlon(earth.at(t).observe(moon).apparent(), ef,
                                       abs_zero_tol_deg=self.cfg.abs_zero_tol_deg)
            if abs(beta) <= self.cfg.solar_eclipse_lat_limit_deg:
                out.append(Eclipse(
                    utc=t.utc_datetime().astimezone(timezone.utc),
                    eclipse_type="solar",
                    detail=f"moon_beta={beta:.3f}",
                ))

        out.sort(key=lambda e: e.utc)
        return out

    def ephemeris_diagnostics(self) -> Dict[str, Any]:
        return ephemeris_diagnostics(self.cfg) | {
            "site": {
                "latitude": self.latitude,
                "longitude": self.longitude,
                "elevation_m": self.elevation_m,
                "topocentric": self.topocentric,
            },
        }

# ─────────────────────────────────────────────────────────────────────────────
# Diagnostics
# ─────────────────────────────────────────────────────────────────────────────
def ephemeris_diagnostics(cfg: Optional[Config] = None) -> Dict[str, Any]:
    cfg = cfg or Config()
    path = _resolve_kernel_path()
    resolved: Dict[str, str] = {}
    missing: List[str] = []
    error: Optional[str] = None
    try:
        main = _get_kernel()
        for name, key in _BODY_KEYS.items():
            try:
                main[key]
                resolved[name] = key
            except KeyError:
                missing.append(name)
    except EphemerisError as e:
        error = str(e)
        missing = list(_BODY_KEYS)

    return {
        "kernel": current_kernel_name(),
        "kernel_path": path,
        "file_size_bytes": os.path.getsize(path) if path else None,
        "resolved": resolved,
        "missing": missing,
        "error": error,
        "jd_guard": {"enforced": cfg.enforce_jd_range, "min": cfg.jd_min, "max": cfg.jd_max},
    }


__all__ = [
    "Config",
    "EphemerisError",
    "SkyfieldOracle",
    "current_kernel_name",
    "ephemeris_diagnostics",
]
