# skycal/utils/config.py
import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from skycal.core.constants import (
    DEFAULT_BODIES,
    DEFAULT_LATITUDE,
    DEFAULT_LONGITUDE,
    DEFAULT_ORB_DEG,
    DEFAULT_SAMPLE_INTERVAL_H,
    EVENT_FAMILIES,
    SUPPORTED_BODIES,
)

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "config",
    "defaults.yaml",
)


class AttrDict(dict):
    """Dict that also supports attribute access: cfg.cache and cfg['cache'] both work."""
    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as e:
            raise AttributeError(item) from e
    def __setattr__(self, key, value):
        self[key] = value

def _to_attr(obj):
    if isinstance(obj, dict):
        return AttrDict({k: _to_attr(v) for k, v in obj.items()})
    if isinstance(obj, list):
        return [_to_attr(x) for x in obj]
    return obj

def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)

def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)

def _env_list(name: str) -> Optional[list]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return [x.strip().lower() for x in raw.split(",") if x.strip()]

# (section, key, env var, parser)
_ENV_OVERRIDES = (
    (None, "sample_interval_hours", "SKYCAL_SAMPLE_INTERVAL_H", _env_float),
    (None, "aspect_orb_deg", "SKYCAL_ASPECT_ORB_DEG", _env_float),
    ("cache", "ttl_seconds", "SKYCAL_CACHE_TTL_S", _env_float),
    ("cache", "max_entries", "SKYCAL_CACHE_MAX_ENTRIES", _env_int),
    ("refine", "tolerance_seconds", "SKYCAL_REFINE_TOLERANCE_S", _env_float),
    ("refine", "max_iterations", "SKYCAL_REFINE_MAX_ITER", _env_int),
    ("refine", "max_workers", "SKYCAL_REFINE_WORKERS", _env_int),
    ("lunations", "step_hours", "SKYCAL_LUNATION_STEP_H", _env_float),
    (None, "bodies", "SKYCAL_BODIES", _env_list),
    (None, "families", "SKYCAL_FAMILIES", _env_list),
)

def load_config(path: Optional[str] = None):
    """
    Load YAML config from `path` (default: SKYCAL_CONFIG, then config/defaults.yaml)
    and apply env overrides:
      - SKYCAL_SAMPLE_INTERVAL_H, SKYCAL_ASPECT_ORB_DEG
      - SKYCAL_CACHE_TTL_S, SKYCAL_CACHE_MAX_ENTRIES, SKYCAL_CACHE_EVICTION
      - SKYCAL_REFINE_TOLERANCE_S, SKYCAL_REFINE_MAX_ITER, SKYCAL_REFINE_WORKERS
      - SKYCAL_LUNATION_STEP_H, SKYCAL_LUNATIONS ("0" disables)
      - SKYCAL_BODIES, SKYCAL_FAMILIES (comma separated)
    Returns an AttrDict for convenient access.
    """
    path = path or os.getenv("SKYCAL_CONFIG") or DEFAULT_CONFIG_PATH
    data: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    for section, key, env, parse in _ENV_OVERRIDES:
        value = parse(env)
        if value is None:
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value

    eviction = os.getenv("SKYCAL_CACHE_EVICTION")
    if eviction:
        data.setdefault("cache", {})["eviction"] = eviction.strip().lower()

    lunations_flag = os.getenv("SKYCAL_LUNATIONS")
    if lunations_flag is not None and lunations_flag.strip() != "":
        data.setdefault("lunations", {})["enabled"] = lunations_flag.lower() in ("1", "true", "yes", "on")

    return _to_attr(data)


@dataclass(frozen=True)
class EngineSettings:
    sample_interval_hours: float = DEFAULT_SAMPLE_INTERVAL_H
    aspect_orb_deg: float = DEFAULT_ORB_DEG
    cache_ttl_seconds: float = 3600.0
    cache_max_entries: int = 5
    cache_eviction: str = "expire"
    refine_tolerance_seconds: float = 60.0
    refine_max_iterations: int = 20
    refine_max_workers: int = 4
    lunations_enabled: bool = True
    lunation_step_hours: float = 6.0
    bodies: Tuple[str, ...] = DEFAULT_BODIES
    families: FrozenSet[str] = frozenset(EVENT_FAMILIES)
    default_latitude: float = DEFAULT_LATITUDE
    default_longitude: float = DEFAULT_LONGITUDE

    def __post_init__(self) -> None:
        if self.sample_interval_hours <= 0:
            raise ValueError("sample_interval_hours must be > 0")
        if self.aspect_orb_deg <= 0:
            raise ValueError("aspect_orb_deg must be > 0")
        unknown = set(self.bodies) - set(SUPPORTED_BODIES)
        if unknown:
            raise ValueError(f"unsupported bodies: {sorted(unknown)}")
        bad = set(self.families) - set(EVENT_FAMILIES)
        if bad:
            raise ValueError(f"unknown event families: {sorted(bad)}")

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "EngineSettings":
        cfg = _to_attr(cfg or {})
        cache = cfg.get("cache") or {}
        refine = cfg.get("refine") or {}
        lun = cfg.get("lunations") or {}
        loc = cfg.get("default_location") or {}
        return cls(
            sample_interval_hours=float(cfg.get("sample_interval_hours", DEFAULT_SAMPLE_INTERVAL_H)),
            aspect_orb_deg=float(cfg.get("aspect_orb_deg", DEFAULT_ORB_DEG)),
            cache_ttl_seconds=float(cache.get("ttl_seconds", 3600.0)),
            cache_max_entries=int(cache.get("max_entries", 5)),
            cache_eviction=str(cache.get("eviction", "expire")).lower(),
            refine_tolerance_seconds=float(refine.get("tolerance_seconds", 60.0)),
            refine_max_iterations=int(refine.get("max_iterations", 20)),
            refine_max_workers=int(refine.get("max_workers", 4)),
            lunations_enabled=bool(lun.get("enabled", True)),
            lunation_step_hours=float(lun.get("step_hours", 6.0)),
            bodies=tuple(str(b).lower() for b in (cfg.get("bodies") or DEFAULT_BODIES)),
            families=frozenset(str(f).lower() for f in (cfg.get("families") or EVENT_FAMILIES)),
            default_latitude=float(loc.get("latitude", DEFAULT_LATITUDE)),
            default_longitude=float(loc.get("longitude", DEFAULT_LONGITUDE)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sample_interval_hours": self.sample_interval_hours,
            "aspect_orb_deg": self.aspect_orb_deg,
            "cache": {
                "ttl_seconds": self.cache_ttl_seconds,
                "max_entries": self.cache_max_entries,
                "eviction": self.cache_eviction,
            },
            "refine": {
                "tolerance_seconds": self.refine_tolerance_seconds,
                "max_iterations": self.refine_max_iterations,
                "max_workers": self.refine_max_workers,
            },
            "lunations": {
                "enabled": self.lunations_enabled,
                "step_hours": self.lunation_step_hours,
            },
            "bodies": list(self.bodies),
            "families": sorted(self.families),
            "default_location": {
                "latitude": self.default_latitude,
                "longitude": self.default_longitude,
            },
        }
