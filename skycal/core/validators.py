# skycal/core/validators.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from skycal.core.constants import EVENT_FAMILIES

# DE421 spans 1899-07-29 .. 2053-10-09; only whole years inside it.
YEAR_MIN = 1900
YEAR_MAX = 2052

# lunations are served alongside the detector families
OUTPUT_FAMILIES: Tuple[str, ...] = (*EVENT_FAMILIES, "lunation")

# ───────────────────────── errors ─────────────────────────

class ValidationError(ValueError):
    """Structured validator error for the routes (has .errors())."""
    def __init__(self, details: Union[str, Dict[str, Any], List[Dict[str, Any]]]):
        if isinstance(details, str):
            self._details = [{"loc": [], "msg": details, "type": "value_error"}]
            super().__init__(details)
        elif isinstance(details, dict):
            self._details = [details]
            super().__init__(details.get("msg", "validation_error"))
        else:
            self._details = list(details)
            super().__init__(self._details[0]["msg"] if self._details else "validation_error")

    def errors(self) -> List[Dict[str, Any]]:
        return list(self._details)

# ───────────────────────── helpers ─────────────────────────

def _err(loc: List[str] | str, msg: str, typ: str = "value_error") -> Dict[str, Any]:
    return {"loc": [loc] if isinstance(loc, str) else loc, "msg": msg, "type": typ}

def _as_float(v: Any) -> Optional[float]:
    try:
        if v is None or isinstance(v, bool):
            return None
        x = float(v)
        if x != x:  # NaN
            return None
        return x
    except (TypeError, ValueError):
        return None

def _truthy(val: Any) -> Optional[bool]:
    if isinstance(val, bool):
        return val
    if val is None:
        return None
    s = str(val).strip().lower()
    if s in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "f", "no", "n", "off"}:
        return False
    return None

# ───────────────────────── atomic parsers ─────────────────────────

def parse_year(v: Any) -> int:
    if isinstance(v, bool) or v is None:
        raise ValidationError(_err("year", "year is required and must be an integer", "type_error.integer"))
    try:
        if isinstance(v, float):
            if not v.is_integer():
                raise ValueError(v)
            y = int(v)
        else:
            y = int(str(v).strip())
    except (TypeError, ValueError):
        raise ValidationError(_err("year", "year must be an integer", "type_error.integer"))
    if not (YEAR_MIN <= y <= YEAR_MAX):
        raise ValidationError(_err("year", f"year must be between {YEAR_MIN} and {YEAR_MAX}"))
    return y

def parse_latlon(lat: Any, lon: Any, lat_key="latitude", lon_key="longitude") -> Tuple[float, float]:
    lat_f = _as_float(lat); lon_f = _as_float(lon)
    if lat_f is None or lon_f is None:
        raise ValidationError(_err([lat_key, lon_key], "latitude/longitude must be finite numbers", "type_error.float"))
    if not (-90.0 <= lat_f <= 90.0):
        raise ValidationError(_err(lat_key, "latitude must be between -90 and 90"))
    if not (-180.0 <= lon_f <= 180.0):
        raise ValidationError(_err(lon_key, "longitude must be between -180 and 180"))
    return float(lat_f), float(lon_f)

def parse_tz(tz: Any) -> str:
    name = str(tz or "UTC").strip()
    try:
        ZoneInfo(name)
    except Exception:
        raise ValidationError(_err("tz", "must be a valid IANA zone like 'America/New_York'"))
    return name

def parse_families(v: Any) -> FrozenSet[str]:
    if v is None:
        return frozenset(OUTPUT_FAMILIES)
    items = v.split(",") if isinstance(v, str) else v
    if not isinstance(items, (list, tuple)):
        raise ValidationError(_err("families", "families must be a list of strings", "type_error.list"))
    out = frozenset(str(x).strip().lower() for x in items if str(x).strip())
    unknown = sorted(out - set(OUTPUT_FAMILIES))
    if unknown:
        raise ValidationError(_err("families", f"unknown families {unknown}; allowed: {list(OUTPUT_FAMILIES)}"))
    if not out:
        raise ValidationError(_err("families", "families must not be empty"))
    return out

# ───────────────────────── payloads ─────────────────────────

@dataclass(frozen=True)
class YearEventsRequest:
    year: int
    latitude: float
    longitude: float
    tz: str = "UTC"
    refresh: bool = False
    families: FrozenSet[str] = frozenset(OUTPUT_FAMILIES)


def parse_year_events_payload(
    body: Optional[Mapping[str, Any]],
    *,
    default_latitude: float,
    default_longitude: float,
) -> YearEventsRequest:
    """Validate a year-events body; collects every field error before raising."""
    if body is None:
        body = {}
    if not isinstance(body, Mapping):
        raise ValidationError(_err([], "body must be a JSON object", "type_error.dict"))

    errors: List[Dict[str, Any]] = []
    year = lat = lon = None
    tz = "UTC"
    families = frozenset(OUTPUT_FAMILIES)

    try:
        year = parse_year(body.get("year"))
    except ValidationError as e:
        errors.extend(e.errors())
    try:
        lat, lon = parse_latlon(
            body.get("latitude", default_latitude),
            body.get("longitude", default_longitude),
        )
    except ValidationError as e:
        errors.extend(e.errors())
    try:
        tz = parse_tz(body.get("tz"))
    except ValidationError as e:
        errors.extend(e.errors())
    try:
        families = parse_families(body.get("families"))
    except ValidationError as e:
        errors.extend(e.errors())

    refresh = _truthy(body.get("refresh", False))
    if refresh is None:
        errors.append(_err("refresh", "refresh must be a boolean", "type_error.bool"))

    if errors:
        raise ValidationError(errors)
    return YearEventsRequest(
        year=year,  # type: ignore[arg-type]
        latitude=lat,  # type: ignore[arg-type]
        longitude=lon,  # type: ignore[arg-type]
        tz=tz,
        refresh=bool(refresh),
        families=families,
    )
