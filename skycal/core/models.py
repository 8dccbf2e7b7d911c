# skycal/core/models.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional, Protocol, Tuple, Union
import math

from skycal.core.constants import SIGNS, degree_in_sign, format_degree, sign_index, wrap_deg

__all__ = [
    "BodyPosition",
    "EphemerisSample",
    "BodyTrackState",
    "AspectTrackState",
    "IngressEvent",
    "StationEvent",
    "AspectEvent",
    "LunationEvent",
    "Eclipse",
    "Event",
    "LUNATION_TITLES",
    "PositionOracle",
    "iso_utc",
]

Bracket = Tuple[datetime, datetime]

# ───────────────────────── helpers ─────────────────────────

def iso_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")

def _iso_local(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat(timespec="seconds") if dt is not None else None

# ───────────────────────── positions & samples ─────────────────────────

@dataclass(frozen=True)
class BodyPosition:
    """One body's ecliptic position at one instant (speed in deg/day, None if missing)."""
    longitude: float
    speed: Optional[float] = None
    latitude: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "longitude", wrap_deg(self.longitude))

    @property
    def sign_index(self) -> int:
        return sign_index(self.longitude)

    @property
    def sign_name(self) -> str:
        return SIGNS[self.sign_index]

    @property
    def degree_in_sign(self) -> float:
        return degree_in_sign(self.longitude)

    @property
    def degree_formatted(self) -> str:
        return format_degree(self.longitude)

    @property
    def has_speed(self) -> bool:
        return self.speed is not None and math.isfinite(self.speed)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "degree": self.degree_in_sign,
            "degree_formatted": self.degree_formatted,
            "sign_name": self.sign_name,
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "longitude": self.longitude,
            "speed": self.speed if self.has_speed else None,
            "latitude": self.latitude,
            "sign_index": self.sign_index,
            **self.snapshot(),
        }


@dataclass(frozen=True)
class EphemerisSample:
    time: datetime
    jd_utc: float
    bodies: Mapping[str, BodyPosition] = field(default_factory=dict)

    def get(self, body: str) -> Optional[BodyPosition]:
        return self.bodies.get(body)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "time": iso_utc(self.time),
            "jd_utc": self.jd_utc,
            "bodies": {k: v.as_dict() for k, v in self.bodies.items()},
        }

# ───────────────────────── per-pass tracker state ─────────────────────────

@dataclass
class BodyTrackState:
    """
    Rolling state for one body during a detection pass.

    `longitude`/`sample_time` describe the last sample this body was seen in;
    `sign_index == -1` means the body has not been seen yet.
    """
    sign_index: int = -1
    velocity: Optional[float] = None
    longitude: Optional[float] = None
    sample_time: Optional[datetime] = None

    @property
    def initialized(self) -> bool:
        return self.sign_index != -1


@dataclass
class AspectTrackState:
    was_exact: bool = False
    last_orb: Optional[float] = None
    last_time: Optional[datetime] = None

# ───────────────────────── events (tagged variants) ─────────────────────────

class _EventMixin:
    kind: ClassVar[str] = "event"

    def subject(self) -> str:
        raise NotImplementedError

    @property
    def event_id(self) -> str:
        return f"{self.kind}-{self.subject()}-{iso_utc(self.utc)}"  # type: ignore[attr-defined]

    def with_time(self, utc: datetime, *, refined: bool = True):
        return replace(self, utc=utc, refined=refined)  # type: ignore[arg-type]

    def with_local(self, local: datetime):
        return replace(self, local=local)  # type: ignore[arg-type]

    def _common(self) -> Dict[str, Any]:
        start, end = self.bracket  # type: ignore[attr-defined]
        return {
            "id": self.event_id,
            "type": self.kind,
            "utc": iso_utc(self.utc),  # type: ignore[attr-defined]
            "local": _iso_local(self.local),  # type: ignore[attr-defined]
            "refined": self.refined,  # type: ignore[attr-defined]
            "bracket": [iso_utc(start), iso_utc(end)],
        }


@dataclass(frozen=True)
class IngressEvent(_EventMixin):
    kind: ClassVar[str] = "ingress"

    body: str
    from_sign: str
    to_sign: str
    degree: float
    degree_formatted: str
    is_retrograde: bool
    utc: datetime
    bracket: Bracket
    local: Optional[datetime] = None
    refined: bool = False

    def subject(self) -> str:
        return self.body

    def as_dict(self) -> Dict[str, Any]:
        return {
            **self._common(),
            "body": self.body,
            "from_sign": self.from_sign,
            "to_sign": self.to_sign,
            "degree": self.degree,
            "degree_formatted": self.degree_formatted,
            "is_retrograde": self.is_retrograde,
        }


@dataclass(frozen=True)
class StationEvent(_EventMixin):
    kind: ClassVar[str] = "station"

    body: str
    station_type: str  # "retrograde" | "direct"
    degree: float
    degree_formatted: str
    sign_name: str
    utc: datetime
    bracket: Bracket
    local: Optional[datetime] = None
    refined: bool = False

    def subject(self) -> str:
        return self.body

    def as_dict(self) -> Dict[str, Any]:
        return {
            **self._common(),
            "body": self.body,
            "station_type": self.station_type,
            "degree": self.degree,
            "degree_formatted": self.degree_formatted,
            "sign_name": self.sign_name,
        }


@dataclass(frozen=True)
class AspectEvent(_EventMixin):
    kind: ClassVar[str] = "aspect"

    body_a: str
    body_b: str
    aspect: str
    angle: float
    orb: float
    position_a: BodyPosition
    position_b: BodyPosition
    utc: datetime
    bracket: Bracket
    local: Optional[datetime] = None
    refined: bool = False

    def subject(self) -> str:
        return f"{self.body_a}-{self.body_b}-{self.aspect}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            **self._common(),
            "body_a": self.body_a,
            "body_b": self.body_b,
            "aspect": self.aspect,
            "angle": self.angle,
            "orb": self.orb,
            "position_a": self.position_a.snapshot(),
            "position_b": self.position_b.snapshot(),
        }


LUNATION_TITLES: Dict[str, str] = {
    "new": "New Moon",
    "first_quarter": "First Quarter",
    "full": "Full Moon",
    "last_quarter": "Last Quarter",
}


@dataclass(frozen=True)
class LunationEvent(_EventMixin):
    kind: ClassVar[str] = "lunation"

    phase: str
    utc: datetime
    bracket: Bracket
    moon_position: Optional[BodyPosition] = None
    is_eclipse: bool = False
    eclipse_type: Optional[str] = None  # "solar" | "lunar"
    local: Optional[datetime] = None
    refined: bool = False

    @property
    def title(self) -> str:
        return LUNATION_TITLES[self.phase]

    def subject(self) -> str:
        return self.phase

    def as_dict(self) -> Dict[str, Any]:
        return {
            **self._common(),
            "phase": self.phase,
            "title": self.title,
            "moon_position": self.moon_position.snapshot() if self.moon_position else None,
            "is_eclipse": self.is_eclipse,
            "eclipse_type": self.eclipse_type,
        }


@dataclass(frozen=True)
class Eclipse:
    utc: datetime
    eclipse_type: str  # "solar" | "lunar"
    detail: Optional[str] = None


Event = Union[IngressEvent, StationEvent, AspectEvent, LunationEvent]

# ───────────────────────── oracle protocol ─────────────────────────

class PositionOracle(Protocol):
    """Exact position source: longitude/speed of one body at one instant. May raise."""

    def position(self, body: str, when: datetime) -> BodyPosition:
        ...
