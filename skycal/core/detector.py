# skycal/core/detector.py
"""
Event detector: one left-to-right pass over a sample series that emits
ingress, station and aspect events between consecutive samples.

Rules
-----
- Velocity fallback: a missing / NaN / zero reported speed is replaced by the
  finite difference of the wrapped longitude delta against the body's last
  sample. Without history the velocity is unknown (None).
- Ingress: tracked sign (not the -1 sentinel) differs from the current sign.
- Station: previous and current velocities both known, both non-zero, and of
  opposite sign. "retrograde" for + → −, "direct" otherwise.
- Aspect: rising edge only (not exact → exact, |sep − angle| ≤ orb) for a
  pair/kind that has been observed before.
- A body missing from a sample is skipped; its state is left as it was.

Every event carries bracket = (previous sample time, current sample time) and
utc = current sample time until refined.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple
import math

from skycal.core.constants import (
    ASPECT_ANGLES_DEG,
    DEFAULT_BODIES,
    DEFAULT_ORB_DEG,
    EVENT_FAMILIES,
    SIGNS,
    abs_sep_deg,
    delta_deg,
)
from skycal.core.models import (
    AspectEvent,
    AspectTrackState,
    BodyPosition,
    BodyTrackState,
    EphemerisSample,
    Event,
    IngressEvent,
    StationEvent,
)

__all__ = ["DetectorConfig", "EventDetector", "detect_events", "effective_velocity"]

AspectKey = Tuple[str, str, str]

# ───────────────────────── configuration ─────────────────────────

@dataclass(frozen=True)
class DetectorConfig:
    bodies: Tuple[str, ...] = DEFAULT_BODIES
    families: FrozenSet[str] = frozenset(EVENT_FAMILIES)
    orb_deg: float = DEFAULT_ORB_DEG
    aspects: Mapping[str, float] = field(default_factory=lambda: dict(ASPECT_ANGLES_DEG))

    def __post_init__(self) -> None:
        object.__setattr__(self, "bodies", tuple(self.bodies))
        object.__setattr__(self, "families", frozenset(self.families))
        unknown = self.families - set(EVENT_FAMILIES)
        if unknown:
            raise ValueError(f"unknown event families: {sorted(unknown)}")
        if not (self.orb_deg > 0.0):
            raise ValueError("orb_deg must be > 0")
        if len(set(self.bodies)) != len(self.bodies):
            raise ValueError("bodies must be unique")

    def enabled(self, family: str) -> bool:
        return family in self.families

# ───────────────────────── helpers ─────────────────────────

def effective_velocity(pos: BodyPosition, state: BodyTrackState, when: datetime) -> Optional[float]:
    """Reported speed, or the finite-difference fallback, or None when unknown."""
    v = pos.speed
    if v is not None and math.isfinite(v) and v != 0.0:
        return float(v)
    if state.longitude is None or state.sample_time is None:
        return None
    days = (when - state.sample_time).total_seconds() / 86400.0
    if days <= 0.0:
        return None
    return delta_deg(state.longitude, pos.longitude) / days

def _check_ordered(samples: Sequence[EphemerisSample]) -> None:
    for prev, cur in zip(samples, samples[1:]):
        if cur.time <= prev.time:
            raise ValueError(
                f"samples must be strictly increasing in time: {prev.time.isoformat()} then {cur.time.isoformat()}"
            )

# ───────────────────────── detector ─────────────────────────

class EventDetector:
    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    def detect(self, samples: Sequence[EphemerisSample]) -> List[Event]:
        samples = list(samples)
        _check_ordered(samples)

        cfg = self.config
        bodies: Dict[str, BodyTrackState] = {b: BodyTrackState() for b in cfg.bodies}
        pairs: Dict[AspectKey, AspectTrackState] = {}
        events: List[Event] = []

        for sample in samples:
            for body in cfg.bodies:
                pos = sample.get(body)
                if pos is None:
                    continue
                events.extend(self._step_body(body, pos, bodies[body], sample.time))
            if cfg.enabled("aspect"):
                events.extend(self._step_aspects(sample, pairs))

        events.sort(key=lambda e: e.utc)
        return events

    # ---- per body -------------------------------------------------------------
    def _step_body(
        self, body: str, pos: BodyPosition, state: BodyTrackState, when: datetime
    ) -> List[Event]:
        cfg = self.config
        out: List[Event] = []
        velocity = effective_velocity(pos, state, when)
        bracket = (state.sample_time, when)

        if cfg.enabled("ingress") and state.initialized and state.sign_index != pos.sign_index:
            out.append(IngressEvent(
                body=body,
                from_sign=SIGNS[state.sign_index],
                to_sign=pos.sign_name,
                degree=pos.degree_in_sign,
                degree_formatted=pos.degree_formatted,
                is_retrograde=velocity is not None and velocity < 0.0,
                utc=when,
                bracket=bracket,  # type: ignore[arg-type]
            ))

        prev_v = state.velocity
        if (
            cfg.enabled("station")
            and prev_v is not None and velocity is not None
            and prev_v != 0.0 and velocity != 0.0
            and (prev_v > 0.0) != (velocity > 0.0)
        ):
            out.append(StationEvent(
                body=body,
                station_type="retrograde" if prev_v > 0.0 else "direct",
                degree=pos.degree_in_sign,
                degree_formatted=pos.degree_formatted,
                sign_name=pos.sign_name,
                utc=when,
                bracket=bracket,  # type: ignore[arg-type]
            ))

        state.sign_index = pos.sign_index
        state.velocity = velocity
        state.longitude = pos.longitude
        state.sample_time = when
        return out

    # ---- per pair -------------------------------------------------------------
    def _step_aspects(
        self, sample: EphemerisSample, pairs: Dict[AspectKey, AspectTrackState]
    ) -> List[Event]:
        cfg = self.config
        out: List[Event] = []
        for a, b in combinations(cfg.bodies, 2):
            pa, pb = sample.get(a), sample.get(b)
            if pa is None or pb is None:
                continue
            sep = abs_sep_deg(pa.longitude, pb.longitude)
            for aspect, angle in cfg.aspects.items():
                orb = abs(sep - angle)
                exact = orb <= cfg.orb_deg
                key = (a, b, aspect)
                st = pairs.get(key)
                if st is None:
                    pairs[key] = AspectTrackState(was_exact=exact, last_orb=orb, last_time=sample.time)
                    continue
                if exact and not st.was_exact:
                    out.append(AspectEvent(
                        body_a=a,
                        body_b=b,
                        aspect=aspect,
                        angle=float(angle),
                        orb=orb,
                        position_a=pa,
                        position_b=pb,
                        utc=sample.time,
                        bracket=(st.last_time, sample.time),  # type: ignore[arg-type]
                    ))
                st.was_exact = exact
                st.last_orb = orb
                st.last_time = sample.time
        return out


def detect_events(
    samples: Iterable[EphemerisSample], config: Optional[DetectorConfig] = None
) -> List[Event]:
    return EventDetector(config).detect(list(samples))
