# skycal/core/refiner.py
"""
Timestamp refiner: narrows a detected event to sub-sample precision inside its
bracket [prior_time, next_time] using an exact position oracle.

Every event family reduces to a 1-D search on the bracket:
  ingress : bisection on "longitude still inside from_sign"
  station : bisection on the sign of the instantaneous speed
  aspect  : bisection on the signed residual to the exact angle, or a
             golden-section minimum of |residual| when the pair only
             approaches the angle without crossing it inside the bracket
  lunation: bisection on the Sun-Moon elongation quadrant

The search stops when the bracket is <= tolerance or after max_iterations;
the result is the midpoint of the final bracket, so it never leaves
[prior_time, next_time]. Oracle failures degrade to the unrefined event.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from time import perf_counter
from typing import Callable, List, Optional, Sequence
import logging
import math

from skycal.core.constants import SIGNS, delta_deg, sign_index, wrap_deg
from skycal.core.models import (
    AspectEvent,
    Event,
    IngressEvent,
    LunationEvent,
    PositionOracle,
    StationEvent,
)
from skycal.utils.metrics import REFINE_FAILURES, REFINE_LATENCY

log = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_TOLERANCE_S",
    "DEFAULT_MAX_ITERATIONS",
    "refine",
    "refine_all",
    "aspect_residual",
    "elongation_quadrant",
    "LUNATION_PHASES",
]

DEFAULT_TOLERANCE_S = 60.0
DEFAULT_MAX_ITERATIONS = 20

_FD_HALF_STEP = timedelta(minutes=30)
_INV_PHI = (math.sqrt(5.0) - 1.0) / 2.0

# quadrant entered -> phase
LUNATION_PHASES = ("new", "first_quarter", "full", "last_quarter")

# ───────────────────────── scalar helpers ─────────────────────────

def _mid(lo: datetime, hi: datetime) -> datetime:
    return lo + (hi - lo) / 2

def aspect_residual(angle: float, lon_a: float, lon_b: float) -> float:
    """
    Signed residual that crosses zero when the pair is exact.
    0° and 180° use the signed separation (|sep| never crosses them).
    """
    d = delta_deg(lon_a, lon_b)
    if angle == 0.0:
        return d
    if angle == 180.0:
        return delta_deg(180.0, d)
    return abs(d) - angle

def elongation_quadrant(sun_lon: float, moon_lon: float) -> int:
    return min(3, int(wrap_deg(moon_lon - sun_lon) // 90.0))

def _speed_at(oracle: PositionOracle, body: str, when: datetime) -> float:
    pos = oracle.position(body, when)
    if pos.has_speed:
        return float(pos.speed)  # type: ignore[arg-type]
    lo = oracle.position(body, when - _FD_HALF_STEP).longitude
    hi = oracle.position(body, when + _FD_HALF_STEP).longitude
    return delta_deg(lo, hi) / ((2 * _FD_HALF_STEP).total_seconds() / 86400.0)

# ───────────────────────── 1-D searches ─────────────────────────

def _bisect(
    still_before: Callable[[datetime], bool],
    lo: datetime,
    hi: datetime,
    tolerance_seconds: float,
    max_iterations: int,
) -> datetime:
    """Shrink [lo, hi] around the flip of `still_before` (True at lo, False at hi)."""
    it = 0
    while (hi - lo).total_seconds() > tolerance_seconds and it < max_iterations:
        mid = _mid(lo, hi)
        if still_before(mid):
            lo = mid
        else:
            hi = mid
        it += 1
    return _mid(lo, hi)

def _golden_min(
    f: Callable[[datetime], float],
    lo: datetime,
    hi: datetime,
    tolerance_seconds: float,
    max_iterations: int,
) -> datetime:
    """Golden-section minimum of f on [lo, hi] (f unimodal on the bracket)."""
    a, b = 0.0, (hi - lo).total_seconds()
    at = lambda s: lo + timedelta(seconds=s)  # noqa: E731
    c = b - _INV_PHI * (b - a)
    d = a + _INV_PHI * (b - a)
    fc, fd = f(at(c)), f(at(d))
    it = 0
    while (b - a) > tolerance_seconds and it < max_iterations:
        if fc < fd:
            b, d, fd = d, c, fc
            c = b - _INV_PHI * (b - a)
            fc = f(at(c))
        else:
            a, c, fc = c, d, fd
            d = a + _INV_PHI * (b - a)
            fd = f(at(d))
        it += 1
    return at((a + b) / 2.0)

# ───────────────────────── per-family refiners ─────────────────────────

def _refine_ingress(ev: IngressEvent, lo: datetime, hi: datetime, oracle: PositionOracle,
                    tol: float, max_iter: int) -> datetime:
    from_idx = SIGNS.index(ev.from_sign)
    return _bisect(
        lambda t: sign_index(oracle.position(ev.body, t).longitude) == from_idx,
        lo, hi, tol, max_iter,
    )

def _refine_station(ev: StationEvent, lo: datetime, hi: datetime, oracle: PositionOracle,
                    tol: float, max_iter: int) -> datetime:
    positive_before = ev.station_type == "retrograde"

    def still_before(t: datetime) -> bool:
        return (_speed_at(oracle, ev.body, t) > 0.0) == positive_before

    if not still_before(lo):
        log.debug("station %s: speed already past zero at bracket start %s; result pinned near it",
                  ev.event_id, lo.isoformat())
    return _bisect(still_before, lo, hi, tol, max_iter)

def _refine_aspect(ev: AspectEvent, lo: datetime, hi: datetime, oracle: PositionOracle,
                   tol: float, max_iter: int) -> datetime:
    def g(t: datetime) -> float:
        return aspect_residual(
            ev.angle,
            oracle.position(ev.body_a, t).longitude,
            oracle.position(ev.body_b, t).longitude,
        )

    g0, g1 = g(lo), g(hi)
    if g0 == 0.0:
        return lo
    if g1 == 0.0:
        return hi
    if (g0 > 0.0) != (g1 > 0.0):
        return _bisect(lambda t: (g(t) > 0.0) == (g0 > 0.0), lo, hi, tol, max_iter)
    return _golden_min(lambda t: abs(g(t)), lo, hi, tol, max_iter)

def _refine_lunation(ev: LunationEvent, lo: datetime, hi: datetime, oracle: PositionOracle,
                     tol: float, max_iter: int) -> datetime:
    from_q = (LUNATION_PHASES.index(ev.phase) - 1) % 4

    def quadrant(t: datetime) -> int:
        return elongation_quadrant(oracle.position("sun", t).longitude,
                                   oracle.position("moon", t).longitude)

    return _bisect(lambda t: quadrant(t) == from_q, lo, hi, tol, max_iter)

# ───────────────────────── public API ─────────────────────────

def refine(
    event: Event,
    prior_time: Optional[datetime],
    next_time: Optional[datetime],
    oracle: Optional[PositionOracle],
    *,
    tolerance_seconds: float = DEFAULT_TOLERANCE_S,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> Event:
    """Refined copy of `event`, or `event` itself when refinement is impossible or fails."""
    if isinstance(event, IngressEvent):
        search = _refine_ingress
    elif isinstance(event, StationEvent):
        search = _refine_station
    elif isinstance(event, AspectEvent):
        search = _refine_aspect
    elif isinstance(event, LunationEvent):
        search = _refine_lunation
    else:
        raise TypeError(f"unsupported event type: {type(event).__name__}")

    if prior_time is None or next_time is None or oracle is None:
        return event
    if next_time <= prior_time:
        log.warning("refine %s skipped: empty bracket %s..%s", event.event_id, prior_time, next_time)
        return event

    t0 = perf_counter()
    try:
        t = search(event, prior_time, next_time, oracle, tolerance_seconds, max_iterations)  # type: ignore[arg-type]
        t = min(max(t, prior_time), next_time)
        refined = event.with_time(t)
        if isinstance(refined, LunationEvent):
            refined = replace(refined, moon_position=oracle.position("moon", t))
    except Exception as e:
        REFINE_FAILURES.labels(kind=event.kind).inc()
        log.warning("refine %s failed; keeping sample time: %s", event.event_id, e)
        return event
    finally:
        REFINE_LATENCY.labels(kind=event.kind).observe(perf_counter() - t0)
    return refined


def refine_all(
    events: Sequence[Event],
    oracle: Optional[PositionOracle],
    *,
    max_workers: int = 4,
    tolerance_seconds: float = DEFAULT_TOLERANCE_S,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> List[Event]:
    """
    Refine every event on a bounded thread pool. Failures stay per event;
    output has the same length as the input, sorted by utc.
    """
    events = list(events)
    if not events:
        return []

    def _one(ev: Event) -> Event:
        prior, nxt = ev.bracket
        return refine(ev, prior, nxt, oracle,
                      tolerance_seconds=tolerance_seconds, max_iterations=max_iterations)

    if oracle is None or max_workers <= 1 or len(events) == 1:
        out = [_one(ev) for ev in events]
    else:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(events)),
                                thread_name_prefix="skycal-refine") as pool:
            out = list(pool.map(_one, events))

    out.sort(key=lambda e: e.utc)
    return out
