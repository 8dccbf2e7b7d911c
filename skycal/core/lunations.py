# skycal/core/lunations.py
"""
Lunations (New Moon, First Quarter, Full Moon, Last Quarter) for a year, and
eclipse marking.

The finder samples the Sun-Moon elongation every `step_hours` (the Moon gains
~3° on the Sun in 6 h, so no quadrant is ever skipped) and emits a lunation
each time the elongation quadrant floor(elong / 90°) changes; the instant is
then refined by the shared refiner.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence
import logging

from skycal.core.models import Eclipse, LunationEvent, PositionOracle
from skycal.core.refiner import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOLERANCE_S,
    LUNATION_PHASES,
    elongation_quadrant,
    refine_all,
)

log = logging.getLogger(__name__)

__all__ = ["LunationFinder", "mark_eclipses", "ECLIPSE_PHASE"]

ECLIPSE_PHASE = {"solar": "new", "lunar": "full"}


class LunationFinder:
    def __init__(
        self,
        oracle: PositionOracle,
        *,
        step_hours: float = 6.0,
        tolerance_seconds: float = DEFAULT_TOLERANCE_S,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_workers: int = 4,
    ):
        if step_hours <= 0:
            raise ValueError("step_hours must be > 0")
        self.oracle = oracle
        self.step = timedelta(hours=float(step_hours))
        self.tolerance_seconds = tolerance_seconds
        self.max_iterations = max_iterations
        self.max_workers = max_workers

    def _quadrant(self, when: datetime) -> int:
        sun = self.oracle.position("sun", when).longitude
        moon = self.oracle.position("moon", when).longitude
        return elongation_quadrant(sun, moon)

    def scan(self, start: datetime, end: datetime) -> List[LunationEvent]:
        """Unrefined lunations whose quadrant change falls in [start, end]."""
        out: List[LunationEvent] = []
        prev_t = start
        prev_q = self._quadrant(start)
        t = start + self.step
        while prev_t < end:
            # last step is cut short so `end` itself is always checked
            t = min(t, end)
            q = self._quadrant(t)
            if q != prev_q:
                out.append(LunationEvent(
                    phase=LUNATION_PHASES[q],
                    utc=t,
                    bracket=(prev_t, t),
                ))
            prev_t, prev_q = t, q
            t = t + self.step
        return out

    def find(self, year: int) -> List[LunationEvent]:
        start = datetime(int(year), 1, 1, tzinfo=timezone.utc)
        end = datetime(int(year), 12, 31, 23, 59, 59, tzinfo=timezone.utc)
        raw = self.scan(start, end)
        refined = refine_all(
            raw,
            self.oracle,
            max_workers=self.max_workers,
            tolerance_seconds=self.tolerance_seconds,
            max_iterations=self.max_iterations,
        )
        log.info("found %d lunations for %s", len(refined), year)
        return refined  # type: ignore[return-value]


def mark_eclipses(
    lunations: Sequence[LunationEvent],
    eclipses: Iterable[Eclipse],
    *,
    window_hours: float = 24.0,
) -> List[LunationEvent]:
    """
    Flag New Moons near a solar eclipse and Full Moons near a lunar eclipse
    (|Δt| <= window_hours). Other lunations are returned unchanged.
    """
    window = timedelta(hours=window_hours)
    ecl = list(eclipses)
    out: List[LunationEvent] = []
    for lun in lunations:
        match: Optional[Eclipse] = None
        for e in ecl:
            if ECLIPSE_PHASE.get(e.eclipse_type) == lun.phase and abs(e.utc - lun.utc) <= window:
                match = e
                break
        if match is None:
            out.append(lun)
        else:
            out.append(replace(lun, is_eclipse=True, eclipse_type=match.eclipse_type))
    return out
