# skycal/core/sampling.py
"""
Sample Series provider: positions of the tracked bodies over one calendar year
at a fixed cadence, from Jan 1 12:00 UTC through Dec 31 23:59:59 UTC.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Tuple
import logging

from skycal.core.constants import DEFAULT_BODIES, DEFAULT_SAMPLE_INTERVAL_H
from skycal.core.ephemeris_adapter import EphemerisError
from skycal.core.models import BodyPosition, EphemerisSample, PositionOracle
from skycal.core.timescales import jd_utc_from_datetime
from skycal.utils.metrics import SAMPLE_BODY_FAILURES

log = logging.getLogger(__name__)

__all__ = ["SampleProviderError", "YearSampler", "year_instants"]


class SampleProviderError(RuntimeError):
    """The sample series for a (year, location) could not be produced at all."""
    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


def year_instants(year: int, interval_hours: float) -> Iterator[datetime]:
    if not interval_hours or interval_hours <= 0:
        raise ValueError("interval_hours must be > 0")
    start = datetime(int(year), 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    end = datetime(int(year), 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    step = timedelta(hours=float(interval_hours))
    t = start
    while t <= end:
        yield t
        t = t + step


class YearSampler:
    def __init__(self, oracle: PositionOracle, bodies: Iterable[str] = DEFAULT_BODIES):
        self.oracle = oracle
        self.bodies: Tuple[str, ...] = tuple(bodies)

    def sample_at(self, when: datetime) -> EphemerisSample:
        positions: Dict[str, BodyPosition] = {}
        for body in self.bodies:
            try:
                positions[body] = self.oracle.position(body, when)
            except Exception as e:
                # kernel errors are batch-fatal
                if isinstance(e, EphemerisError) and e.stage == "kernel":
                    raise SampleProviderError(str(e), stage=e.stage, **e.context) from e
                SAMPLE_BODY_FAILURES.labels(body=body).inc()
                log.debug("sample %s %s skipped: %s", body, when.isoformat(), e)
        return EphemerisSample(time=when, jd_utc=jd_utc_from_datetime(when), bodies=positions)

    def samples_for_year(
        self, year: int, interval_hours: float = DEFAULT_SAMPLE_INTERVAL_H
    ) -> List[EphemerisSample]:
        samples = [self.sample_at(t) for t in year_instants(year, interval_hours)]
        if not any(s.bodies for s in samples):
            raise SampleProviderError(
                f"no positions available for {year}", year=year, bodies=list(self.bodies)
            )
        log.info("sampled %d instants for %s every %sh", len(samples), year, interval_hours)
        return samples
