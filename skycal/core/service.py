# skycal/core/service.py
"""
Year events service: fetch samples, detect, refine, add lunations, merge and
cache, for one (year, latitude, longitude) at a time.

`EventFeed` is the consumer side: it remembers which key is selected and
accepts a result only for the most recent selection.
"""
from __future__ import annotations

from collections import Counter as _Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional
import logging
import threading

from skycal.core.detector import DetectorConfig, EventDetector
from skycal.core.aggregator import merge_events
from skycal.core.lunations import LunationFinder, mark_eclipses
from skycal.core.models import Event, LunationEvent, PositionOracle
from skycal.core.refiner import refine_all
from skycal.core.sampling import YearSampler
from skycal.utils.cache import ResultCache, cache_key
from skycal.utils.config import EngineSettings
from skycal.utils.metrics import EVENTS_DETECTED, STALE_DISCARDS

log = logging.getLogger(__name__)

__all__ = [
    "YearEvents",
    "YearEventsService",
    "EventFeed",
    "FeedToken",
    "OracleFactory",
    "LunationSource",
    "default_lunation_source",
]

OracleFactory = Callable[[float, float], PositionOracle]
LunationSource = Callable[[int, PositionOracle], List[LunationEvent]]


@dataclass(frozen=True)
class YearEvents:
    year: int
    latitude: float
    longitude: float
    events: List[Event]
    from_cache: bool = False
    sample_count: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every event carries a refined timestamp."""
        return all(e.refined for e in self.events)


def default_lunation_source(settings: EngineSettings) -> LunationSource:
    def _source(year: int, oracle: PositionOracle) -> List[LunationEvent]:
        finder = LunationFinder(
            oracle,
            step_hours=settings.lunation_step_hours,
            tolerance_seconds=settings.refine_tolerance_seconds,
            max_iterations=settings.refine_max_iterations,
            max_workers=settings.refine_max_workers,
        )
        lunations = finder.find(year)
        eclipses = getattr(oracle, "eclipses", None)
        if callable(eclipses):
            lunations = mark_eclipses(lunations, eclipses(year))
        return lunations
    return _source


class YearEventsService:
    def __init__(
        self,
        oracle_factory: OracleFactory,
        cache: ResultCache,
        settings: Optional[EngineSettings] = None,
        lunation_source: Optional[LunationSource] = None,
    ):
        self.oracle_factory = oracle_factory
        self.cache = cache
        self.settings = settings or EngineSettings()
        if lunation_source is None and self.settings.lunations_enabled:
            lunation_source = default_lunation_source(self.settings)
        self.lunation_source = lunation_source
        self.detector = EventDetector(DetectorConfig(
            bodies=self.settings.bodies,
            families=self.settings.families,
            orb_deg=self.settings.aspect_orb_deg,
        ))

    def events_for(
        self, year: int, latitude: float, longitude: float, *, refresh: bool = False
    ) -> YearEvents:
        """
        Cached events for the key, or a fresh computation on miss/refresh.
        SampleProviderError propagates; nothing stale is substituted.
        """
        if refresh:
            self.cache.invalidate(year, latitude, longitude)
        else:
            cached = self.cache.get(year, latitude, longitude)
            if cached is not None:
                return YearEvents(year, latitude, longitude, cached, from_cache=True)

        s = self.settings
        warnings: List[str] = []
        oracle = self.oracle_factory(latitude, longitude)

        samples = YearSampler(oracle, s.bodies).samples_for_year(year, s.sample_interval_hours)
        raw = self.detector.detect(samples)
        for kind, n in _Counter(e.kind for e in raw).items():
            EVENTS_DETECTED.labels(kind=kind).inc(n)

        refined = refine_all(
            raw,
            oracle,
            max_workers=s.refine_max_workers,
            tolerance_seconds=s.refine_tolerance_seconds,
            max_iterations=s.refine_max_iterations,
        )

        lunations: List[LunationEvent] = []
        if self.lunation_source is not None:
            try:
                lunations = list(self.lunation_source(year, oracle))
            except Exception as e:
                log.warning("lunations unavailable for %s (%s, %s): %s", year, latitude, longitude, e)
                warnings.append("lunations_unavailable")

        events = merge_events(refined, lunations)
        if not all(e.refined for e in events):
            warnings.append("refinement_incomplete")

        self.cache.put(year, latitude, longitude, events)
        log.info(
            "computed %d events for %s at (%s, %s) from %d samples",
            len(events), year, latitude, longitude, len(samples),
        )
        return YearEvents(
            year, latitude, longitude, events,
            from_cache=False, sample_count=len(samples), warnings=warnings,
        )

    def load(
        self, feed: "EventFeed", year: int, latitude: float, longitude: float, *, refresh: bool = False
    ) -> Optional[YearEvents]:
        """Select the key on `feed`, fetch, and commit. None when superseded meanwhile."""
        token = feed.select(cache_key(year, latitude, longitude))
        result = self.events_for(year, latitude, longitude, refresh=refresh)
        return result if feed.commit(token, result) else None

    def diagnostics(self) -> Dict[str, Any]:
        oracle = self.oracle_factory(self.settings.default_latitude, self.settings.default_longitude)
        diag = getattr(oracle, "ephemeris_diagnostics", None)
        if callable(diag):
            return diag()
        return {"oracle": type(oracle).__name__}

# ───────────────────────── consumer feed ─────────────────────────

@dataclass(frozen=True)
class FeedToken:
    generation: int
    key: Hashable


class EventFeed:
    """Holds the result for the currently selected key; last selection wins."""

    def __init__(self):
        self._lock = threading.Lock()
        self._generation = 0
        self._key: Optional[Hashable] = None
        self._current: Optional[YearEvents] = None

    def select(self, key: Hashable) -> FeedToken:
        with self._lock:
            self._generation += 1
            self._key = key
            self._current = None
            return FeedToken(self._generation, key)

    def commit(self, token: FeedToken, result: YearEvents) -> bool:
        with self._lock:
            if token.generation != self._generation:
                STALE_DISCARDS.inc()
                log.debug(
                    "discarding stale result for %s (generation %d, current %d)",
                    token.key, token.generation, self._generation,
                )
                return False
            self._current = result
            return True

    @property
    def key(self) -> Optional[Hashable]:
        return self._key

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current(self) -> Optional[YearEvents]:
        return self._current
