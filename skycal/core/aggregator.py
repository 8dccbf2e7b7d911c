# skycal/core/aggregator.py
from __future__ import annotations

from typing import Iterable, List, Sequence
from zoneinfo import ZoneInfo

from skycal.core.models import Event

__all__ = ["merge_events", "with_local"]


def merge_events(detected: Sequence[Event], lunations: Sequence[Event] = ()) -> List[Event]:
    """
    One feed ordered by utc. Stable: for equal instants detected events keep
    their input order and precede lunations.
    """
    return sorted([*detected, *lunations], key=lambda e: e.utc)


def with_local(events: Iterable[Event], tz_name: str) -> List[Event]:
    """Copies carrying the caller-local mirror of each utc instant."""
    z = ZoneInfo(tz_name)
    return [e.with_local(e.utc.astimezone(z)) for e in events]
