# tests/test_aggregator.py
from __future__ import annotations

from datetime import timedelta

from hypothesis import given, strategies as st

from skycal.core.aggregator import merge_events, with_local
from skycal.core.models import IngressEvent, LunationEvent


def _ing(epoch, hours: float, body: str = "sun") -> IngressEvent:
    t = epoch + timedelta(hours=hours)
    return IngressEvent(body=body, from_sign="Aries", to_sign="Taurus", degree=0.0,
                        degree_formatted="0°0'0\"", is_retrograde=False,
                        utc=t, bracket=(t - timedelta(hours=12), t))


def _lun(epoch, hours: float, phase: str = "new") -> LunationEvent:
    t = epoch + timedelta(hours=hours)
    return LunationEvent(phase=phase, utc=t, bracket=(t - timedelta(hours=6), t))


def test_interleaved_merge_is_chronological(epoch) -> None:
    ingresses = [_ing(epoch, h) for h in (5, 40, 200)]
    lunations = [_lun(epoch, h) for h in (1, 39, 41, 500)]
    merged = merge_events(ingresses, lunations)
    assert len(merged) == 7
    assert [e.utc for e in merged] == sorted(e.utc for e in merged)


@given(st.lists(st.integers(0, 8760), max_size=20), st.lists(st.integers(0, 8760), max_size=20))
def test_merge_non_decreasing(epoch, a, b) -> None:
    merged = merge_events([_ing(epoch, h) for h in a], [_lun(epoch, h) for h in b])
    assert len(merged) == len(a) + len(b)
    assert all(x.utc <= y.utc for x, y in zip(merged, merged[1:]))


def test_equal_instants_keep_detected_first(epoch) -> None:
    ing = _ing(epoch, 12)
    lun = _lun(epoch, 12)
    assert merge_events([ing], [lun]) == [ing, lun]


def test_local_mirror(epoch) -> None:
    (ev,) = with_local([_ing(epoch, 17)], "America/New_York")
    assert ev.utc == epoch + timedelta(hours=17)
    assert ev.local.utcoffset() == timedelta(hours=-5)
    assert ev.local.hour == 12
    d = ev.as_dict()
    assert d["utc"].endswith("Z")
    assert d["local"].endswith("-05:00")
