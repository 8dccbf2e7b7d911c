# tests/test_detector.py
from __future__ import annotations

from datetime import timedelta

import pytest
from hypothesis import given, strategies as st

from skycal.core.detector import DetectorConfig, EventDetector, detect_events, effective_velocity
from skycal.core.models import (
    AspectEvent,
    BodyPosition,
    BodyTrackState,
    IngressEvent,
    StationEvent,
)


def _only(events, cls):
    return [e for e in events if isinstance(e, cls)]


def _det(*bodies, families=("ingress", "station", "aspect")):
    return EventDetector(DetectorConfig(bodies=bodies, families=families))

# ───────────────────────── ingress ─────────────────────────

def test_ingress_aries_aries_taurus(make_samples) -> None:
    samples = make_samples(mars=[(28.0, 0.7), (29.5, 0.7), (30.4, 0.7)])
    events = _only(_det("mars").detect(samples), IngressEvent)
    assert len(events) == 1
    ev = events[0]
    assert (ev.from_sign, ev.to_sign) == ("Aries", "Taurus")
    assert ev.utc == samples[2].time
    assert ev.bracket == (samples[1].time, samples[2].time)
    assert ev.is_retrograde is False
    assert ev.refined is False


@given(st.floats(min_value=0.0, max_value=359.999, allow_nan=False),
       st.one_of(st.none(), st.floats(min_value=-2.0, max_value=2.0, allow_nan=False)))
def test_first_sample_never_ingresses(make_samples, lon, speed) -> None:
    samples = make_samples(venus=[(lon, speed)])
    assert _det("venus").detect(samples) == []


def test_mercury_pisces_to_aries_across_seam(make_samples) -> None:
    samples = make_samples(mercury=[(359.8, 0.9), (0.3, 0.85)])
    events = detect_events(samples, DetectorConfig(bodies=("mercury",)))
    assert len(events) == 1
    ev = events[0]
    assert isinstance(ev, IngressEvent)
    assert (ev.from_sign, ev.to_sign) == ("Pisces", "Aries")
    assert ev.is_retrograde is False


def test_retrograde_ingress_flagged(make_samples) -> None:
    samples = make_samples(mercury=[(30.2, -0.5), (29.9, -0.6)])
    (ev,) = _only(_det("mercury").detect(samples), IngressEvent)
    assert (ev.from_sign, ev.to_sign) == ("Taurus", "Aries")
    assert ev.is_retrograde is True


def test_missing_body_keeps_state(make_samples) -> None:
    # the body vanishes for one sample; the ingress still uses its last-seen sign
    samples = make_samples(mars=[(29.0, 0.7), None, (30.5, 0.7)])
    (ev,) = _only(_det("mars").detect(samples), IngressEvent)
    assert ev.from_sign == "Aries"
    assert ev.bracket == (samples[0].time, samples[2].time)

# ───────────────────────── stations ─────────────────────────

def test_station_requires_true_sign_flip(make_samples) -> None:
    # constant longitude keeps the fallback at exactly 0.0, so the effective
    # velocities really are [+0.4, 0.0, -0.3]
    samples = make_samples(saturn=[(100.0, 0.4), (100.0, 0.0), (100.0, -0.3)])
    assert _only(_det("saturn").detect(samples), StationEvent) == []


def test_reported_zero_speed_replaced_by_finite_difference(make_samples) -> None:
    # 100.0 -> 100.1 over 12 h turns the reported 0.0 into +0.2 deg/day,
    # so the flip to -0.3 is a real station in the last interval
    samples = make_samples(saturn=[(100.0, 0.4), (100.1, 0.0), (100.05, -0.3)])
    (ev,) = _only(_det("saturn").detect(samples), StationEvent)
    assert ev.station_type == "retrograde"
    assert ev.utc == samples[2].time
    assert ev.bracket == (samples[1].time, samples[2].time)


def test_station_retrograde_on_direct_flip(make_samples) -> None:
    samples = make_samples(saturn=[(100.0, 0.4), (100.1, -0.3)])
    (ev,) = _only(_det("saturn").detect(samples), StationEvent)
    assert ev.station_type == "retrograde"
    assert ev.sign_name == "Cancer"
    assert ev.bracket == (samples[0].time, samples[1].time)


def test_station_direct(make_samples) -> None:
    samples = make_samples(mars=[(200.0, -0.2), (199.9, 0.1)])
    (ev,) = _only(_det("mars").detect(samples), StationEvent)
    assert ev.station_type == "direct"


def test_velocity_fallback_uses_finite_difference(make_samples) -> None:
    # reported speeds missing; longitudes 10.0 -> 9.8 -> 9.9 imply - then +
    samples = make_samples(venus=[(10.0, None), (9.8, None), (9.9, None)])
    (ev,) = _only(_det("venus").detect(samples), StationEvent)
    assert ev.station_type == "direct"
    assert ev.utc == samples[2].time


def test_velocity_fallback_across_seam(epoch) -> None:
    state = BodyTrackState(sign_index=11, velocity=None, longitude=359.8, sample_time=epoch)
    v = effective_velocity(BodyPosition(0.3, speed=float("nan")), state, epoch + timedelta(hours=12))
    assert v == pytest.approx(1.0)


def test_velocity_unknown_without_history(epoch) -> None:
    assert effective_velocity(BodyPosition(12.0, speed=None), BodyTrackState(), epoch) is None
    assert effective_velocity(BodyPosition(12.0, speed=0.0), BodyTrackState(), epoch) is None

# ───────────────────────── aspects ─────────────────────────

def test_aspect_rising_edge_only(make_samples) -> None:
    orbs = [0.8, 0.3, 0.2, 0.35, 0.1]
    samples = make_samples(
        sun=[(100.0, 1.0)] * len(orbs),
        mars=[(100.0 + o, 1.0) for o in orbs],
    )
    events = _only(_det("sun", "mars").detect(samples), AspectEvent)
    assert len(events) == 1
    ev = events[0]
    assert (ev.body_a, ev.body_b, ev.aspect) == ("sun", "mars", "conjunct")
    assert ev.utc == samples[1].time
    assert ev.orb == pytest.approx(0.3)
    assert ev.bracket == (samples[0].time, samples[1].time)


def test_no_aspect_on_first_observation(make_samples) -> None:
    samples = make_samples(sun=[(10.0, 1.0), (10.5, 1.0)], mars=[(100.1, 0.5), (100.3, 0.5)])
    # square already exact on the first sample, still exact on the second
    assert _only(_det("sun", "mars").detect(samples), AspectEvent) == []


def test_opposition_across_seam(make_samples) -> None:
    samples = make_samples(sun=[(0.0, 1.0), (0.5, 1.0)], jupiter=[(181.0, 0.1), (180.7, 0.1)])
    (ev,) = _only(_det("sun", "jupiter").detect(samples), AspectEvent)
    assert ev.aspect == "opposition"
    assert ev.angle == 180.0

# ───────────────────────── configuration ─────────────────────────

def test_disabled_families_emit_nothing(make_samples) -> None:
    samples = make_samples(
        sun=[(29.0, 1.0), (30.2, 1.0)],
        mars=[(29.9, 0.4), (30.0, -0.1)],
    )
    assert _det("sun", "mars", families=("station",)).detect(samples) == _only(
        _det("sun", "mars").detect(samples), StationEvent
    )
    assert _det("sun", "mars", families=()).detect(samples) == []


def test_output_sorted_by_utc(make_samples) -> None:
    samples = make_samples(
        sun=[(29.0, 1.0), (30.0, 1.0), (31.0, 1.0), (59.0, 1.0), (60.5, 1.0)],
        mercury=[(10.0, 1.5), (28.0, 1.5), (30.1, 1.5), (31.0, 1.5), (32.0, 1.5)],
    )
    events = _det("sun", "mercury").detect(samples)
    assert [e.utc for e in events] == sorted(e.utc for e in events)


def test_unsorted_samples_rejected(make_samples) -> None:
    samples = make_samples(sun=[(1.0, 1.0), (2.0, 1.0)])
    with pytest.raises(ValueError):
        _det("sun").detect(list(reversed(samples)))


def test_unknown_family_rejected() -> None:
    with pytest.raises(ValueError):
        DetectorConfig(families=("ingress", "eclipse"))


def test_detector_holds_no_state_between_calls(make_samples) -> None:
    det = _det("mars")
    samples = make_samples(mars=[(29.5, 0.7), (30.4, 0.7)])
    assert det.detect(samples) == det.detect(samples)
