# tests/conftest.py
from __future__ import annotations

"""
Pytest configuration for the SkyCal suite.

- Registers Hypothesis profiles for local dev and CI.
- Freezes the process TZ to UTC.
- Provides a deterministic position oracle (linear or scripted motion), so no
  ephemeris kernel or network access is needed.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple, Union

import pytest
from hypothesis import settings, HealthCheck

from skycal.core.models import BodyPosition, EphemerisSample


# ──────────────────────────────────────────────────────────────────────────────
# Hypothesis profiles
# ──────────────────────────────────────────────────────────────────────────────
settings.register_profile(
    "dev",
    settings(
        deadline=None,
        max_examples=60,
        suppress_health_check=[HealthCheck.too_slow],
    ),
)
settings.register_profile(
    "ci",
    settings(
        deadline=None,
        max_examples=120,
        suppress_health_check=[HealthCheck.too_slow],
    ),
)

_profile = (
    "ci"
    if (os.getenv("CI") or os.getenv("GITHUB_ACTIONS"))
    else os.getenv("HYPOTHESIS_PROFILE", "dev")
)
settings.load_profile(_profile)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "slow: mark test as slow")
    config.addinivalue_line("filterwarnings", "ignore::DeprecationWarning")


def pytest_report_header(config: pytest.Config) -> str:
    return f"Hypothesis profile: '{_profile}'"


# ──────────────────────────────────────────────────────────────────────────────
# Global fixtures
# ──────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session", autouse=True)
def freeze_tz_env():
    prev = os.environ.get("TZ")
    os.environ["TZ"] = "UTC"
    try:
        yield
    finally:
        if prev is None:
            os.environ.pop("TZ", None)
        else:
            os.environ["TZ"] = prev


@pytest.fixture(scope="session")
def ensure_erfa():
    """Fail early if pyERFA isn't importable or missing key functions."""
    import erfa
    for fn in ("dtf2d", "d2dtf", "utctai", "taitt"):
        assert hasattr(erfa, fn), f"ERFA.{fn} not available"
    return erfa


# ──────────────────────────────────────────────────────────────────────────────
# Deterministic oracle
# ──────────────────────────────────────────────────────────────────────────────

EPOCH = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)

# (longitude at EPOCH, deg/day) or days -> longitude
Motion = Union[Tuple[float, float], Callable[[float], float]]


class FakeOracle:
    """
    Linear bodies report their speed; scripted bodies (callables) report none,
    so callers fall back to finite differences.
    """

    def __init__(
        self,
        motions: Dict[str, Motion],
        *,
        epoch: datetime = EPOCH,
        fail: Optional[Callable[[str, datetime], bool]] = None,
    ):
        self.motions = dict(motions)
        self.epoch = epoch
        self.fail = fail
        self.calls = 0

    def position(self, body: str, when: datetime) -> BodyPosition:
        self.calls += 1
        if body not in self.motions:
            raise KeyError(f"unknown body {body}")
        if self.fail is not None and self.fail(body, when):
            raise RuntimeError(f"oracle unavailable for {body}")
        days = (when - self.epoch).total_seconds() / 86400.0
        m = self.motions[body]
        if callable(m):
            return BodyPosition(longitude=m(days))
        lon0, speed = m
        return BodyPosition(longitude=lon0 + speed * days, speed=speed)


@pytest.fixture(scope="session")
def epoch() -> datetime:
    return EPOCH


@pytest.fixture(scope="session")
def fake_oracle():
    return FakeOracle


@pytest.fixture(scope="session")
def make_samples(epoch):
    """
    Build a 12 h sample series from per-body rows:
        make_samples(mercury=[(359.8, 0.9), (0.3, 0.85)])
    Each row item is (longitude, speed) or None for "missing in this sample".
    """
    def _make(step_hours: float = 12.0, **rows):
        n = max(len(v) for v in rows.values())
        out = []
        for i in range(n):
            t = epoch + timedelta(hours=step_hours * i)
            bodies = {}
            for body, seq in rows.items():
                item = seq[i] if i < len(seq) else None
                if item is None:
                    continue
                lon, speed = item
                bodies[body] = BodyPosition(longitude=lon, speed=speed)
            out.append(EphemerisSample(time=t, jd_utc=2460310.5 + i * step_hours / 24.0, bodies=bodies))
        return out
    return _make
