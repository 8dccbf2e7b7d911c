# tests/test_cache.py
from __future__ import annotations

import pytest

from skycal.utils.cache import ResultCache, cache_key


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def _cache(**kw):
    clock = FakeClock()
    return ResultCache(clock=clock, **kw), clock


def test_put_then_get_hits() -> None:
    cache, _ = _cache(ttl_seconds=10.0)
    cache.put(2024, 40.7128, -74.006, ["a", "b"])
    assert cache.get(2024, 40.7128, -74.006) == ["a", "b"]


def test_ttl_boundary_is_a_miss() -> None:
    cache, clock = _cache(ttl_seconds=10.0)
    cache.put(2024, 40.7128, -74.006, ["a"])
    clock.t = 9.999
    assert cache.get(2024, 40.7128, -74.006) == ["a"]
    clock.t = 10.0
    assert cache.get(2024, 40.7128, -74.006) is None
    assert len(cache) == 0


def test_key_is_exact() -> None:
    cache, _ = _cache()
    cache.put(2024, 40.7128, -74.006, ["a"])
    assert cache.get(2024, 40.71281, -74.006) is None
    assert cache.get(2025, 40.7128, -74.006) is None
    assert cache_key(2024, 40, -74) == (2024, 40.0, -74.0)


def test_put_supersedes_and_resets_age() -> None:
    cache, clock = _cache(ttl_seconds=10.0)
    cache.put(2024, 1.0, 2.0, ["old"])
    clock.t = 8.0
    cache.put(2024, 1.0, 2.0, ["new"])
    clock.t = 15.0
    assert cache.get(2024, 1.0, 2.0) == ["new"]


def test_returned_list_is_a_copy() -> None:
    cache, _ = _cache()
    cache.put(2024, 1.0, 2.0, ["a"])
    got = cache.get(2024, 1.0, 2.0)
    got.append("mutated")
    assert cache.get(2024, 1.0, 2.0) == ["a"]


def test_expire_policy_keeps_unexpired_entries_past_ceiling() -> None:
    cache, clock = _cache(ttl_seconds=100.0, max_entries=2)
    for year in (2020, 2021, 2022):
        cache.put(year, 0.0, 0.0, [year])
    assert len(cache) == 3
    clock.t = 150.0
    cache.put(2023, 0.0, 0.0, [2023])
    # the write over the ceiling swept the three expired entries
    assert len(cache) == 1
    assert (2023, 0.0, 0.0) in cache


def test_lru_policy_bounds_population() -> None:
    cache, _ = _cache(ttl_seconds=100.0, max_entries=2, eviction="lru")
    cache.put(2020, 0.0, 0.0, ["a"])
    cache.put(2021, 0.0, 0.0, ["b"])
    assert cache.get(2020, 0.0, 0.0) == ["a"]  # 2020 becomes most recent
    cache.put(2022, 0.0, 0.0, ["c"])
    assert len(cache) == 2
    assert cache.get(2021, 0.0, 0.0) is None
    assert cache.get(2020, 0.0, 0.0) == ["a"]


def test_invalidate_and_clear() -> None:
    cache, _ = _cache()
    cache.put(2024, 1.0, 2.0, ["a"])
    assert cache.invalidate(2024, 1.0, 2.0) is True
    assert cache.invalidate(2024, 1.0, 2.0) is False
    cache.put(2024, 1.0, 2.0, ["a"])
    cache.clear()
    assert len(cache) == 0


def test_stats_shape() -> None:
    cache, clock = _cache(ttl_seconds=50.0)
    cache.put(2024, 1.0, 2.0, ["a"])
    clock.t = 5.0
    stats = cache.stats()
    assert stats["entries"] == 1
    assert stats["eviction"] == "expire"
    assert stats["keys"][0] == {"year": 2024, "latitude": 1.0, "longitude": 2.0, "age_seconds": 5.0}


@pytest.mark.parametrize("kw", [{"ttl_seconds": 0}, {"max_entries": 0}, {"eviction": "fifo"}])
def test_bad_settings_rejected(kw) -> None:
    with pytest.raises(ValueError):
        ResultCache(**kw)
