"""
Unit tests for ProfileCache and InterestProfileProvider.
"""

import threading
from datetime import timedelta

import pytest

from core.utils import utc_now
from feed.interest_profile import InterestProfileProvider, ProfileCache
from feed.models import UserInterestProfile


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def _profile(user_id="viewer-1", computed_at=None) -> UserInterestProfile:
    return UserInterestProfile(user_id=user_id, computed_at=computed_at or utc_now())


class TestProfileCache:

    def test_get_within_ttl(self):
        clock = FakeClock()
        cache = ProfileCache(ttl_seconds=60, clock=clock)
        profile = _profile()
        cache.set("viewer-1", profile)

        clock.t += 59
        assert cache.get("viewer-1") is profile

    def test_entry_expires(self):
        clock = FakeClock()
        cache = ProfileCache(ttl_seconds=60, clock=clock)
        cache.set("viewer-1", _profile())

        clock.t += 60
        assert cache.get("viewer-1") is None
        assert len(cache) == 0

    def test_lru_eviction(self):
        cache = ProfileCache(ttl_seconds=60, max_entries=2, clock=FakeClock())
        cache.set("u1", _profile("u1"))
        cache.set("u2", _profile("u2"))
        cache.get("u1")  # u2 is now least recently used
        cache.set("u3", _profile("u3"))

        assert cache.get("u2") is None
        assert cache.get("u1") is not None
        assert cache.get("u3") is not None

    def test_invalidate_and_clear(self):
        cache = ProfileCache(ttl_seconds=60, clock=FakeClock())
        cache.set("u1", _profile("u1"))
        cache.set("u2", _profile("u2"))

        cache.invalidate("u1")
        assert cache.get("u1") is None
        cache.clear()
        assert len(cache) == 0

    def test_stats_wait_for_writers(self):
        cache = ProfileCache(ttl_seconds=60, clock=FakeClock())
        cache.set("u1", _profile("u1"))
        stats = []

        with cache._lock:
            reader = threading.Thread(target=lambda: stats.append((len(cache), cache.get_stats())))
            reader.start()
            reader.join(0.1)
            assert reader.is_alive()
        reader.join(2.0)

        assert stats == [(1, {"entries": 1, "max_entries": 10_000, "ttl_seconds": 60})]

    @pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"max_entries": 0}])
    def test_invalid_bounds(self, kwargs):
        with pytest.raises(ValueError):
            ProfileCache(**kwargs)

    def test_caches_are_independent(self):
        a = ProfileCache(ttl_seconds=60)
        b = ProfileCache(ttl_seconds=60)
        a.set("u1", _profile("u1"))
        assert b.get("u1") is None


class TestInterestProfileProvider:

    def _row(self, sample_profile_dict, age_hours=0.0):
        return dict(sample_profile_dict, computed_at=(utc_now() - timedelta(hours=age_hours)).isoformat())

    def test_fresh_row_is_cached(self, make_supabase, sample_profile_dict):
        fake = make_supabase(tables={"user_interest_profiles": [self._row(sample_profile_dict)]})
        provider = InterestProfileProvider(fake, cache=ProfileCache(ttl_seconds=3600))

        first = provider.get_outcome("viewer-1")
        second = provider.get_outcome("viewer-1")

        assert first.ok and second.ok
        assert second.value is first.value
        assert fake.queries["user_interest_profiles"].execute.call_count == 1
        fake.rpc.assert_not_called()

    def test_stale_row_triggers_recompute(self, make_supabase, sample_profile_dict):
        fake = make_supabase(tables={"user_interest_profiles": [self._row(sample_profile_dict, age_hours=5)]})
        provider = InterestProfileProvider(fake, stale_hours=1.0)

        outcome = provider.get_outcome("viewer-1")

        assert outcome.ok
        fake.rpc.assert_called_once_with("compute_user_interest_profile", {"p_user_id": "viewer-1"})

    def test_recompute_failure_serves_stale(self, make_supabase, sample_profile_dict):
        fake = make_supabase(
            tables={"user_interest_profiles": [self._row(sample_profile_dict, age_hours=5)]},
            rpcs={"compute_user_interest_profile": RuntimeError("rpc failed")},
        )
        provider = InterestProfileProvider(fake, stale_hours=1.0)

        outcome = provider.get_outcome("viewer-1")

        assert outcome.is_degraded
        assert outcome.value is not None
        assert outcome.value.user_id == "viewer-1"

    def test_no_profile_anywhere(self, fake_supabase):
        provider = InterestProfileProvider(fake_supabase)

        outcome = provider.get_outcome("viewer-1")

        assert outcome.ok
        assert outcome.value is None

    def test_total_failure_returns_none(self, make_supabase):
        fake = make_supabase(
            tables={"user_interest_profiles": RuntimeError("db down")},
            rpcs={"compute_user_interest_profile": RuntimeError("rpc failed")},
        )
        provider = InterestProfileProvider(fake)

        assert provider.get("viewer-1") is None
        assert provider.get_outcome("viewer-1").is_degraded

    def test_malformed_row_treated_as_missing(self, make_supabase):
        fake = make_supabase(tables={"user_interest_profiles": [{"user_id": "viewer-1"}]})
        provider = InterestProfileProvider(fake)

        assert provider.get("viewer-1") is None

    def test_invalidate_only_evicts_memory(self, make_supabase, sample_profile_dict):
        fake = make_supabase(tables={"user_interest_profiles": [self._row(sample_profile_dict)]})
        cache = ProfileCache(ttl_seconds=3600)
        provider = InterestProfileProvider(fake, cache=cache)
        provider.get("viewer-1")

        provider.invalidate("viewer-1")

        assert cache.get("viewer-1") is None
        fake.queries["user_interest_profiles"].delete.assert_not_called()
