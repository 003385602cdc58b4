"""
Unit tests for the usage read cache.
"""

from datetime import date

import pytest

from usage_guard.storage.cache import UsageCache
from usage_guard.storage.models import UsageCounter

KEY = ("user-1", date(2024, 3, 10))


def _counter(total: int, identity: str = "user-1") -> UsageCounter:
    return UsageCounter(identity=identity, day=KEY[1], summary_count=total, total_count=total)


@pytest.fixture
def cache(clock):
    return UsageCache(ttl_seconds=60, clock=clock)


class TestUsageCache:
    """Test TTL expiry and write invalidation."""

    def test_hit_within_ttl(self, cache, clock):
        assert cache.put(KEY, _counter(2), cache.generation(KEY))
        clock.advance(59)

        assert cache.get(KEY).total_count == 2

    def test_expired_entry_is_deleted(self, cache, clock):
        cache.put(KEY, _counter(2), cache.generation(KEY))
        clock.advance(61)

        assert cache.get(KEY) is None
        assert len(cache) == 0

    def test_invalidate_removes_entry(self, cache):
        cache.put(KEY, _counter(1), cache.generation(KEY))

        cache.invalidate(KEY)

        assert cache.get(KEY) is None

    def test_stale_read_cannot_repopulate_after_write(self, cache):
        """A read that started before a write must not cache its old value."""
        generation = cache.generation(KEY)

        cache.invalidate(KEY)

        assert cache.put(KEY, _counter(1), generation) is False
        assert cache.get(KEY) is None

    def test_clear_also_rejects_in_flight_puts(self, cache):
        cache.invalidate(KEY)
        generation = cache.generation(KEY)

        cache.clear()

        assert cache.put(KEY, _counter(1), generation) is False

    def test_prune_before_cutoff(self, cache):
        old_key = ("user-1", date(2024, 1, 1))
        cache.put(old_key, _counter(1), 0)
        cache.put(KEY, _counter(1), 0)

        cache.prune_before(date(2024, 2, 1))

        assert cache.get(old_key) is None
        assert cache.get(KEY) is not None

    def test_rejects_invalid_bounds(self):
        with pytest.raises(ValueError):
            UsageCache(ttl_seconds=0)
        with pytest.raises(ValueError):
            UsageCache(maxsize=0)


class TestCacheBounds:
    """Test that entries which are never read still leave the cache."""

    def test_unread_entries_expire(self, cache, clock):
        for i in range(1000):
            key = (f"user-{i}", KEY[1])
            cache.put(key, _counter(1, key[0]), cache.generation(key))
        assert len(cache) == 1000

        clock.advance(61)

        assert len(cache) == 0

    def test_size_is_bounded(self, clock):
        cache = UsageCache(ttl_seconds=60, maxsize=100, clock=clock)

        for i in range(1000):
            key = (f"user-{i}", KEY[1])
            cache.put(key, _counter(1, key[0]), cache.generation(key))

        assert len(cache) == 100
        assert cache.get(("user-999", KEY[1])) is not None
