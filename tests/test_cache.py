"""
Tests for SimpleCache
"""
import pytest

from services.cache import SimpleCache, make_cache_key


@pytest.fixture
def cache(clock):
    return SimpleCache(default_ttl=60, max_entries=3, clock=clock)


class TestSimpleCache:

    def test_set_and_get(self, cache):
        cache.set("a", {"value": 1})
        assert cache.get("a") == {"value": 1}

    def test_missing_key(self, cache):
        assert cache.get("missing") is None

    def test_expires_after_ttl(self, cache, clock):
        cache.set("a", 1)
        clock.advance(60.5)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_custom_ttl(self, cache, clock):
        cache.set("a", 1, ttl=5)
        clock.advance(4)
        assert cache.get("a") == 1
        clock.advance(2)
        assert cache.get("a") is None

    def test_evicts_oldest_when_full(self, cache):
        for key in ("a", "b", "c", "d"):
            cache.set(key, key)

        assert len(cache) == 3
        assert cache.get("a") is None
        assert cache.get("d") == "d"

    def test_rewrite_refreshes_position(self, cache):
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.set("a", "a2")
        cache.set("d", "d")

        assert cache.get("a") == "a2"
        assert cache.get("b") is None

    def test_expired_entries_evicted_before_live_ones(self, cache, clock):
        cache.set("short", 1, ttl=1)
        cache.set("b", 2)
        cache.set("c", 3)
        clock.advance(2)
        cache.set("d", 4)

        assert cache.get("b") == 2
        assert cache.get("d") == 4

    def test_cleanup_and_delete(self, cache, clock):
        cache.set("a", 1, ttl=1)
        cache.set("b", 2)
        clock.advance(2)

        assert cache.cleanup() == 1
        cache.delete("b")
        assert len(cache) == 0

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.clear()
        assert cache.get("a") is None


def test_cache_key_is_unambiguous():
    assert make_cache_key("ab", "c") != make_cache_key("a", "bc")
    assert make_cache_key("user:1", "q") == make_cache_key("user:1", "q")
