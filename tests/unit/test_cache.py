"""
Unit tests for TTLCache and SingleFlight.
"""

import asyncio

import pytest

from dbaas.eavdb_server.store.cache import SingleFlight, TTLCache


class FakeTimer:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Tests for TTLCache."""

    @pytest.fixture
    def timer(self):
        return FakeTimer()

    def test_get_set(self, timer):
        """Stored values are returned until they expire."""
        cache = TTLCache(max_size=10, ttl_seconds=5, timer=timer)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache

        timer.now = 5.0
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_lru_eviction(self, timer):
        """The least recently used entry is evicted first."""
        cache = TTLCache(max_size=2, ttl_seconds=60, timer=timer)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_delete_and_clear(self, timer):
        """Entries can be removed one by one or all at once."""
        cache = TTLCache(timer=timer)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_invalid_size(self):
        """max_size must be positive."""
        with pytest.raises(ValueError):
            TTLCache(max_size=0)


class TestSingleFlight:
    """Tests for SingleFlight."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_load(self):
        """N concurrent callers trigger one load."""
        flight = SingleFlight()
        calls = 0

        async def load():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        results = await asyncio.gather(*(flight.do("k", load) for _ in range(10)))

        assert calls == 1
        assert results == [1] * 10
        assert "k" not in flight

    @pytest.mark.asyncio
    async def test_failure_propagates_and_retries(self):
        """Every waiter sees the failure, the next call loads again."""
        flight = SingleFlight()
        attempts = 0

        async def load():
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(0)
            if attempts == 1:
                raise RuntimeError("boom")
            return "ok"

        results = await asyncio.gather(
            flight.do("k", load), flight.do("k", load), return_exceptions=True
        )
        assert all(isinstance(r, RuntimeError) for r in results)

        assert await flight.do("k", load) == "ok"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        """Different keys load separately."""
        flight = SingleFlight()

        async def load_a():
            return "a"

        async def load_b():
            return "b"

        assert await asyncio.gather(flight.do("a", load_a), flight.do("b", load_b)) == ["a", "b"]
