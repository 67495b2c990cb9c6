"""Tests for the in-process TTL key store used when Redis is unavailable."""

import asyncio
import threading

from useraccess.storage.memory import MemoryCache


class TestBasicOperations:
    async def test_set_get_and_overwrite(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v1", 10)
        await cache.set("k", "v2", 10)
        assert await cache.get("k") == "v2"

    async def test_overwrite_resets_ttl(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 10)
        clock.advance(8)
        await cache.set("k", "v", 10)
        assert await cache.get_ttl("k") == 10

    async def test_entries_expire(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 10)
        clock.advance(9)
        assert await cache.has_key("k") is True
        clock.advance(1)
        assert await cache.get("k") is None
        assert await cache.has_key("k") is False
        assert await cache.get_ttl("k") is None

    async def test_delete_ignores_missing_keys(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("a", "1", 10)
        removed = await cache.delete("a", "missing")
        assert removed == 1
        assert await cache.get("a") is None

    async def test_get_many_preserves_order(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("a", "1", 10)
        await cache.set("c", "3", 10)
        assert await cache.get_many(["a", "b", "c"]) == ["1", None, "3"]


class TestAtomicPrimitives:
    async def test_set_if_absent_only_writes_once(self, clock):
        cache = MemoryCache(clock=clock)
        assert await cache.set_if_absent("k", "first", 10) is True
        assert await cache.set_if_absent("k", "second", 10) is False
        assert await cache.get("k") == "first"

    async def test_set_if_absent_after_expiry(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set_if_absent("k", "first", 10)
        clock.advance(10)
        assert await cache.set_if_absent("k", "second", 10) is True
        assert await cache.get("k") == "second"

    async def test_increment_stops_at_ceiling(self, clock):
        cache = MemoryCache(clock=clock)
        results = [await cache.increment_with_ceiling("n", 3, 60) for _ in range(5)]
        assert results == [(True, 1), (True, 2), (True, 3), (False, 3), (False, 3)]
        assert await cache.get("n") == "3"

    async def test_increment_resets_ttl(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.increment_with_ceiling("n", 3, 60)
        clock.advance(50)
        await cache.increment_with_ceiling("n", 3, 60)
        assert await cache.get_ttl("n") == 60

    def test_concurrent_set_if_absent_has_one_winner(self):
        cache = MemoryCache()
        winners = []
        barrier = threading.Barrier(8)

        def claim(idx):
            barrier.wait()
            if asyncio.run(cache.set_if_absent("race", str(idx), 30)):
                winners.append(idx)

        threads = [threading.Thread(target=claim, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1

    def test_concurrent_increments_never_exceed_ceiling(self):
        cache = MemoryCache()
        barrier = threading.Barrier(10)

        def bump():
            barrier.wait()
            asyncio.run(cache.increment_with_ceiling("n", 3, 30))

        threads = [threading.Thread(target=bump) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert asyncio.run(cache.get("n")) == "3"
