"""
Seen-URL filter: bloom layer, exact stores and failure escalation.
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from polite_crawler.errors import SeenStoreUnavailable
from polite_crawler.storage.seen_filter import BloomFilter, MemorySeenStore, RedisSeenStore, SeenURLFilter


class TestBloomFilter(unittest.TestCase):

    def test_no_false_negatives(self):
        bloom = BloomFilter(capacity=1000, error_rate=0.01)
        keys = [f"key-{i}" for i in range(1000)]
        for key in keys:
            bloom.add(key)
        self.assertTrue(all(key in bloom for key in keys))

    def test_false_positive_rate_is_bounded(self):
        bloom = BloomFilter(capacity=1000, error_rate=0.01)
        for i in range(1000):
            bloom.add(f"member-{i}")
        false_positives = sum(1 for i in range(10_000) if f"other-{i}" in bloom)
        self.assertLess(false_positives / 10_000, 0.05)

    def test_rejects_bad_parameters(self):
        with self.assertRaises(ValueError):
            BloomFilter(capacity=0)
        with self.assertRaises(ValueError):
            BloomFilter(capacity=10, error_rate=1.5)


class TestSeenURLFilter(unittest.IsolatedAsyncioTestCase):

    async def test_check_and_mark_once(self):
        seen = SeenURLFilter(MemorySeenStore(), capacity=100)
        self.assertFalse(await seen.is_seen("abc"))
        self.assertTrue(await seen.check_and_mark("abc"))
        self.assertFalse(await seen.check_and_mark("abc"))
        self.assertTrue(await seen.is_seen("abc"))

    async def test_concurrent_marks_admit_exactly_one(self):
        seen = SeenURLFilter(MemorySeenStore(), capacity=100)
        results = await asyncio.gather(*(seen.check_and_mark("same") for _ in range(10)))
        self.assertEqual(results.count(True), 1)

    async def test_bloom_only_mode(self):
        seen = SeenURLFilter(store=None, capacity=100)
        self.assertTrue(await seen.check_and_mark("abc"))
        self.assertFalse(await seen.check_and_mark("abc"))

    async def test_initialize_warms_bloom_from_store(self):
        store = MemorySeenStore()
        await store.add("known")
        seen = SeenURLFilter(store, capacity=100)
        await seen.initialize()
        self.assertIn("known", seen.bloom)
        self.assertTrue(await seen.is_seen("known"))
        self.assertFalse(await seen.check_and_mark("known"))

    async def test_redis_store_add(self):
        client = MagicMock()
        client.sadd = AsyncMock(side_effect=[1, 0])
        store = RedisSeenStore(client, key="test:seen")
        self.assertTrue(await store.add("k"))
        self.assertFalse(await store.add("k"))
        client.sadd.assert_awaited_with("test:seen", "k")

    async def test_redis_failure_escalates(self):
        """Scenario: the exact store is down, so the filter cannot answer."""
        client = MagicMock()
        client.sadd = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        seen = SeenURLFilter(RedisSeenStore(client), capacity=100)

        with self.assertRaises(SeenStoreUnavailable):
            await seen.check_and_mark("abc")
        # The failed key is not left pending
        self.assertNotIn("abc", seen._pending)

    async def test_redis_initialize_failure(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        seen = SeenURLFilter(RedisSeenStore(client), capacity=100)
        with self.assertRaises(SeenStoreUnavailable):
            await seen.initialize()


if __name__ == "__main__":
    unittest.main()
