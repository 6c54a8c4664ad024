"""
Seen-URL filter: a bloom filter in front of an exact key store.

The bloom layer rejects never-seen URLs without touching the backing
store. Only "maybe seen" answers are arbitrated by the exact store, which
is the source of truth.
"""

import hashlib
import logging
import math
from typing import AsyncIterator, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import SeenStoreUnavailable


class BloomFilter:
    """
    Append-only bloom filter over a bytearray.

    Bit positions come from double hashing of a single blake2b digest
    (h1 + i * h2 mod m).
    """

    def __init__(self, capacity: int, error_rate: float = 0.01):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if not 0 < error_rate < 1:
            raise ValueError("error_rate must be between 0 and 1")

        self.capacity = capacity
        self.error_rate = error_rate
        self.num_bits = max(8, int(math.ceil(-capacity * math.log(error_rate) / (math.log(2) ** 2))))
        self.num_hashes = max(1, int(round(self.num_bits / capacity * math.log(2))))
        self._bits = bytearray((self.num_bits + 7) // 8)
        self.count = 0

    def _positions(self, key: str):
        digest = hashlib.blake2b(key.encode('utf-8'), digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], 'big')
        h2 = int.from_bytes(digest[8:], 'big') | 1
        for i in range(self.num_hashes):
            yield (h1 + i * h2) % self.num_bits

    def add(self, key: str) -> bool:
        """Add a key. Returns True if at least one bit was newly set."""
        changed = False
        for position in self._positions(key):
            byte_index, mask = position >> 3, 1 << (position & 7)
            if not self._bits[byte_index] & mask:
                self._bits[byte_index] |= mask
                changed = True
        if changed:
            self.count += 1
        return changed

    def __contains__(self, key: str) -> bool:
        return all(
            self._bits[position >> 3] & (1 << (position & 7))
            for position in self._positions(key)
        )

    def __len__(self) -> int:
        return self.count


class SeenStore:
    """Abstract exact membership store."""

    async def initialize(self):
        """Prepare the store."""

    async def contains(self, key: str) -> bool:
        raise NotImplementedError

    async def add(self, key: str) -> bool:
        """Atomically add a key. Returns True if it was not present."""
        raise NotImplementedError

    def iter_keys(self) -> AsyncIterator[str]:
        raise NotImplementedError

    async def close(self):
        """Release resources."""


class MemorySeenStore(SeenStore):
    """In-process exact store for single-node runs and tests."""

    def __init__(self):
        self._keys: Set[str] = set()

    async def contains(self, key: str) -> bool:
        return key in self._keys

    async def add(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    async def iter_keys(self) -> AsyncIterator[str]:
        for key in list(self._keys):
            yield key


class RedisSeenStore(SeenStore):
    """Exact store backed by a Redis set shared by all workers of a shard."""

    def __init__(self, redis_client: redis.Redis, key: str = "crawler:seen:urls"):
        self.redis_client = redis_client
        self.key = key
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        try:
            await self.redis_client.ping()
        except RedisError as e:
            raise SeenStoreUnavailable(f"Redis seen store unreachable: {e}")

    async def contains(self, key: str) -> bool:
        try:
            return bool(await self.redis_client.sismember(self.key, key))
        except RedisError as e:
            raise SeenStoreUnavailable(f"Redis SISMEMBER failed: {e}")

    async def add(self, key: str) -> bool:
        try:
            return await self.redis_client.sadd(self.key, key) == 1
        except RedisError as e:
            raise SeenStoreUnavailable(f"Redis SADD failed: {e}")

    async def iter_keys(self) -> AsyncIterator[str]:
        try:
            async for member in self.redis_client.sscan_iter(self.key, count=1000):
                yield member.decode('utf-8') if isinstance(member, bytes) else member
        except RedisError as e:
            raise SeenStoreUnavailable(f"Redis SSCAN failed: {e}")


class SeenURLFilter:
    """
    Two-tier membership test for URL fingerprints.

    Without an exact store the filter is bloom-only: a false positive then
    skips a new URL, which is accepted as best-effort completeness.
    """

    def __init__(self, store: Optional[SeenStore] = None,
                 capacity: int = 1_000_000, error_rate: float = 0.01):
        self.store = store
        self.bloom = BloomFilter(capacity, error_rate)
        self.logger = logging.getLogger(__name__)

        # Keys whose exact-store write is still in progress
        self._pending: Set[str] = set()

        self.stats = {
            'checks': 0,
            'marked': 0,
            'bloom_maybe': 0,
            'false_positives': 0,
        }

    async def initialize(self):
        """Warm the bloom layer from the exact store so bloom misses stay exact."""
        if self.store is None:
            return
        await self.store.initialize()
        loaded = 0
        async for key in self.store.iter_keys():
            self.bloom.add(key)
            loaded += 1
        self.logger.info(f"Seen filter initialized with {loaded} known URLs")

    async def is_seen(self, key: str) -> bool:
        self.stats['checks'] += 1
        if key in self._pending:
            return True
        if key not in self.bloom:
            return False
        self.stats['bloom_maybe'] += 1
        if self.store is None:
            return True
        seen = await self.store.contains(key)
        if not seen:
            self.stats['false_positives'] += 1
        return seen

    async def mark_seen(self, key: str):
        await self.check_and_mark(key)

    async def check_and_mark(self, key: str) -> bool:
        """
        Mark a key as seen in one critical section.

        Returns:
            True if the key was not seen before and is now marked
        """
        self.stats['checks'] += 1
        if key in self._pending:
            return False

        maybe_seen = key in self.bloom
        self.bloom.add(key)

        if self.store is None:
            if maybe_seen:
                self.stats['bloom_maybe'] += 1
                return False
            self.stats['marked'] += 1
            return True

        self._pending.add(key)
        try:
            added = await self.store.add(key)
        finally:
            self._pending.discard(key)

        if maybe_seen:
            self.stats['bloom_maybe'] += 1
            if added:
                self.stats['false_positives'] += 1

        # The exact store decides
        if added:
            self.stats['marked'] += 1
        return added

    def get_stats(self):
        return {**self.stats, 'bloom_entries': len(self.bloom), 'bloom_bits': self.bloom.num_bits}

    async def close(self):
        if self.store is not None:
            await self.store.close()
