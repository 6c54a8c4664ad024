"""
Shard ownership for distributed crawls.

Every host is owned by exactly one shard, chosen by consistent hashing,
so its politeness state lives in one place. URLs for hosts owned by other
shards are forwarded to that shard's inbox.
"""

import asyncio
import bisect
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import ShardTransportError
from .normalizer import NormalizedURL


class HashRing:
    """Consistent hash ring with virtual nodes."""

    def __init__(self, nodes: Iterable[str], vnodes: int = 100):
        self.vnodes = vnodes
        self._ring: List[Tuple[int, str]] = []
        self._keys: List[int] = []
        self.nodes: List[str] = []
        for node in nodes:
            self.add_node(node)

    @staticmethod
    def _hash(value: str) -> int:
        return int.from_bytes(hashlib.md5(value.encode('utf-8')).digest()[:8], 'big')

    def add_node(self, node: str):
        if node in self.nodes:
            return
        self.nodes.append(node)
        for i in range(self.vnodes):
            bisect.insort(self._ring, (self._hash(f"{node}#{i}"), node))
        self._keys = [point for point, _ in self._ring]

    def remove_node(self, node: str):
        if node not in self.nodes:
            return
        self.nodes.remove(node)
        self._ring = [(point, owner) for point, owner in self._ring if owner != node]
        self._keys = [point for point, _ in self._ring]

    def get_node(self, key: str) -> str:
        if not self._ring:
            raise ValueError("Hash ring has no nodes")
        index = bisect.bisect(self._keys, self._hash(key)) % len(self._ring)
        return self._ring[index][1]


@dataclass
class ShardMessage:
    """A URL forwarded to the shard that owns its host."""
    host: str
    url: str
    priority: int
    depth: int = 0
    parent_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'host': self.host,
            'url': self.url,
            'priority': self.priority,
            'depth': self.depth,
            'parent_url': self.parent_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ShardMessage':
        return cls(
            host=data['host'],
            url=data['url'],
            priority=data['priority'],
            depth=data.get('depth', 0),
            parent_url=data.get('parent_url'),
        )


class ShardTransport:
    """Point-to-point delivery of ShardMessages between shards."""

    async def send(self, shard_id: str, message: ShardMessage):
        raise NotImplementedError

    def receive(self, shard_id: str, stop_event: asyncio.Event) -> AsyncIterator[ShardMessage]:
        raise NotImplementedError

    async def close(self):
        """Release resources."""


class InMemoryShardTransport(ShardTransport):
    """Transport for shards living in one process (tests, local runs)."""

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval
        self._queues: Dict[str, asyncio.Queue] = {}

    def _queue(self, shard_id: str) -> asyncio.Queue:
        if shard_id not in self._queues:
            self._queues[shard_id] = asyncio.Queue()
        return self._queues[shard_id]

    async def send(self, shard_id: str, message: ShardMessage):
        await self._queue(shard_id).put(message)

    async def receive(self, shard_id: str, stop_event: asyncio.Event) -> AsyncIterator[ShardMessage]:
        queue = self._queue(shard_id)
        while not stop_event.is_set():
            try:
                yield await asyncio.wait_for(queue.get(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    def pending(self, shard_id: str) -> int:
        return self._queue(shard_id).qsize()


class RedisShardTransport(ShardTransport):
    """Each shard's inbox is a Redis list of JSON messages."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "crawler:shard:",
                 poll_timeout: int = 1):
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.poll_timeout = poll_timeout
        self.logger = logging.getLogger(__name__)

    def _inbox(self, shard_id: str) -> str:
        return f"{self.key_prefix}{shard_id}:inbox"

    async def send(self, shard_id: str, message: ShardMessage):
        try:
            await self.redis_client.rpush(self._inbox(shard_id), json.dumps(message.to_dict()))
        except RedisError as e:
            raise ShardTransportError(f"Cannot forward to shard {shard_id}: {e}", url=message.url)

    async def receive(self, shard_id: str, stop_event: asyncio.Event) -> AsyncIterator[ShardMessage]:
        inbox = self._inbox(shard_id)
        while not stop_event.is_set():
            try:
                item = await self.redis_client.blpop([inbox], timeout=self.poll_timeout)
            except RedisError as e:
                raise ShardTransportError(f"Cannot read inbox {inbox}: {e}")
            if item is None:
                continue
            _, payload = item
            try:
                yield ShardMessage.from_dict(json.loads(payload))
            except (ValueError, KeyError) as e:
                self.logger.warning(f"Discarding malformed shard message: {e}")


class ShardRouter:
    """Decides which shard owns a host and forwards foreign URLs."""

    def __init__(self, shard_id: str, shard_ids: Iterable[str], transport: ShardTransport,
                 vnodes: int = 100):
        shard_ids = list(shard_ids)
        if shard_id not in shard_ids:
            raise ValueError(f"Shard {shard_id!r} is not part of {shard_ids}")

        self.shard_id = shard_id
        self.ring = HashRing(shard_ids, vnodes=vnodes)
        self.transport = transport
        self.logger = logging.getLogger(__name__)
        self.forwarded = 0

    def owner(self, host: str) -> str:
        return self.ring.get_node(host)

    def owns(self, host: str) -> bool:
        return self.owner(host) == self.shard_id

    async def forward(self, url: NormalizedURL, priority: int, depth: int = 0,
                      parent_url: Optional[str] = None) -> str:
        """Send ``url`` to its owning shard. Returns the shard id."""
        owner = self.owner(url.host)
        message = ShardMessage(host=url.host, url=url.url, priority=priority,
                               depth=depth, parent_url=parent_url)
        await self.transport.send(owner, message)
        self.forwarded += 1
        self.logger.debug(f"Forwarded {url} to shard {owner}")
        return owner

    def inbox(self, stop_event: asyncio.Event) -> AsyncIterator[ShardMessage]:
        return self.transport.receive(self.shard_id, stop_event)
