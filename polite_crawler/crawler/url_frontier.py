"""
URL Frontier implementation for managing URLs to crawl.
Buckets entries by priority tier, then by host, and rotates fairly across
hosts that the politeness gate currently allows.
"""

import asyncio
import heapq
import itertools
import logging
import random
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..errors import CrawlerError, FrontierExhausted
from .normalizer import NormalizedURL
from .politeness import PolitenessGate
from ..storage.seen_filter import SeenURLFilter


class URLPriority(Enum):
    """URL priority tiers."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class EntryState(Enum):
    QUEUED = 'queued'
    IN_FLIGHT = 'in_flight'
    DONE = 'done'
    DROPPED = 'dropped'


@dataclass
class FrontierEntry:
    """A URL owned by the frontier."""
    url: NormalizedURL
    priority: URLPriority = URLPriority.NORMAL
    depth: int = 0
    parent_url: Optional[str] = None
    discovered_at: float = field(default_factory=time.time)
    attempt_count: int = 0
    state: EntryState = EntryState.QUEUED
    not_before: float = 0.0
    last_error: Optional[str] = None

    @property
    def host(self) -> str:
        return self.url.host


class URLFrontier:
    """
    Host-partitioned priority queue of URLs to crawl.

    Entry lifecycle: QUEUED -> IN_FLIGHT -> DONE | QUEUED (retry) | DROPPED.
    """

    def __init__(self, gate: PolitenessGate, seen_filter: SeenURLFilter,
                 max_attempts: int = 3, backoff_base: float = 1.0,
                 backoff_max: float = 300.0, idle_wait_min: float = 0.05,
                 idle_wait_max: float = 1.0, stop_when_exhausted: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.gate = gate
        self.seen_filter = seen_filter
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.idle_wait_min = idle_wait_min
        self.idle_wait_max = idle_wait_max
        self.stop_when_exhausted = stop_when_exhausted
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        # tier -> host -> queue
        self._tiers: Dict[URLPriority, "OrderedDict[str, Deque[FrontierEntry]]"] = {
            priority: OrderedDict() for priority in URLPriority
        }
        self._cursors: Dict[URLPriority, int] = {priority: 0 for priority in URLPriority}
        self._tier_order = sorted(URLPriority, key=lambda p: p.value, reverse=True)

        # Retries waiting for their backoff to expire: (not_before, seq, entry)
        self._delayed: List[Tuple[float, int, FrontierEntry]] = []
        self._seq = itertools.count()

        self._in_flight: Dict[str, FrontierEntry] = {}
        self._queued = 0
        self._changed = asyncio.Event()

        self.stats = {
            'enqueued': 0,
            'duplicates': 0,
            'dequeued': 0,
            'completed': 0,
            'requeued': 0,
            'dropped': 0,
        }

    async def enqueue(self, url: NormalizedURL, priority: URLPriority = URLPriority.NORMAL,
                      depth: int = 0, parent_url: Optional[str] = None) -> bool:
        """
        Add a URL to the frontier.

        The seen check and mark happen in one step, so enqueuing the same
        URL twice yields one entry.

        Returns:
            True if the URL was added, False if it was already seen
        """
        if not await self.seen_filter.check_and_mark(url.fingerprint):
            self.stats['duplicates'] += 1
            return False

        entry = FrontierEntry(url=url, priority=priority, depth=depth, parent_url=parent_url)
        self._push(entry)
        self.stats['enqueued'] += 1
        self.logger.debug(f"Added URL to frontier: {url} ({priority.name})")
        return True

    async def enqueue_many(self, items: Iterable[Tuple[NormalizedURL, URLPriority]],
                           depth: int = 0, parent_url: Optional[str] = None) -> int:
        """Add multiple URLs. Returns count of added URLs."""
        added_count = 0
        for url, priority in items:
            if await self.enqueue(url, priority, depth, parent_url):
                added_count += 1
        return added_count

    def _push(self, entry: FrontierEntry):
        entry.state = EntryState.QUEUED
        hosts = self._tiers[entry.priority]
        queue = hosts.get(entry.host)
        if queue is None:
            queue = hosts[entry.host] = deque()
        queue.append(entry)
        self._queued += 1
        self._changed.set()

    def _promote_delayed(self, now: float):
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry = heapq.heappop(self._delayed)
            self._push(entry)

    def try_dequeue(self) -> Tuple[Optional[FrontierEntry], float]:
        """
        Take the next eligible entry without waiting.

        Returns:
            (entry, 0.0) or (None, wait_hint); wait_hint is infinite when
            nothing is queued or delayed
        """
        now = self.clock()
        self._promote_delayed(now)
        wait_hint = float('inf')

        for priority in self._tier_order:
            hosts = self._tiers[priority]
            if not hosts:
                continue

            host_names = list(hosts.keys())
            start = self._cursors[priority] % len(host_names)
            for offset in range(len(host_names)):
                index = (start + offset) % len(host_names)
                host = host_names[index]
                acquired, hint = self.gate.try_acquire(host)
                if not acquired:
                    wait_hint = min(wait_hint, hint)
                    continue

                queue = hosts[host]
                entry = queue.popleft()
                if queue:
                    self._cursors[priority] = index + 1
                else:
                    # Removing the host shifts the next one into this index
                    del hosts[host]
                    self._cursors[priority] = index

                self._queued -= 1
                entry.state = EntryState.IN_FLIGHT
                self._in_flight[entry.url.fingerprint] = entry
                self.stats['dequeued'] += 1
                return entry, 0.0

        if self._delayed:
            wait_hint = min(wait_hint, max(0.0, self._delayed[0][0] - now))
        return None, wait_hint

    async def dequeue(self, stop_event: Optional[asyncio.Event] = None) -> Optional[FrontierEntry]:
        """
        Wait for the next eligible entry.

        Sleeps with jitter while every queued host is cooling down and wakes
        early on new work, completions or stop.

        Returns:
            The entry, or None if ``stop_event`` was set

        Raises:
            FrontierExhausted: nothing queued, delayed or in flight
        """
        while True:
            if stop_event is not None and stop_event.is_set():
                return None

            self._changed.clear()
            entry, wait_hint = self.try_dequeue()
            if entry is not None:
                return entry

            if self.is_exhausted and self.stop_when_exhausted:
                raise FrontierExhausted()

            wait = min(max(wait_hint, self.idle_wait_min), self.idle_wait_max)
            wait *= random.uniform(1.0, 1.25)
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    def complete(self, entry: FrontierEntry):
        """Mark an in-flight entry as successfully fetched."""
        self._finish(entry, EntryState.DONE)
        self.stats['completed'] += 1

    def retry(self, entry: FrontierEntry, error: Optional[BaseException] = None) -> bool:
        """
        Record a failed attempt and requeue with exponential backoff.

        Returns:
            True if requeued, False if the retry ceiling was reached and the
            entry was dropped
        """
        entry.attempt_count += 1
        entry.last_error = self._describe(error)

        if entry.attempt_count >= self.max_attempts:
            self.logger.warning(
                f"URL failed permanently after {entry.attempt_count} attempts: "
                f"{entry.url} ({entry.last_error})")
            self.drop(entry, entry.last_error)
            return False

        self._in_flight.pop(entry.url.fingerprint, None)
        delay = min(self.backoff_max, self.backoff_base * (2 ** (entry.attempt_count - 1)))
        delay *= random.uniform(0.5, 1.5)
        entry.not_before = self.clock() + delay
        entry.state = EntryState.QUEUED
        heapq.heappush(self._delayed, (entry.not_before, next(self._seq), entry))
        self.stats['requeued'] += 1
        self._changed.set()

        self.logger.info(
            f"Retrying URL ({entry.attempt_count}/{self.max_attempts}) in {delay:.2f}s: {entry.url}")
        return True

    def requeue(self, entry: FrontierEntry):
        """Return an interrupted entry without counting an attempt."""
        self._in_flight.pop(entry.url.fingerprint, None)
        self._push(entry)

    def drop(self, entry: FrontierEntry, reason: Optional[str] = None):
        """Discard an entry for good."""
        entry.last_error = reason or entry.last_error
        self._finish(entry, EntryState.DROPPED)
        self.stats['dropped'] += 1
        self.logger.debug(f"Dropped URL {entry.url}: {entry.last_error}")

    def _finish(self, entry: FrontierEntry, state: EntryState):
        self._in_flight.pop(entry.url.fingerprint, None)
        entry.state = state
        self._changed.set()

    @staticmethod
    def _describe(error: Optional[BaseException]) -> Optional[str]:
        if error is None:
            return None
        if isinstance(error, CrawlerError):
            return f"{error.reason}: {error}"
        return f"{type(error).__name__}: {error}"

    def wake(self):
        """Wake waiting dequeuers, e.g. after a stop request."""
        self._changed.set()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def is_exhausted(self) -> bool:
        return self._queued == 0 and not self._delayed and not self._in_flight

    def __len__(self) -> int:
        return self._queued + len(self._delayed)

    def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            **self.stats,
            'queued': self._queued,
            'delayed': len(self._delayed),
            'in_flight': len(self._in_flight),
            'hosts_with_urls': len({host for hosts in self._tiers.values() for host in hosts}),
        }
