"""
Per-host politeness: crawl-delay spacing and in-flight limits.
"""

import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

from .robots import RobotsRules


@dataclass
class HostState:
    """Politeness state of a single host."""
    host: str
    crawl_delay: float
    last_fetch_at: Optional[float] = None
    in_flight: int = 0
    robots_rules: Optional[RobotsRules] = None


class HostStateStore:
    """
    Injectable store of HostState entries.

    Entries are created lazily. When ``max_hosts`` is set the least
    recently used host that is both idle and past its crawl delay is
    evicted. A host with fetches in flight, or one fetched less than
    ``crawl_delay`` ago, is kept even if the store grows beyond
    ``max_hosts``.
    """

    def __init__(self, max_hosts: Optional[int] = None):
        self.max_hosts = max_hosts
        self._states: "OrderedDict[str, HostState]" = OrderedDict()
        self.evictions = 0

    def get(self, host: str, default_crawl_delay: float, now: float) -> HostState:
        state = self._states.get(host)
        if state is None:
            state = HostState(host=host, crawl_delay=default_crawl_delay)
            self._states[host] = state
            self._evict(keep=host, now=now)
        else:
            self._states.move_to_end(host)
        return state

    def peek(self, host: str) -> Optional[HostState]:
        return self._states.get(host)

    @staticmethod
    def _evictable(state: HostState, now: float) -> bool:
        if state.in_flight:
            return False
        return state.last_fetch_at is None or now - state.last_fetch_at >= state.crawl_delay

    def _evict(self, keep: str, now: float):
        if self.max_hosts is None:
            return
        while len(self._states) > self.max_hosts:
            victim = next((h for h, s in self._states.items()
                           if h != keep and self._evictable(s, now)), None)
            if victim is None:
                return
            del self._states[victim]
            self.evictions += 1

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[HostState]:
        return iter(list(self._states.values()))


class PolitenessGate:
    """
    Decides whether a host may be fetched now.

    ``try_acquire`` and ``release`` are the only mutators of HostState and
    run under a single lock, so two acquisitions for the same host can never
    exceed ``max_concurrent_per_host``.
    """

    def __init__(self, store: Optional[HostStateStore] = None,
                 default_crawl_delay: float = 1.0,
                 max_concurrent_per_host: int = 1,
                 max_crawl_delay: float = 60.0,
                 busy_wait_hint: float = 0.1,
                 clock: Callable[[], float] = time.monotonic):
        if max_concurrent_per_host < 1:
            raise ValueError("max_concurrent_per_host must be at least 1")

        self.store = store if store is not None else HostStateStore()
        self.default_crawl_delay = default_crawl_delay
        self.max_concurrent_per_host = max_concurrent_per_host
        self.max_crawl_delay = max_crawl_delay
        self.busy_wait_hint = busy_wait_hint
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def try_acquire(self, host: str) -> Tuple[bool, float]:
        """
        Try to take a fetch slot for ``host``.

        Returns:
            (True, 0.0) when granted, otherwise (False, wait_hint) where
            wait_hint is the minimum delay before the host may be eligible
        """
        with self._lock:
            now = self.clock()
            state = self.store.get(host, self.default_crawl_delay, now)

            remaining = 0.0
            if state.last_fetch_at is not None:
                remaining = max(0.0, state.crawl_delay - (now - state.last_fetch_at))

            if state.in_flight >= self.max_concurrent_per_host:
                return False, max(remaining, self.busy_wait_hint)
            if remaining > 0:
                return False, remaining

            state.last_fetch_at = now
            state.in_flight += 1
            return True, 0.0

    def release(self, host: str):
        with self._lock:
            state = self.store.peek(host)
            if state is None or state.in_flight == 0:
                self.logger.warning(f"Release without matching acquire for host {host}")
                return
            state.in_flight -= 1

    @contextmanager
    def held(self, host: str):
        """Scope an acquired slot; the slot is released on every exit path."""
        try:
            yield
        finally:
            self.release(host)

    def set_crawl_delay(self, host: str, delay: Optional[float]):
        """Apply a robots.txt crawl delay, never going below the default."""
        effective = self.default_crawl_delay
        if delay is not None:
            effective = max(effective, min(float(delay), self.max_crawl_delay))
        with self._lock:
            state = self.store.get(host, self.default_crawl_delay, self.clock())
            if state.crawl_delay != effective:
                self.logger.debug(f"Crawl delay for {host} set to {effective:.2f}s")
            state.crawl_delay = effective

    def apply_rules(self, host: str, rules: RobotsRules):
        self.set_crawl_delay(host, rules.crawl_delay)
        with self._lock:
            self.store.get(host, self.default_crawl_delay, self.clock()).robots_rules = rules

    def crawl_delay(self, host: str) -> float:
        state = self.store.peek(host)
        return state.crawl_delay if state else self.default_crawl_delay

    def in_flight(self, host: Optional[str] = None) -> int:
        if host is not None:
            state = self.store.peek(host)
            return state.in_flight if state else 0
        return sum(state.in_flight for state in self.store)

    def get_stats(self) -> Dict[str, int]:
        return {
            'known_hosts': len(self.store),
            'in_flight': self.in_flight(),
            'evicted_hosts': self.store.evictions,
        }
