"""
Fixed-size pool of fetch workers sharing the frontier.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from ..errors import FetchError, FrontierExhausted, RobotsDisallowed, SeenStoreUnavailable
from .fetcher import FetchResult, WebFetcher
from .parser import LinkExtractor
from .politeness import PolitenessGate
from .robots import RobotsCache
from .url_frontier import FrontierEntry, URLFrontier


ResultHandler = Callable[[FrontierEntry, FetchResult], Awaitable[None]]


@dataclass
class WorkerCounters:
    """Per-URL outcome counts, aggregated over all workers."""
    fetched: int = 0
    dropped_robots: int = 0
    dropped_error: int = 0
    requeued: int = 0
    errors_by_reason: dict = field(default_factory=dict)

    def count_error(self, reason: str):
        self.errors_by_reason[reason] = self.errors_by_reason.get(reason, 0) + 1


class FetchWorkerPool:
    """
    Runs ``num_workers`` worker loops over the frontier.

    Each loop: dequeue an entry whose host slot is already acquired,
    check robots.txt, fetch, classify the outcome, and hand successful
    results to ``on_result``. The host slot is released on every path.
    """

    def __init__(self, frontier: URLFrontier, gate: PolitenessGate, robots: Optional[RobotsCache],
                 fetcher: WebFetcher, extractor: LinkExtractor, on_result: ResultHandler,
                 num_workers: int = 10, monitor=None):
        self.frontier = frontier
        self.gate = gate
        self.robots = robots
        self.fetcher = fetcher
        self.extractor = extractor
        self.on_result = on_result
        self.num_workers = num_workers
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self.counters = WorkerCounters()
        self.fatal_error: Optional[BaseException] = None
        self.active_workers = 0
        self._stop_event: Optional[asyncio.Event] = None
        self._workers: List[asyncio.Task] = []

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """Run all workers until the frontier is exhausted or stop is set."""
        self._stop_event = stop_event or asyncio.Event()
        self._workers = [
            asyncio.create_task(self._worker(f"worker-{i}"))
            for i in range(self.num_workers)
        ]
        self.logger.info(f"Started {self.num_workers} fetch workers")
        try:
            await asyncio.gather(*self._workers)
        finally:
            for worker in self._workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers.clear()

        if self.fatal_error is not None:
            raise self.fatal_error

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()
        self.frontier.wake()

    async def _worker(self, worker_id: str):
        """
        Worker coroutine that processes URLs from the frontier.
        """
        self.logger.debug(f"Worker {worker_id} started")
        self.active_workers += 1

        try:
            while not self._stop_event.is_set():
                try:
                    entry = await self.frontier.dequeue(self._stop_event)
                except FrontierExhausted:
                    self.logger.debug(f"Worker {worker_id}: frontier exhausted")
                    break
                if entry is None:
                    break

                try:
                    await self.process(entry)
                except SeenStoreUnavailable as e:
                    self.logger.error(f"Worker {worker_id}: seen store unavailable, stopping crawl: {e}")
                    self.fatal_error = e
                    self.stop()
                    break
                except Exception as e:
                    # Never let one URL take the worker down
                    self.logger.error(f"Worker {worker_id} error on {entry.url}: {e}", exc_info=True)
        finally:
            self.active_workers -= 1
            self.logger.debug(f"Worker {worker_id} finished")

    async def process(self, entry: FrontierEntry):
        """Fetch one entry whose host slot was acquired by the frontier."""
        url = entry.url

        with self.gate.held(entry.host):
            try:
                if self.robots is not None:
                    rules = await self.robots.get_rules(url)
                    self.gate.apply_rules(entry.host, rules)
                    if not rules.is_allowed(url.path_and_query):
                        raise RobotsDisallowed(f"Blocked by robots.txt: {url}", url=url.url)

                result = await self.fetcher.fetch(url.url)

            except RobotsDisallowed as e:
                self.logger.info(f"Robots.txt blocks access to: {url}")
                self.frontier.drop(entry, e.reason)
                self.counters.dropped_robots += 1
                self._record_drop(e.reason)
                return

            except FetchError as e:
                self.counters.count_error(e.reason)
                if e.retryable and self.frontier.retry(entry, e):
                    self.counters.requeued += 1
                    if self.monitor:
                        self.monitor.record_requeue(e.reason)
                else:
                    if not e.retryable:
                        self.frontier.drop(entry, f"{e.reason}: {e}")
                    self.counters.dropped_error += 1
                    self._record_drop(e.reason)
                return

            except asyncio.CancelledError:
                self.frontier.requeue(entry)
                raise

            except Exception as e:
                self.logger.error(f"Unexpected error fetching {url}: {e}", exc_info=True)
                self.counters.count_error(type(e).__name__)
                if self.frontier.retry(entry, e):
                    self.counters.requeued += 1
                else:
                    self.counters.dropped_error += 1
                    self._record_drop(type(e).__name__)
                return

        # Outside the host lease: parsing does not hold up the host
        result.extracted_links = self.extractor.extract(result.body, result.base_url)
        self.counters.fetched += 1
        if self.monitor:
            self.monitor.record_fetch(result.status_code, result.fetch_time)

        # Entry stays in flight until its links are enqueued
        try:
            await self.on_result(entry, result)
        finally:
            self.frontier.complete(entry)

    def _record_drop(self, reason: str):
        if self.monitor:
            self.monitor.record_drop(reason)
