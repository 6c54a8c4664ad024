"""
Crawl coordinator that wires the crawler components together and manages
the overall crawl process.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import redis.asyncio as redis

from ..errors import SeenStoreUnavailable, ShardTransportError
from .fetcher import FetchResult, WebFetcher
from .normalizer import NormalizedURL, try_normalize
from .parser import LinkExtractor
from .politeness import HostStateStore, PolitenessGate
from .robots import RobotsCache
from .sharding import InMemoryShardTransport, RedisShardTransport, ShardMessage, ShardRouter
from .url_frontier import FrontierEntry, URLFrontier, URLPriority
from .worker_pool import FetchWorkerPool
from ..storage.database import ContentStoreManager, DatabaseError
from ..storage.seen_filter import BloomFilter, MemorySeenStore, RedisSeenStore, SeenURLFilter
from ..utils.config import Config, PriorityConfig
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor, initialize_monitoring


SeedItem = Union[str, Tuple[str, Union[URLPriority, int]]]


@dataclass
class CrawlStats:
    """Statistics for crawl operations."""
    start_time: float
    fetched: int = 0
    dropped_robots: int = 0
    dropped_error: int = 0
    dropped_invalid: int = 0
    requeued: int = 0
    links_discovered: int = 0
    links_enqueued: int = 0
    links_forwarded: int = 0
    forwards_suppressed: int = 0
    links_beyond_depth: int = 0
    stored: int = 0
    store_errors: int = 0
    bytes_downloaded: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.fetched / elapsed_minutes if elapsed_minutes > 0 else 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['elapsed_time'] = self.elapsed_time
        data['pages_per_minute'] = self.pages_per_minute
        return data


@dataclass
class PriorityWeights:
    """Scoring weights that map a discovered link to a priority tier."""
    base: float = 3.0
    depth_penalty: float = 0.5
    path_depth_penalty: float = 0.1
    same_host_bonus: float = 0.5
    host_importance: Optional[Dict[str, float]] = None
    high_threshold: float = 3.0
    normal_threshold: float = 1.5

    @classmethod
    def from_config(cls, config: PriorityConfig) -> 'PriorityWeights':
        return cls(
            base=config.base,
            depth_penalty=config.depth_penalty,
            path_depth_penalty=config.path_depth_penalty,
            same_host_bonus=config.same_host_bonus,
            host_importance=dict(config.host_importance),
            high_threshold=config.high_threshold,
            normal_threshold=config.normal_threshold,
        )

    def score(self, url: NormalizedURL, depth: int, parent: Optional[NormalizedURL] = None) -> float:
        score = self.base
        score -= self.depth_penalty * depth
        score -= self.path_depth_penalty * url.depth
        score += (self.host_importance or {}).get(url.host, 0.0)
        if parent is not None and parent.host == url.host:
            score += self.same_host_bonus
        return score

    def tier(self, score: float) -> URLPriority:
        if score >= self.high_threshold:
            return URLPriority.HIGH
        if score >= self.normal_threshold:
            return URLPriority.NORMAL
        return URLPriority.LOW


class CrawlCoordinator:
    """
    Main coordinator of a crawl.

    Builds any component that was not injected, seeds the frontier, runs
    the worker pool and turns fetched pages into new frontier entries.
    In a sharded deployment it only enqueues URLs whose host this shard
    owns and forwards the rest.
    """

    def __init__(self, config: Config,
                 frontier: Optional[URLFrontier] = None,
                 seen_filter: Optional[SeenURLFilter] = None,
                 gate: Optional[PolitenessGate] = None,
                 robots: Optional[RobotsCache] = None,
                 fetcher: Optional[WebFetcher] = None,
                 extractor: Optional[LinkExtractor] = None,
                 content_store: Optional[ContentStoreManager] = None,
                 shard_router: Optional[ShardRouter] = None,
                 monitor: Optional[CrawlerMonitor] = None,
                 redis_client: Optional[redis.Redis] = None):
        self.config = config
        self.frontier = frontier
        self.seen_filter = seen_filter
        self.gate = gate
        self.robots = robots
        self.fetcher = fetcher
        self.extractor = extractor
        self.content_store = content_store
        self.shard_router = shard_router
        self.monitor = monitor
        self.redis_client = redis_client

        self.logger = get_crawler_logger(
            __name__, shard_id=config.sharding.shard_id if config.sharding.enabled else None)

        self.weights = PriorityWeights.from_config(config.priority)
        self.max_depth = config.crawler.max_depth
        self.pool: Optional[FetchWorkerPool] = None
        self.stats = CrawlStats(start_time=time.time())
        self.is_running = False

        self._owned: List[str] = []
        self._initialized = False
        self._max_pages: Optional[int] = None
        self._seeded = False
        self._forwarded: Optional[BloomFilter] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def initialize(self):
        """Initialize all components that were not injected."""
        if self._initialized:
            return

        try:
            if self.redis_client is None and self.config.uses_redis:
                self.redis_client = redis.Redis(
                    host=self.config.redis.host,
                    port=self.config.redis.port,
                    db=self.config.redis.db,
                    password=self.config.redis.password,
                    decode_responses=False
                )
                await self.redis_client.ping()
                self._owned.append('redis_client')
                self.logger.info("Redis connection established")

            if self.seen_filter is None:
                self.seen_filter = SeenURLFilter(
                    store=self._build_seen_store(),
                    capacity=self.config.seen_filter.capacity,
                    error_rate=self.config.seen_filter.error_rate
                )
                await self.seen_filter.initialize()
                self._owned.append('seen_filter')

            if self.gate is None:
                politeness = self.config.politeness
                self.gate = PolitenessGate(
                    HostStateStore(max_hosts=politeness.max_hosts),
                    default_crawl_delay=politeness.default_crawl_delay,
                    max_concurrent_per_host=politeness.max_concurrent_per_host,
                    max_crawl_delay=politeness.max_crawl_delay
                )

            if self.frontier is None:
                frontier_config = self.config.frontier
                self.frontier = URLFrontier(
                    self.gate,
                    self.seen_filter,
                    max_attempts=frontier_config.max_attempts,
                    backoff_base=frontier_config.backoff_base,
                    backoff_max=frontier_config.backoff_max,
                    idle_wait_min=frontier_config.idle_wait_min,
                    idle_wait_max=frontier_config.idle_wait_max,
                    # Another shard may still forward work
                    stop_when_exhausted=not self.config.sharding.enabled
                )

            if self.fetcher is None:
                crawler = self.config.crawler
                self.fetcher = WebFetcher(
                    user_agent=crawler.user_agent,
                    request_timeout=crawler.request_timeout,
                    max_redirects=crawler.max_redirects,
                    max_body_bytes=crawler.max_body_bytes,
                    max_connections=crawler.max_connections,
                    max_connections_per_host=max(2, self.config.politeness.max_concurrent_per_host)
                )
                await self.fetcher.start()
                self._owned.append('fetcher')

            if self.robots is None and self.config.robots.enabled:
                robots_config = self.config.robots
                self.robots = RobotsCache(
                    self.fetcher,
                    self.config.crawler.user_agent,
                    timeout=robots_config.timeout,
                    ttl=robots_config.ttl,
                    unreachable_ttl=robots_config.unreachable_ttl,
                    unreachable_policy=robots_config.unreachable_policy,
                    max_entries=robots_config.max_entries
                )

            if self.extractor is None:
                self.extractor = LinkExtractor(
                    allowed_domains=self.config.crawler.allowed_domains,
                    blocked_domains=self.config.crawler.blocked_domains,
                    respect_nofollow=self.config.crawler.respect_nofollow
                )

            if self.content_store is None:
                self.content_store = ContentStoreManager(self.config.storage)
                await self.content_store.initialize()
                self._owned.append('content_store')

            if self.shard_router is None and self.config.sharding.enabled:
                sharding = self.config.sharding
                if sharding.transport == 'redis':
                    transport = RedisShardTransport(self.redis_client)
                else:
                    transport = InMemoryShardTransport()
                self.shard_router = ShardRouter(
                    sharding.shard_id, sharding.shard_ids, transport, vnodes=sharding.vnodes)
                self._owned.append('shard_router')

            if self.shard_router is not None:
                # URLs already sent to their owner
                self._forwarded = BloomFilter(self.config.seen_filter.capacity,
                                              self.config.seen_filter.error_rate)

            if self.monitor is None and self.config.monitoring.metrics_enabled:
                self.monitor = initialize_monitoring(self.config.monitoring.prometheus_port)

            self._initialized = True
            self.logger.info("Crawl coordinator initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawl coordinator: {e}")
            raise

    def _build_seen_store(self):
        backend = self.config.seen_filter.backend
        if backend == 'redis':
            return RedisSeenStore(self.redis_client, key=self.config.seen_filter.redis_key)
        if backend == 'memory':
            return MemorySeenStore()
        return None

    async def seed(self, seeds: Iterable[SeedItem]) -> int:
        """
        Add seed URLs to the frontier.

        Args:
            seeds: Raw URLs, or (url, priority) pairs

        Returns:
            Number of seeds accepted (enqueued here or forwarded)
        """
        added_count = 0
        for item in seeds:
            if isinstance(item, str):
                raw_url, priority = item, URLPriority.HIGH
            else:
                raw_url, priority = item
                priority = URLPriority(priority)

            url = try_normalize(raw_url)
            if url is None:
                self.stats.dropped_invalid += 1
                self.logger.log_url_event(logging.WARNING, raw_url, "Ignoring invalid seed URL")
                continue

            if await self.ingest(url, priority, depth=0):
                added_count += 1

        self._seeded = True

        self.logger.info(f"Added {added_count} seed URLs")
        return added_count

    async def ingest(self, url: Union[NormalizedURL, str], priority: URLPriority = URLPriority.NORMAL,
                     depth: int = 0, parent_url: Optional[str] = None) -> bool:
        """
        Route one URL: forward it to its owning shard or enqueue it here.

        Returns:
            True if the URL was forwarded or newly enqueued
        """
        if isinstance(url, str):
            normalized = try_normalize(url)
            if normalized is None:
                self.stats.dropped_invalid += 1
                return False
            url = normalized

        if depth > self.max_depth:
            self.stats.links_beyond_depth += 1
            return False

        if self.shard_router is not None and not self.shard_router.owns(url.host):
            if self._forwarded is not None and url.fingerprint in self._forwarded:
                self.stats.forwards_suppressed += 1
                return False
            await self.shard_router.forward(url, priority.value, depth, parent_url)
            if self._forwarded is not None:
                self._forwarded.add(url.fingerprint)
            self.stats.links_forwarded += 1
            return True

        return await self.frontier.enqueue(url, priority, depth, parent_url)

    def compute_priority(self, url: NormalizedURL, depth: int,
                         parent: Optional[NormalizedURL] = None) -> URLPriority:
        """Priority tier of a discovered link."""
        return self.weights.tier(self.weights.score(url, depth, parent))

    async def handle_result(self, entry: FrontierEntry, result: FetchResult):
        """Store a fetched page and route its outbound links."""
        self.stats.fetched += 1
        if result.body:
            self.stats.bytes_downloaded += len(result.body.encode('utf-8'))

        if self.content_store is not None:
            try:
                key = await self.content_store.store(
                    entry.url.url, result.body or '', result.headers, result.timestamp)
                if key is not None:
                    self.stats.stored += 1
            except DatabaseError as e:
                self.stats.store_errors += 1
                self.logger.log_url_event(logging.ERROR, entry.url.url, f"Failed to store content: {e}")

        links = result.extracted_links
        self.stats.links_discovered += len(links)
        child_depth = entry.depth + 1

        enqueued = forwarded = 0
        if child_depth > self.max_depth:
            self.stats.links_beyond_depth += len(links)
        else:
            forwarded_before = self.stats.links_forwarded
            accepted = 0
            for link in links:
                priority = self.compute_priority(link, child_depth, entry.url)
                if await self.ingest(link, priority, child_depth, entry.url.url):
                    accepted += 1
            forwarded = self.stats.links_forwarded - forwarded_before
            enqueued = accepted - forwarded
            self.stats.links_enqueued += enqueued

        if self.monitor:
            self.monitor.record_links('discovered', len(links))
            self.monitor.record_links('enqueued', enqueued)
            self.monitor.record_links('forwarded', forwarded)

        self.logger.debug(f"Processed {entry.url}: {len(links)} links, {enqueued} new")

        if self._max_pages and self.stats.fetched >= self._max_pages:
            self.logger.info(f"Reached max pages limit: {self._max_pages}")
            self.stop()

    async def run(self, max_pages: Optional[int] = None,
                  max_duration: Optional[float] = None) -> CrawlStats:
        """
        Run the crawl until the frontier is exhausted, a limit is hit or
        ``stop()`` is called.

        Args:
            max_pages: Maximum number of pages to fetch (None for unlimited)
            max_duration: Maximum duration in seconds (None for unlimited)

        Raises:
            SeenStoreUnavailable: the exact seen store failed mid-crawl
        """
        if self.is_running:
            self.logger.warning("Crawler is already running")
            return self.stats

        await self.initialize()

        self.is_running = True
        self.stats.start_time = time.time()
        self._max_pages = max_pages
        self._stop_event = asyncio.Event()
        self.pool = FetchWorkerPool(
            self.frontier,
            self.gate,
            self.robots,
            self.fetcher,
            self.extractor,
            self.handle_result,
            num_workers=self.config.crawler.num_workers,
            monitor=self.monitor
        )

        if not self._seeded:
            await self.seed(self.config.crawler.seed_urls)

        background = [asyncio.create_task(self._stats_reporter())]
        if self.shard_router is not None:
            background.append(asyncio.create_task(self._consume_inbox()))
        if max_duration:
            background.append(asyncio.create_task(self._stop_after(max_duration)))

        try:
            await self.pool.run(self._stop_event)
        finally:
            self.is_running = False
            self._stop_event.set()
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            self._sync_pool_counters()
            self._log_final_stats()

        return self.stats

    def stop(self):
        """Signal every worker to stop; in-flight fetches finish under their own timeouts."""
        if self._stop_event is not None and not self._stop_event.is_set():
            self.logger.info("Stopping crawler...")
            self._stop_event.set()
        if self.pool is not None:
            self.pool.stop()

    async def _stop_after(self, max_duration: float):
        await asyncio.sleep(max_duration)
        self.logger.info(f"Reached max duration: {max_duration} seconds")
        self.stop()

    async def _consume_inbox(self):
        """
        Enqueue URLs forwarded to this shard by its peers.

        A bad message is logged and skipped. Transport failures are retried
        with backoff; after ``sharding.inbox_max_failures`` consecutive
        failures the crawl is stopped with that error.
        """
        sharding = self.config.sharding
        failures = 0
        while not self._stop_event.is_set():
            try:
                async for message in self.shard_router.inbox(self._stop_event):
                    failures = 0
                    try:
                        await self._ingest_message(message)
                    except SeenStoreUnavailable:
                        raise
                    except Exception as e:
                        self.logger.error(f"Error ingesting forwarded URL {message.url}: {e}", exc_info=True)
                return
            except SeenStoreUnavailable as e:
                self.logger.error(f"Seen store unavailable while ingesting shard inbox: {e}")
                self._fail(e)
                return
            except ShardTransportError as e:
                failures += 1
                if failures >= sharding.inbox_max_failures:
                    self.logger.error(f"Shard inbox failed {failures} times in a row, stopping: {e}")
                    self._fail(e)
                    return
                backoff = sharding.inbox_retry_backoff * (2 ** (failures - 1))
                self.logger.warning(
                    f"Shard inbox error ({failures}/{sharding.inbox_max_failures}), "
                    f"retrying in {backoff:.1f}s: {e}")
                await asyncio.sleep(backoff)

    async def _ingest_message(self, message: ShardMessage):
        try:
            priority = URLPriority(message.priority)
        except ValueError:
            self.logger.log_url_event(logging.WARNING, message.url,
                                      f"Forwarded URL has unknown priority {message.priority!r}")
            self.stats.dropped_invalid += 1
            return

        url = try_normalize(message.url)
        if url is None:
            self.stats.dropped_invalid += 1
            return
        await self.frontier.enqueue(url, priority, message.depth, message.parent_url)

    def _fail(self, error: BaseException):
        if self.pool is not None:
            self.pool.fatal_error = error
        self.stop()

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        while True:
            await asyncio.sleep(self.config.crawler.stats_interval)
            try:
                self._log_current_stats()
            except Exception as e:
                self.logger.error(f"Error in stats reporter: {e}")

    def _sync_pool_counters(self):
        if self.pool is None:
            return
        counters = self.pool.counters
        self.stats.dropped_robots = counters.dropped_robots
        self.stats.dropped_error = counters.dropped_error
        self.stats.requeued = counters.requeued

    def _log_current_stats(self):
        self._sync_pool_counters()
        if self.monitor:
            self.monitor.update_queue_size(len(self.frontier))
            self.monitor.update_in_flight(self.frontier.in_flight_count)

        self.logger.info(
            f"Crawl Progress: "
            f"Fetched={self.stats.fetched}, "
            f"Stored={self.stats.stored}, "
            f"Queued={len(self.frontier)}, "
            f"InFlight={self.frontier.in_flight_count}, "
            f"Requeued={self.stats.requeued}, "
            f"DroppedRobots={self.stats.dropped_robots}, "
            f"DroppedError={self.stats.dropped_error}, "
            f"Rate={self.stats.pages_per_minute:.1f} pages/min"
        )

    def _log_final_stats(self):
        self.logger.info("=== CRAWL COMPLETED ===")
        for name, value in self.stats.to_dict().items():
            self.logger.log_crawler_stat(name, value)
        self.logger.info(f"Frontier stats: {self.frontier.get_stats()}")
        self.logger.info(f"Politeness stats: {self.gate.get_stats()}")
        if self.robots is not None:
            self.logger.info(f"Robots stats: {self.robots.get_stats()}")
        self.logger.info(f"Seen filter stats: {self.seen_filter.get_stats()}")

    async def close(self):
        """Close all connections and cleanup resources."""
        try:
            if self.is_running:
                self.stop()

            if 'fetcher' in self._owned and self.fetcher:
                await self.fetcher.close()

            if 'content_store' in self._owned and self.content_store:
                await self.content_store.close()

            if 'seen_filter' in self._owned and self.seen_filter:
                await self.seen_filter.close()

            if 'shard_router' in self._owned and self.shard_router:
                await self.shard_router.transport.close()

            if 'redis_client' in self._owned and self.redis_client:
                await self.redis_client.aclose()

            self.logger.info("Crawl coordinator closed")

        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get current crawl statistics."""
        self._sync_pool_counters()
        stats = self.stats.to_dict()
        stats['is_running'] = self.is_running
        if self.frontier is not None:
            stats['frontier'] = self.frontier.get_stats()
        if self.gate is not None:
            stats['politeness'] = self.gate.get_stats()
        if self.robots is not None:
            stats['robots'] = self.robots.get_stats()
        if self.seen_filter is not None:
            stats['seen_filter'] = self.seen_filter.get_stats()
        return stats
