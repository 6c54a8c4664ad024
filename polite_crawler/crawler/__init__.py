"""
Crawler core components.
"""

from ..errors import (
    CrawlerError, InvalidURL, RobotsDisallowed, FetchError, FetchTimeout,
    FetchNetworkError, FetchHTTPError, UnsupportedContentType, TooManyRedirects,
    ParseError, SeenStoreUnavailable, ConfigError, FrontierExhausted
)
from .normalizer import NormalizedURL, normalize, try_normalize
from .politeness import HostState, HostStateStore, PolitenessGate
from .robots import RobotsRules, RobotsCache
from .url_frontier import URLFrontier, FrontierEntry, URLPriority, EntryState
from .fetcher import WebFetcher, FetchResult
from .parser import LinkExtractor
from .worker_pool import FetchWorkerPool
from .sharding import HashRing, ShardRouter, ShardMessage, InMemoryShardTransport, RedisShardTransport
from .scheduler import CrawlCoordinator, CrawlStats, PriorityWeights

__all__ = [
    'CrawlerError', 'InvalidURL', 'RobotsDisallowed', 'FetchError', 'FetchTimeout',
    'FetchNetworkError', 'FetchHTTPError', 'UnsupportedContentType', 'TooManyRedirects',
    'ParseError', 'SeenStoreUnavailable', 'ConfigError', 'FrontierExhausted',
    'NormalizedURL', 'normalize', 'try_normalize',
    'HostState', 'HostStateStore', 'PolitenessGate',
    'RobotsRules', 'RobotsCache',
    'URLFrontier', 'FrontierEntry', 'URLPriority', 'EntryState',
    'WebFetcher', 'FetchResult',
    'LinkExtractor',
    'FetchWorkerPool',
    'HashRing', 'ShardRouter', 'ShardMessage', 'InMemoryShardTransport', 'RedisShardTransport',
    'CrawlCoordinator', 'CrawlStats', 'PriorityWeights'
]
