"""
Configuration management for the crawler.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ConfigError


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str] = field(default_factory=list)
    user_agent: str = "PoliteCrawler/1.0 (+https://example.com/bot)"
    num_workers: int = 10
    max_depth: int = 5
    request_timeout: float = 30.0
    max_redirects: int = 5
    max_body_bytes: int = 10 * 1024 * 1024
    max_connections: int = 100
    allowed_domains: List[str] = field(default_factory=list)
    blocked_domains: List[str] = field(default_factory=list)
    respect_nofollow: bool = False
    stats_interval: float = 30.0


@dataclass
class PolitenessConfig:
    """Per-host rate limits."""
    default_crawl_delay: float = 1.0
    max_concurrent_per_host: int = 1
    max_crawl_delay: float = 60.0
    max_hosts: Optional[int] = None


@dataclass
class RobotsConfig:
    """robots.txt handling."""
    enabled: bool = True
    timeout: float = 5.0
    ttl: float = 24 * 3600
    unreachable_ttl: float = 3600
    # 'allow' or 'disallow' when robots.txt times out or returns 5xx
    unreachable_policy: str = 'allow'
    max_entries: int = 100_000


@dataclass
class FrontierConfig:
    """Retry and idle behavior of the frontier."""
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    idle_wait_min: float = 0.05
    idle_wait_max: float = 1.0


@dataclass
class SeenFilterConfig:
    """Seen-URL filter sizing and backing store."""
    capacity: int = 10_000_000
    error_rate: float = 0.01
    # 'memory', 'redis' or 'none' (bloom only)
    backend: str = 'memory'
    redis_key: str = 'crawler:seen:urls'


@dataclass
class PriorityConfig:
    """Weights used to score discovered links."""
    base: float = 3.0
    depth_penalty: float = 0.5
    path_depth_penalty: float = 0.1
    same_host_bonus: float = 0.5
    host_importance: Dict[str, float] = field(default_factory=dict)
    high_threshold: float = 3.0
    normal_threshold: float = 1.5


@dataclass
class StorageConfig:
    """Content store backend."""
    # 'file', 'cassandra' or 'none'
    type: str = 'file'
    file: Dict[str, Any] = field(default_factory=lambda: {'data_directory': 'data'})
    cassandra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    host: str = 'localhost'
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


@dataclass
class ShardingConfig:
    """Distributed deployment settings."""
    enabled: bool = False
    shard_id: str = 'shard-0'
    shard_ids: List[str] = field(default_factory=lambda: ['shard-0'])
    vnodes: int = 100
    # 'redis' or 'memory'
    transport: str = 'redis'
    # Consecutive inbox failures tolerated before the shard stops
    inbox_max_failures: int = 5
    inbox_retry_backoff: float = 1.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: str = 'logs/crawler.log'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    json: bool = False
    max_bytes: int = 50 * 1024 * 1024
    backup_count: int = 5
    # Written next to `file`
    error_file: str = 'errors.log'


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    metrics_enabled: bool = True
    prometheus_port: Optional[int] = None


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    politeness: PolitenessConfig = field(default_factory=PolitenessConfig)
    robots: RobotsConfig = field(default_factory=RobotsConfig)
    frontier: FrontierConfig = field(default_factory=FrontierConfig)
    seen_filter: SeenFilterConfig = field(default_factory=SeenFilterConfig)
    priority: PriorityConfig = field(default_factory=PriorityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    sharding: ShardingConfig = field(default_factory=ShardingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a Config from parsed YAML, rejecting unknown keys."""
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")

        sections = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {sorted(unknown)}")

        kwargs = {}
        for name, section_field in sections.items():
            section_cls = section_field.default_factory
            kwargs[name] = _build_section(name, section_cls, data.get(name) or {})
        return cls(**kwargs)

    def validate(self):
        """Validate configuration values."""
        if self.crawler.num_workers < 1:
            raise ConfigError("crawler.num_workers must be at least 1")
        if self.crawler.max_depth < 0:
            raise ConfigError("crawler.max_depth must be non-negative")
        if self.crawler.request_timeout <= 0:
            raise ConfigError("crawler.request_timeout must be positive")
        if not self.crawler.user_agent.strip():
            raise ConfigError("crawler.user_agent must not be empty")

        if self.politeness.default_crawl_delay < 0:
            raise ConfigError("politeness.default_crawl_delay must be non-negative")
        if self.politeness.max_concurrent_per_host < 1:
            raise ConfigError("politeness.max_concurrent_per_host must be at least 1")

        if self.robots.unreachable_policy not in ('allow', 'disallow'):
            raise ConfigError("robots.unreachable_policy must be 'allow' or 'disallow'")

        if self.frontier.max_attempts < 1:
            raise ConfigError("frontier.max_attempts must be at least 1")

        if not 0 < self.seen_filter.error_rate < 1:
            raise ConfigError("seen_filter.error_rate must be between 0 and 1")
        if self.seen_filter.capacity < 1:
            raise ConfigError("seen_filter.capacity must be positive")
        if self.seen_filter.backend not in ('memory', 'redis', 'none'):
            raise ConfigError("seen_filter.backend must be 'memory', 'redis' or 'none'")

        if self.storage.type not in ('file', 'cassandra', 'none'):
            raise ConfigError("storage.type must be 'file', 'cassandra' or 'none'")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigError(f"logging.level is not a logging level: {self.logging.level}")

        if self.sharding.enabled:
            if self.sharding.shard_id not in self.sharding.shard_ids:
                raise ConfigError("sharding.shard_id must be listed in sharding.shard_ids")
            if self.sharding.transport not in ('redis', 'memory'):
                raise ConfigError("sharding.transport must be 'redis' or 'memory'")
            if self.sharding.inbox_max_failures < 1:
                raise ConfigError("sharding.inbox_max_failures must be at least 1")

        logging.getLogger(__name__).debug("Configuration validation passed")

    @property
    def uses_redis(self) -> bool:
        return (self.seen_filter.backend == 'redis'
                or (self.sharding.enabled and self.sharding.transport == 'redis'))


def _build_section(name: str, section_cls, values: Dict[str, Any]):
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    allowed = {f.name for f in fields(section_cls)}
    unknown = set(values) - allowed
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {sorted(unknown)}")
    try:
        return section_cls(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid section '{name}': {e}")


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            try:
                config_data = yaml.safe_load(file)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}")

        self._config = Config.from_dict(config_data)
        self._config.validate()
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
