"""
Logging setup and structured log helpers for the crawler.

Crawl events about a single URL (drops, store failures, invalid seeds)
go through ``CrawlerLogAdapter.log_url_event`` so that JSON output
carries the URL, the reason and the shard as separate fields.
"""

import json
import logging
import logging.handlers
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import psutil

from .config import LoggingConfig


NOISY_LOGGERS = ('aiohttp.access', 'urllib3.connectionpool')

THIRD_PARTY_LEVELS = {
    'aiohttp': logging.WARNING,
    'asyncio': logging.WARNING,
    'cassandra': logging.WARNING,
    'redis': logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, crawl context fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        for key, value in getattr(record, 'extra_fields', {}).items():
            if value is not None:
                entry[key] = value

        return json.dumps(entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attaches crawl context (e.g. ``shard_id``) to every
    record as ``extra_fields``.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get('extra') or {})
        fields = dict(self.extra)
        fields.update(extra.pop('extra_fields', {}))
        extra['extra_fields'] = fields
        kwargs['extra'] = extra
        return msg, kwargs

    def log_url_event(self, level: int, url: str, message: str, **fields):
        """Log an event about one URL; ``fields`` become JSON keys."""
        fields.update(url=url, event_type='url_event')
        self.log(level, message, extra={'extra_fields': fields})

    def log_crawler_stat(self, stat_name: str, value: Any):
        fields = {'stat_name': stat_name, 'stat_value': value, 'event_type': 'crawler_stat'}
        self.info(f"{stat_name}: {value}", extra={'extra_fields': fields})


class PerformanceFilter(logging.Filter):
    """Drop per-request chatter from HTTP client libraries."""

    def __init__(self, suppress_modules: Optional[Iterable[str]] = None):
        super().__init__()
        self.suppress_modules = tuple(suppress_modules or NOISY_LOGGERS)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(self.suppress_modules):
            return False
        if record.levelno == logging.DEBUG and 'connection pool' in record.getMessage().lower():
            return False
        return True


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter,
                      max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig, enable_json: bool = False,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger for a crawl.

    Installs a console handler, a rotating crawl log at ``config.file``
    and, next to it, a rotating error log. Third-party libraries are
    capped at WARNING.

    Args:
        config: The ``logging`` section of the crawler configuration
        enable_json: Emit JSON lines instead of ``config.format``
        enable_performance_filtering: Attach ``PerformanceFilter``

    Returns:
        The configured root logger
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    if enable_json or config.json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(config.format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    handlers = [
        console_handler,
        _rotating_handler(log_file, logging.DEBUG, formatter,
                          config.max_bytes, config.backup_count),
        _rotating_handler(log_file.with_name(config.error_file), logging.ERROR, formatter,
                          config.max_bytes, config.backup_count),
    ]
    if enable_performance_filtering:
        for handler in handlers[:2]:
            handler.addFilter(PerformanceFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(config.level.upper())
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)

    for logger_name, level in THIRD_PARTY_LEVELS.items():
        logging.getLogger(logger_name).setLevel(level)

    root_logger.info(f"Logging to {log_file} at level {config.level.upper()}")
    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """Logger whose records all carry ``extra_context``."""
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)


def log_system_info(data_directory: Optional[str] = None):
    """Log host resources available to this crawler process."""
    logger = logging.getLogger(__name__)

    memory = psutil.virtual_memory()
    logger.info(f"Platform: {platform.platform()}, Python {platform.python_version()}")
    logger.info(f"CPU cores: {psutil.cpu_count()}, "
                f"memory: {memory.available / 1024**3:.1f}/{memory.total / 1024**3:.1f} GB free")

    if data_directory and Path(data_directory).exists():
        disk = psutil.disk_usage(data_directory)
        logger.info(f"Disk free under {data_directory}: {disk.free / 1024**3:.1f} GB")
