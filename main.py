#!/usr/bin/env python3
"""
Main entry point for the polite crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import redis.asyncio as redis

from polite_crawler import __version__
from polite_crawler.crawler.fetcher import WebFetcher
from polite_crawler.crawler.normalizer import try_normalize
from polite_crawler.crawler.scheduler import CrawlCoordinator
from polite_crawler.errors import CrawlerError, SeenStoreUnavailable
from polite_crawler.storage.database import ContentStoreManager
from polite_crawler.utils.config import Config, load_config
from polite_crawler.utils.logger import log_system_info, setup_logging


class CrawlerApp:
    """Main application class for the crawler."""

    def __init__(self):
        self.coordinator: Optional[CrawlCoordinator] = None
        self.logger = logging.getLogger(__name__)

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            if self.coordinator:
                self.coordinator.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Windows event loops have no signal support
                pass

    async def run(self, config_path: str, seeds: Optional[List[str]] = None,
                  max_pages: Optional[int] = None, max_duration: Optional[int] = None,
                  dry_run: bool = False, json_logs: bool = False) -> int:
        """Run the crawler."""
        try:
            config = load_config(config_path)
        except (CrawlerError, FileNotFoundError) as e:
            print(f"Error: {e}")
            return 1

        if seeds:
            config.crawler.seed_urls = list(seeds)

        setup_logging(config.logging, enable_json=json_logs)
        log_system_info(config.storage.file.get("data_directory") if config.storage.type == "file" else None)
        self.setup_signal_handlers()

        self.logger.info("=== POLITE CRAWLER STARTING ===")
        self.logger.info(f"Configuration loaded from: {config_path}")
        self.logger.info(f"Seed URLs: {config.crawler.seed_urls}")
        self.logger.info(f"Max depth: {config.crawler.max_depth}")
        self.logger.info(f"Workers: {config.crawler.num_workers}")
        self.logger.info(f"Default crawl delay: {config.politeness.default_crawl_delay}s")
        self.logger.info(f"Seen filter backend: {config.seen_filter.backend}")
        self.logger.info(f"Storage type: {config.storage.type}")
        if config.sharding.enabled:
            self.logger.info(
                f"Sharding: {config.sharding.shard_id} of {config.sharding.shard_ids}")

        if dry_run:
            self.logger.info("Dry run: checking configuration without crawling")
            return 0 if await self._dry_run(config) else 1

        exit_code = 0
        try:
            self.coordinator = CrawlCoordinator(config)
            await self.coordinator.initialize()
            stats = await self.coordinator.run(max_pages=max_pages, max_duration=max_duration)

            print(f"Fetched: {stats.fetched}")
            print(f"Stored: {stats.stored}")
            print(f"Dropped (robots.txt): {stats.dropped_robots}")
            print(f"Dropped (errors): {stats.dropped_error}")
            print(f"Dropped (invalid URLs): {stats.dropped_invalid}")
            print(f"Requeued: {stats.requeued}")
            print(f"Links enqueued: {stats.links_enqueued}")
            print(f"Links forwarded: {stats.links_forwarded}")

        except SeenStoreUnavailable as e:
            self.logger.critical(f"Seen store unavailable, crawl aborted: {e}")
            exit_code = 2
        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            exit_code = 1

        finally:
            if self.coordinator:
                await self.coordinator.close()
            self.logger.info("=== POLITE CRAWLER FINISHED ===")

        return exit_code

    async def _dry_run(self, config: Config) -> bool:
        """Check seeds, backing services and one fetch; returns True if all pass."""
        checks = [
            ("seed URLs", self._check_seeds),
            ("redis", self._check_redis),
            ("content store", self._check_storage),
            ("first seed fetch", self._check_fetch),
        ]
        passed = True
        for name, check in checks:
            try:
                detail = await check(config)
            except Exception as e:
                self.logger.error(f"✗ {name}: {e}")
                passed = False
                continue
            self.logger.info(f"✓ {name}: {detail}")

        self.logger.info(f"Dry run {'passed' if passed else 'failed'}")
        return passed

    async def _check_seeds(self, config: Config) -> str:
        invalid = [url for url in config.crawler.seed_urls if try_normalize(url) is None]
        if invalid:
            raise ValueError(f"invalid seed URLs {invalid}")
        return f"{len(config.crawler.seed_urls)} valid"

    async def _check_redis(self, config: Config) -> str:
        if not config.uses_redis:
            return "not used"
        client = redis.Redis(
            host=config.redis.host,
            port=config.redis.port,
            db=config.redis.db,
            password=config.redis.password
        )
        try:
            await client.ping()
        finally:
            await client.aclose()
        return f"reachable at {config.redis.host}:{config.redis.port}"

    async def _check_storage(self, config: Config) -> str:
        store = ContentStoreManager(config.storage)
        await store.initialize()
        await store.close()
        return config.storage.type

    async def _check_fetch(self, config: Config) -> str:
        if not config.crawler.seed_urls:
            return "no seeds"
        url = try_normalize(config.crawler.seed_urls[0])
        if url is None:
            return "skipped"
        async with WebFetcher(
            user_agent=config.crawler.user_agent,
            request_timeout=config.crawler.request_timeout,
            max_redirects=config.crawler.max_redirects,
            max_body_bytes=config.crawler.max_body_bytes,
            max_connections=1
        ) as fetcher:
            robots_status, _ = await fetcher.get_text(f"{url.origin}/robots.txt",
                                                      timeout=config.robots.timeout)
            result = await fetcher.fetch(url.url)
        return f"robots.txt {robots_status}, page {result.status_code}"


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Polite Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                 # Run with default config.yaml
  python main.py --config my_config.yaml         # Run with custom config
  python main.py --seed https://example.com/     # Override seed URLs
  python main.py --max-pages 1000                # Limit to 1000 pages
  python main.py --max-duration 3600             # Run for 1 hour max
  python main.py --dry-run                       # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--seed',
        action='append',
        dest='seeds',
        metavar='URL',
        help='Seed URL; may be given several times and replaces configured seeds'
    )

    parser.add_argument(
        '--max-pages',
        type=int,
        help='Maximum number of pages to fetch'
    )

    parser.add_argument(
        '--max-duration',
        type=int,
        help='Maximum crawl duration in seconds'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without actually crawling'
    )

    parser.add_argument(
        '--json-logs',
        action='store_true',
        help='Emit JSON formatted logs'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Polite Crawler {__version__}'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config_path=args.config,
            seeds=args.seeds,
            max_pages=args.max_pages,
            max_duration=args.max_duration,
            dry_run=args.dry_run,
            json_logs=args.json_logs
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
