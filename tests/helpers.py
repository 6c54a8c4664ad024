"""
Shared fakes for the crawler tests.
"""

import asyncio
import time
from collections import Counter
from typing import Dict, List, Tuple, Union
from urllib.parse import urlsplit

from polite_crawler.crawler.fetcher import FetchResult
from polite_crawler.errors import FetchHTTPError
from polite_crawler.utils.config import Config


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def html_page(*hrefs: str) -> str:
    links = ''.join(f'<a href="{href}">link</a>' for href in hrefs)
    return f"<html><head><title>t</title></head><body>{links}</body></html>"


class FakeFetcher:
    """
    Stands in for WebFetcher.

    ``pages`` maps a URL to an HTML body, or to an exception (or a list of
    exceptions consumed one per call). ``robots`` maps an origin to the
    (status, text) returned for its robots.txt. ``peak_in_flight`` records
    the most fetches ever running at once against each host.
    """

    def __init__(self, pages: Dict[str, Union[str, BaseException, list]] = None,
                 robots: Dict[str, Tuple[int, str]] = None, latency: float = 0.0):
        self.pages = dict(pages or {})
        self.robots = dict(robots or {})
        self.latency = latency
        self.fetch_calls: List[str] = []
        self.fetch_times: List[float] = []
        self.robots_calls: List[str] = []
        self.in_flight: Counter = Counter()
        self.peak_in_flight: Counter = Counter()

    async def fetch(self, url: str) -> FetchResult:
        self.fetch_calls.append(url)
        self.fetch_times.append(time.monotonic())
        host = urlsplit(url).hostname
        self.in_flight[host] += 1
        self.peak_in_flight[host] = max(self.peak_in_flight[host], self.in_flight[host])
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            return self._respond(url)
        finally:
            self.in_flight[host] -= 1

    def _respond(self, url: str) -> FetchResult:
        page = self.pages.get(url)
        if isinstance(page, list):
            page = page.pop(0) if page else html_page()
        if page is None:
            raise FetchHTTPError(404, url=url)
        if isinstance(page, BaseException):
            raise page
        return FetchResult(
            url=url,
            status_code=200,
            final_url=url,
            body=page,
            headers={'Content-Type': 'text/html; charset=utf-8'},
            content_type='text/html; charset=utf-8',
        )

    async def get_text(self, url: str, timeout: float = 5.0, max_bytes: int = 512 * 1024):
        self.robots_calls.append(url)
        await asyncio.sleep(0)
        origin = url[:-len('/robots.txt')]
        response = self.robots.get(origin, (404, ''))
        if isinstance(response, BaseException):
            raise response
        return response


def make_config(**sections) -> Config:
    """Config suitable for offline tests; ``sections`` override per-section keys."""
    data = {
        'crawler': {'num_workers': 2, 'stats_interval': 60},
        'politeness': {'default_crawl_delay': 0.0},
        'frontier': {'backoff_base': 0.01, 'idle_wait_min': 0.01, 'idle_wait_max': 0.05},
        'seen_filter': {'capacity': 10_000},
        'storage': {'type': 'none'},
        'monitoring': {'metrics_enabled': False},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    config = Config.from_dict(data)
    config.validate()
    return config
