"""
Web page fetcher: bounded timeouts, redirects and body size, HTML only.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from ..errors import (
    FetchHTTPError,
    FetchNetworkError,
    FetchTimeout,
    TooManyRedirects,
    UnsupportedContentType,
)
from .normalizer import NormalizedURL


HTML_CONTENT_TYPES = (
    'text/html',
    'application/xhtml+xml',
)


@dataclass
class FetchResult:
    """Result of a successful fetch attempt."""
    url: str
    status_code: int
    final_url: Optional[str] = None
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    encoding: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    fetch_time: float = 0.0
    truncated: bool = False
    extracted_links: List[NormalizedURL] = field(default_factory=list)

    @property
    def base_url(self) -> str:
        return self.final_url or self.url


class WebFetcher:
    """
    Fetches web pages over a shared aiohttp session.

    ``fetch`` raises the fetch errors of the crawler taxonomy instead of
    returning error results, so callers classify by exception type.
    """

    def __init__(self, user_agent: str, request_timeout: float = 30,
                 max_redirects: int = 5, max_body_bytes: int = 10 * 1024 * 1024,
                 max_connections: int = 100, max_connections_per_host: int = 2):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_redirects = max_redirects
        self.max_body_bytes = max_body_bytes
        self.max_connections = max_connections
        self.max_connections_per_host = max_connections_per_host

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'truncated_bodies': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    limit_per_host=self.max_connections_per_host,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info(f"HTTP session started (User-Agent: {self.user_agent})")

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("HTTP session closed")

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single HTML page.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult with the decoded body

        Raises:
            FetchTimeout, FetchNetworkError: retryable failures
            FetchHTTPError: non-2xx status (5xx retryable)
            UnsupportedContentType, TooManyRedirects: terminal failures
        """
        if self.session is None:
            await self.start()

        start_time = time.time()
        self.stats['total_requests'] += 1

        try:
            async with self.session.get(url, allow_redirects=True,
                                        max_redirects=self.max_redirects) as response:
                headers = dict(response.headers)
                content_type = response.headers.get('content-type', '').lower()

                if response.status >= 400:
                    raise FetchHTTPError(response.status, url=url)

                if content_type and not self._is_html_content(content_type):
                    self.logger.debug(f"Skipping non-HTML content: {url} ({content_type})")
                    raise UnsupportedContentType(content_type, url=url)

                body, truncated = await self._read_content_safely(response, self.max_body_bytes)
                fetch_time = time.time() - start_time

                self.stats['successful_requests'] += 1
                self.stats['total_bytes_downloaded'] += len(body.encode('utf-8'))
                if truncated:
                    self.stats['truncated_bodies'] += 1

                self.logger.debug(f"Fetched {url}: {response.status} ({len(body)} chars)")
                return FetchResult(
                    url=url,
                    status_code=response.status,
                    final_url=str(response.url),
                    body=body,
                    headers=headers,
                    content_type=content_type or None,
                    encoding=response.charset,
                    timestamp=start_time,
                    fetch_time=fetch_time,
                    truncated=truncated,
                )

        except (FetchHTTPError, UnsupportedContentType):
            self.stats['failed_requests'] += 1
            raise

        except asyncio.TimeoutError:
            self.stats['failed_requests'] += 1
            self.logger.warning(f"Timeout fetching {url}")
            raise FetchTimeout(f"Request timeout after {self.request_timeout}s", url=url)

        except aiohttp.TooManyRedirects as e:
            self.stats['failed_requests'] += 1
            raise TooManyRedirects(str(e), url=url)

        except ClientError as e:
            self.stats['failed_requests'] += 1
            self.logger.warning(f"Client error fetching {url}: {e}")
            raise FetchNetworkError(f"Client error: {e}", url=url)

    async def get_text(self, url: str, timeout: float = 5.0,
                       max_bytes: int = 512 * 1024) -> Tuple[int, str]:
        """
        GET a small text resource such as robots.txt.

        Returns:
            (status code, decoded body)
        """
        if self.session is None:
            await self.start()

        try:
            async with self.session.get(url, allow_redirects=True,
                                        max_redirects=self.max_redirects,
                                        timeout=ClientTimeout(total=timeout)) as response:
                if response.status >= 400:
                    return response.status, ''
                body, _ = await self._read_content_safely(response, max_bytes)
                return response.status, body
        except asyncio.TimeoutError:
            raise FetchTimeout(f"Timeout after {timeout}s", url=url)
        except aiohttp.TooManyRedirects as e:
            raise TooManyRedirects(str(e), url=url)
        except ClientError as e:
            raise FetchNetworkError(f"Client error: {e}", url=url)

    def _is_html_content(self, content_type: str) -> bool:
        return any(html_type in content_type for html_type in HTML_CONTENT_TYPES)

    async def _read_content_safely(self, response, max_size: int) -> Tuple[str, bool]:
        """Read at most ``max_size`` bytes; returns (text, truncated)."""
        truncated = False
        content_bytes = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            content_bytes.extend(chunk)
            if len(content_bytes) > max_size:
                self.logger.warning(f"Content exceeded size limit, truncating: {response.url}")
                del content_bytes[max_size:]
                truncated = True
                break

        return self._decode(bytes(content_bytes), response.charset), truncated

    @staticmethod
    def _decode(content_bytes: bytes, charset: Optional[str]) -> str:
        encoding = charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback in ('utf-8', 'cp1252'):
                try:
                    return content_bytes.decode(fallback)
                except UnicodeDecodeError:
                    continue
            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
