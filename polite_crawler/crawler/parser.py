"""
Link extraction from fetched HTML documents.
"""

import logging
from typing import Iterable, List, Optional, Set, Union
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from ..errors import InvalidURL, ParseError
from .normalizer import NormalizedURL, normalize


NON_WEB_PREFIXES = ('#', 'mailto:', 'javascript:', 'tel:', 'data:')

# Avoid common non-content file extensions
SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
)


class LinkExtractor:
    """
    Extracts outbound links from HTML as normalized URLs.

    Parsing is best-effort: broken markup yields whatever links lxml can
    recover.
    """

    def __init__(self, allowed_domains: Optional[Iterable[str]] = None,
                 blocked_domains: Optional[Iterable[str]] = None,
                 skip_extensions: Iterable[str] = SKIP_EXTENSIONS,
                 respect_nofollow: bool = False):
        self.allowed_domains = {d.lower() for d in allowed_domains} if allowed_domains else set()
        self.blocked_domains = {d.lower() for d in blocked_domains} if blocked_domains else set()
        self.skip_extensions = tuple(ext.lower() for ext in skip_extensions)
        self.respect_nofollow = respect_nofollow
        self.logger = logging.getLogger(__name__)

        self.stats = {
            'documents': 0,
            'links_found': 0,
            'invalid_links': 0,
            'filtered_links': 0,
            'parse_errors': 0,
        }

    def extract(self, html_body: Union[str, bytes, None], base_url: str) -> List[NormalizedURL]:
        """
        Extract, normalize and deduplicate links.

        Args:
            html_body: Raw HTML content
            base_url: URL of the document, used to resolve relative links

        Returns:
            Links in document order, each at most once
        """
        self.stats['documents'] += 1
        if not html_body:
            return []

        try:
            soup = self._parse(html_body)
        except ParseError as e:
            self.stats['parse_errors'] += 1
            self.logger.warning(f"Could not parse {base_url}: {e}")
            return []

        base = self._document_base(soup, base_url)
        links: List[NormalizedURL] = []
        seen: Set[str] = set()

        for tag in soup.find_all(['a', 'area'], href=True):
            if self.respect_nofollow and 'nofollow' in (tag.get('rel') or []):
                continue

            href = tag['href'].strip()
            if not href or href.lower().startswith(NON_WEB_PREFIXES):
                continue

            self.stats['links_found'] += 1
            try:
                url = normalize(href, base)
            except InvalidURL:
                self.stats['invalid_links'] += 1
                continue

            if not self._is_crawlable(url):
                self.stats['filtered_links'] += 1
                continue

            if url.url not in seen:
                seen.add(url.url)
                links.append(url)

        self.logger.debug(f"Extracted {len(links)} links from {base_url}")
        return links

    def _parse(self, html_body: Union[str, bytes]) -> BeautifulSoup:
        if not isinstance(html_body, (str, bytes)):
            raise ParseError(f"Unsupported document type {type(html_body).__name__}")
        try:
            return BeautifulSoup(html_body, 'lxml')
        except Exception as e:
            raise ParseError(str(e))

    @staticmethod
    def _document_base(soup: BeautifulSoup, base_url: str) -> str:
        """Honour <base href> when present."""
        base_tag = soup.find('base', href=True)
        if base_tag is not None:
            href = base_tag['href'].strip()
            if href:
                resolved = urljoin(base_url, href)
                if urlsplit(resolved).scheme in ('http', 'https'):
                    return resolved
        return base_url

    def _is_crawlable(self, url: NormalizedURL) -> bool:
        """Apply domain and file-type filters."""
        domain = url.host

        if any(domain == d or domain.endswith('.' + d) for d in self.blocked_domains):
            return False

        if self.allowed_domains and not any(
                domain == d or domain.endswith('.' + d) for d in self.allowed_domains):
            return False

        path = url.path.lower()
        return not path.endswith(self.skip_extensions)
