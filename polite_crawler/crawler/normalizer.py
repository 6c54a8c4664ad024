"""
URL normalization.

Turns raw URLs into canonical keys so that equivalent spellings of the
same page collapse into a single frontier entry.
"""

import hashlib
import posixpath
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit, parse_qsl, urlencode

from ..errors import InvalidURL


ALLOWED_SCHEMES = ('http', 'https')
DEFAULT_PORTS = {'http': 80, 'https': 443}

# Query parameters that only carry tracking information
TRACKING_PARAMS = frozenset({
    'fbclid', 'gclid', 'dclid', 'msclkid', 'yclid',
    'mc_cid', 'mc_eid', 'igshid', '_ga', '_hsenc', '_hsmi', 'ref_src',
})
TRACKING_PREFIXES = ('utm_',)


@dataclass(frozen=True)
class NormalizedURL:
    """Canonical, immutable form of a crawlable URL."""
    scheme: str
    host: str
    path: str
    query: str = ''
    port: Optional[int] = None

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ':' in self.host else self.host
        if self.port is None:
            return host
        return f"{host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    @property
    def path_and_query(self) -> str:
        if self.query:
            return f"{self.path}?{self.query}"
        return self.path

    @property
    def url(self) -> str:
        return urlunsplit((self.scheme, self.netloc, self.path, self.query, ''))

    @property
    def depth(self) -> int:
        """Number of non-empty path segments."""
        return len([segment for segment in self.path.split('/') if segment])

    @property
    def fingerprint(self) -> str:
        """128-bit hex digest used as the seen-set key."""
        return hashlib.blake2b(self.url.encode('utf-8'), digest_size=16).hexdigest()

    def __str__(self) -> str:
        return self.url


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def _normalize_host(hostname: str) -> str:
    host = hostname.rstrip('.')
    if not host:
        raise InvalidURL("Empty host")
    try:
        return host.encode('idna').decode('ascii').lower()
    except UnicodeError as e:
        raise InvalidURL(f"Invalid host {hostname!r}: {e}")


def _normalize_path(path: str) -> str:
    if not path:
        return '/'

    # Resolve dot segments while keeping a trailing slash marker
    trailing = path.endswith('/')
    resolved = posixpath.normpath(path)
    if resolved.startswith('//'):
        resolved = '/' + resolved.lstrip('/')
    if resolved == '.':
        resolved = '/'
    if trailing and resolved != '/':
        resolved += '/'

    # Strip a single trailing slash from non-root paths
    if len(resolved) > 1 and resolved.endswith('/'):
        resolved = resolved[:-1]
    return resolved


def _normalize_query(query: str) -> str:
    if not query:
        return ''
    params = [
        (name, value)
        for name, value in parse_qsl(query, keep_blank_values=True)
        if not _is_tracking_param(name)
    ]
    params.sort()
    return urlencode(params)


def normalize(raw_url: str, base_url: Optional[str] = None) -> NormalizedURL:
    """
    Canonicalize a raw URL.

    Args:
        raw_url: Absolute or relative URL as found in a document or seed list
        base_url: URL used to resolve relative references

    Returns:
        NormalizedURL for the resolved URL

    Raises:
        InvalidURL: if the URL cannot be parsed or is not http(s)
    """
    if raw_url is None:
        raise InvalidURL("URL is None")

    candidate = raw_url.strip()
    if not candidate:
        raise InvalidURL("Empty URL")

    if base_url:
        candidate = urljoin(str(base_url), candidate)

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as e:
        raise InvalidURL(f"Cannot parse {candidate!r}: {e}", url=candidate)

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidURL(f"Unsupported scheme {scheme!r}", url=candidate)

    if not parts.hostname:
        raise InvalidURL("Missing host", url=candidate)

    host = _normalize_host(parts.hostname)
    if port == DEFAULT_PORTS[scheme]:
        port = None

    return NormalizedURL(
        scheme=scheme,
        host=host,
        path=_normalize_path(parts.path),
        query=_normalize_query(parts.query),
        port=port,
    )


def try_normalize(raw_url: str, base_url: Optional[str] = None) -> Optional[NormalizedURL]:
    """Like ``normalize`` but returns None for invalid URLs."""
    try:
        return normalize(raw_url, base_url)
    except InvalidURL:
        return None
