"""
Error taxonomy for the crawler core.

Per-URL errors only change the state of a single frontier entry. The
``retryable`` flag decides whether the entry is requeued or dropped.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for crawler errors."""

    retryable: bool = False
    reason: str = "CrawlerError"

    def __init__(self, message: str = "", url: Optional[str] = None):
        super().__init__(message or self.reason)
        self.url = url


class InvalidURL(CrawlerError):
    """URL could not be parsed or uses an unsupported scheme."""

    reason = "InvalidURL"


class RobotsDisallowed(CrawlerError):
    """robots.txt forbids fetching the URL."""

    reason = "RobotsDisallowed"


class FetchError(CrawlerError):
    """Base class for failures of a single fetch attempt."""

    reason = "FetchError"


class FetchTimeout(FetchError):
    reason = "FetchTimeout"
    retryable = True


class FetchNetworkError(FetchError):
    reason = "FetchNetworkError"
    retryable = True


class FetchHTTPError(FetchError):
    """Non-success HTTP status. 5xx is retryable, everything else terminal."""

    reason = "FetchHTTPError"

    def __init__(self, status_code: int, message: str = "", url: Optional[str] = None):
        super().__init__(message or f"HTTP {status_code}", url)
        self.status_code = status_code
        self.retryable = 500 <= status_code <= 599


class UnsupportedContentType(FetchError):
    reason = "UnsupportedContentType"

    def __init__(self, content_type: str, url: Optional[str] = None):
        super().__init__(f"Unsupported content type: {content_type}", url)
        self.content_type = content_type


class TooManyRedirects(FetchError):
    reason = "TooManyRedirects"


class ParseError(CrawlerError):
    """The document could not be parsed at all."""

    reason = "ParseError"


class SeenStoreUnavailable(CrawlerError):
    """
    The exact seen-set backing store cannot be reached.

    Deduplication cannot be guaranteed without it, so this error is fatal
    for the crawl run.
    """

    reason = "SeenStoreUnavailable"


class ShardTransportError(CrawlerError):
    """Sending to or receiving from a shard inbox failed."""

    retryable = True
    reason = "ShardTransportError"


class ConfigError(CrawlerError):
    reason = "ConfigError"


class FrontierExhausted(Exception):
    """
    Raised by ``URLFrontier.dequeue`` when nothing is queued, delayed or
    in flight. This is the normal end of a crawl, not a failure.
    """
