"""
robots.txt rules and the per-origin robots cache.
"""

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit
from urllib.robotparser import RobotFileParser

from ..errors import FetchError
from .normalizer import NormalizedURL


ALLOW_ALL = 'allow'
DISALLOW_ALL = 'disallow'

# Larger robots.txt bodies are truncated
MAX_ROBOTS_BYTES = 512 * 1024

RULE_DIRECTIVES = ('allow', 'disallow', 'crawl-delay', 'request-rate')


@lru_cache(maxsize=4096)
def _compile_pattern(pattern: str) -> "re.Pattern":
    anchored = pattern.endswith('$')
    body = pattern[:-1] if anchored else pattern
    regex = '.*'.join(re.escape(part) for part in body.split('*'))
    return re.compile(regex + ('$' if anchored else ''))


def _group_crawl_delays(content: str) -> Dict[Tuple[str, ...], float]:
    """
    Crawl-delay per user-agent group, keyed like ``Entry.useragents``.

    Groups are delimited the way ``RobotFileParser`` delimits them and the
    first group for a set of agents wins, but fractional values such as
    ``Crawl-delay: 0.5`` are kept.
    """
    delays: Dict[Tuple[str, ...], float] = {}
    agents: list = []
    delay: Optional[float] = None
    in_rules = False

    def close_group():
        if agents and delay is not None:
            delays.setdefault(tuple(agents), delay)

    for raw_line in content.splitlines():
        if not raw_line:
            close_group()
            agents, delay, in_rules = [], None, False
            continue
        name, sep, value = raw_line.split('#', 1)[0].partition(':')
        if not sep:
            continue
        name, value = name.strip().lower(), unquote(value.strip())

        if name == 'user-agent':
            if in_rules:
                close_group()
                agents, delay, in_rules = [], None, False
            agents.append(value)
        elif name in RULE_DIRECTIVES and agents:
            in_rules = True
            if name == 'crawl-delay':
                try:
                    value = float(value)
                except ValueError:
                    continue
                if value >= 0:
                    delay = value

    close_group()
    return delays




@dataclass(frozen=True)
class RobotsRules:
    """
    Immutable robots.txt snapshot for one origin.

    ``rules`` keeps (pattern, allow) pairs in file order. Matching follows
    the robots exclusion protocol: the longest matching pattern wins and
    Allow wins a tie.
    """
    rules: Tuple[Tuple[str, bool], ...] = ()
    crawl_delay: Optional[float] = None
    fetched_at: float = field(default_factory=time.time)
    ttl: float = 24 * 3600
    source: str = 'fetched'

    @property
    def allow_patterns(self) -> Tuple[str, ...]:
        return tuple(pattern for pattern, allow in self.rules if allow)

    @property
    def disallow_patterns(self) -> Tuple[str, ...]:
        return tuple(pattern for pattern, allow in self.rules if not allow)

    def is_expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl

    def is_allowed(self, path: str) -> bool:
        """Check a path (with optional query) against the rules."""
        path = unquote(path or '/')
        if path == '/robots.txt':
            return True

        best_length = -1
        allowed = True
        for pattern, allow in self.rules:
            if not pattern or not _compile_pattern(pattern).match(path):
                continue
            length = len(pattern)
            if length > best_length or (length == best_length and allow):
                best_length = length
                allowed = allow
        return allowed

    @classmethod
    def allow_all(cls, fetched_at: float, ttl: float, source: str = 'missing') -> 'RobotsRules':
        return cls(rules=(), fetched_at=fetched_at, ttl=ttl, source=source)

    @classmethod
    def disallow_all(cls, fetched_at: float, ttl: float, source: str = 'unreachable') -> 'RobotsRules':
        return cls(rules=(('/', False),), fetched_at=fetched_at, ttl=ttl, source=source)

    @classmethod
    def parse(cls, content: str, user_agent: str, fetched_at: float,
              ttl: float) -> 'RobotsRules':
        """
        Build rules for ``user_agent`` from robots.txt content.

        The group naming the user agent is used when present, otherwise the
        ``*`` group.
        """
        parser = RobotFileParser()
        parser.parse(content.splitlines())

        entry = next(
            (candidate for candidate in parser.entries if candidate.applies_to(user_agent)),
            parser.default_entry,
        )
        if entry is None:
            return cls.allow_all(fetched_at, ttl, source='fetched')

        rules = tuple(
            (unquote(line.path), bool(line.allowance))
            for line in entry.rulelines
        )

        delay = _group_crawl_delays(content).get(tuple(entry.useragents))
        req_rate = getattr(entry, 'req_rate', None)
        if delay is None and req_rate is not None and req_rate.requests:
            delay = req_rate.seconds / req_rate.requests

        return cls(
            rules=rules,
            crawl_delay=float(delay) if delay is not None else None,
            fetched_at=fetched_at,
            ttl=ttl,
            source='fetched',
        )


class RobotsCache:
    """
    Fetches, parses and caches robots.txt per origin.

    Concurrent lookups for an origin share one in-flight fetch. Cached rules
    are replaced as a whole value, never edited.
    """

    def __init__(self, fetcher, user_agent: str, timeout: float = 5.0,
                 ttl: float = 24 * 3600, unreachable_ttl: float = 3600,
                 unreachable_policy: str = ALLOW_ALL,
                 max_entries: Optional[int] = 100_000,
                 clock: Callable[[], float] = time.time):
        if unreachable_policy not in (ALLOW_ALL, DISALLOW_ALL):
            raise ValueError(f"Unknown unreachable policy: {unreachable_policy}")

        self.fetcher = fetcher
        self.user_agent = user_agent
        self.timeout = timeout
        self.ttl = ttl
        self.unreachable_ttl = unreachable_ttl
        self.unreachable_policy = unreachable_policy
        self.max_entries = max_entries
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._cache: "OrderedDict[str, RobotsRules]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}

        self.stats = {
            'hits': 0,
            'fetches': 0,
            'fetch_failures': 0,
            'disallowed': 0,
        }

    def _robots_token(self, user_agent: Optional[str]) -> str:
        # "MyBot/1.0 (+http://...)" matches groups named "MyBot"
        return (user_agent or self.user_agent).split('/')[0].split()[0]

    async def get_rules(self, url: NormalizedURL) -> RobotsRules:
        origin = url.origin
        rules = self._cache.get(origin)
        if rules is not None and not rules.is_expired(self.clock()):
            self.stats['hits'] += 1
            self._cache.move_to_end(origin)
            return rules

        task = self._inflight.get(origin)
        if task is None:
            task = asyncio.ensure_future(self._refresh(origin))
            self._inflight[origin] = task
            task.add_done_callback(lambda _: self._inflight.pop(origin, None))

        # A cancelled waiter must not cancel the fetch shared with others
        return await asyncio.shield(task)

    async def is_allowed(self, url: NormalizedURL, user_agent: Optional[str] = None) -> bool:
        if user_agent is not None and self._robots_token(user_agent) != self._robots_token(None):
            rules = await self._rules_for_agent(url, user_agent)
        else:
            rules = await self.get_rules(url)
        allowed = rules.is_allowed(url.path_and_query)
        if not allowed:
            self.stats['disallowed'] += 1
        return allowed

    async def get_crawl_delay(self, host: str) -> Optional[float]:
        """Crawl delay of any cached origin on ``host``, None if unknown."""
        for origin, rules in self._cache.items():
            if urlsplit(origin).hostname == host and rules.crawl_delay is not None:
                return rules.crawl_delay
        return None

    async def _rules_for_agent(self, url: NormalizedURL, user_agent: str) -> RobotsRules:
        # Uncached: only used for ad-hoc checks with a foreign user agent
        return await self._fetch_rules(url.origin, self._robots_token(user_agent))

    async def _refresh(self, origin: str) -> RobotsRules:
        rules = await self._fetch_rules(origin, self._robots_token(None))
        self._store(origin, rules)
        self.logger.debug(
            f"robots.txt for {origin}: source={rules.source}, "
            f"{len(rules.rules)} rules, crawl_delay={rules.crawl_delay}")
        return rules

    async def _fetch_rules(self, origin: str, token: str) -> RobotsRules:
        robots_url = f"{origin}/robots.txt"
        self.stats['fetches'] += 1

        try:
            status, content = await self.fetcher.get_text(
                robots_url, timeout=self.timeout, max_bytes=MAX_ROBOTS_BYTES)
        except FetchError as e:
            self.stats['fetch_failures'] += 1
            self.logger.warning(f"Could not fetch robots.txt for {origin}: {e.reason} {e}")
            return self._unreachable_rules()

        now = self.clock()
        if 200 <= status < 300:
            return RobotsRules.parse(content, token, now, self.ttl)
        if 500 <= status < 600:
            self.stats['fetch_failures'] += 1
            self.logger.warning(f"robots.txt for {origin} returned {status}")
            return self._unreachable_rules()
        # Missing robots.txt (4xx) allows everything
        return RobotsRules.allow_all(now, self.ttl, source='missing')

    def _unreachable_rules(self) -> RobotsRules:
        now = self.clock()
        if self.unreachable_policy == DISALLOW_ALL:
            return RobotsRules.disallow_all(now, self.unreachable_ttl)
        return RobotsRules.allow_all(now, self.unreachable_ttl, source='unreachable')

    def _store(self, origin: str, rules: RobotsRules):
        self._cache[origin] = rules
        self._cache.move_to_end(origin)
        if self.max_entries is not None:
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, 'cached_origins': len(self._cache)}
