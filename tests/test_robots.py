"""
robots.txt parsing, caching and failure policy.
"""

import asyncio
import unittest

from polite_crawler.crawler.normalizer import normalize
from polite_crawler.crawler.robots import RobotsCache, RobotsRules
from polite_crawler.errors import FetchTimeout

from helpers import FakeClock, FakeFetcher


ROBOTS_TXT = """\
User-agent: *
Disallow: /private
Allow: /private/open
Crawl-delay: 3
"""


class TestRobotsRules(unittest.TestCase):

    def test_disallow_and_allow(self):
        rules = RobotsRules.parse(ROBOTS_TXT, "PoliteCrawler", fetched_at=0, ttl=100)
        self.assertFalse(rules.is_allowed("/private"))
        self.assertFalse(rules.is_allowed("/private/page"))
        self.assertTrue(rules.is_allowed("/private/open/page"))
        self.assertTrue(rules.is_allowed("/public"))
        self.assertEqual(rules.crawl_delay, 3.0)

    def test_fractional_crawl_delay(self):
        rules = RobotsRules.parse("User-agent: *\nCrawl-delay: 2.5\nDisallow: /x\n",
                                  "PoliteCrawler", fetched_at=0, ttl=10)
        self.assertEqual(rules.crawl_delay, 2.5)
        self.assertFalse(rules.is_allowed("/x"))

    def test_crawl_delay_comes_from_the_selected_group(self):
        content = ("User-agent: PoliteCrawler\nCrawl-delay: 0.5\nDisallow: /own\n\n"
                   "User-agent: *\nCrawl-delay: 7\nDisallow:\n")
        own = RobotsRules.parse(content, "PoliteCrawler", fetched_at=0, ttl=100)
        other = RobotsRules.parse(content, "OtherBot", fetched_at=0, ttl=100)
        self.assertEqual(own.crawl_delay, 0.5)
        self.assertEqual(other.crawl_delay, 7.0)

    def test_unparseable_crawl_delay_is_ignored(self):
        rules = RobotsRules.parse("User-agent: *\nCrawl-delay: soon\nDisallow: /x\n",
                                  "PoliteCrawler", fetched_at=0, ttl=10)
        self.assertIsNone(rules.crawl_delay)

    def test_specific_group_wins_over_wildcard(self):
        content = "User-agent: PoliteCrawler\nDisallow: /\n\nUser-agent: *\nDisallow:\n"
        own = RobotsRules.parse(content, "PoliteCrawler", fetched_at=0, ttl=100)
        other = RobotsRules.parse(content, "OtherBot", fetched_at=0, ttl=100)
        self.assertFalse(own.is_allowed("/anything"))
        self.assertTrue(other.is_allowed("/anything"))

    def test_wildcards_and_end_anchor(self):
        content = "User-agent: *\nDisallow: /*.php$\nDisallow: /tmp*\n"
        rules = RobotsRules.parse(content, "PoliteCrawler", fetched_at=0, ttl=100)
        self.assertFalse(rules.is_allowed("/index.php"))
        self.assertTrue(rules.is_allowed("/index.php?page=2"))
        self.assertFalse(rules.is_allowed("/tmpfile"))
        self.assertTrue(rules.is_allowed("/about"))

    def test_longest_match_wins(self):
        rules = RobotsRules(rules=(("/a", False), ("/a/b", True)), fetched_at=0, ttl=100)
        self.assertTrue(rules.is_allowed("/a/b/c"))
        self.assertFalse(rules.is_allowed("/a/c"))

    def test_allow_wins_tie(self):
        rules = RobotsRules(rules=(("/page", False), ("/page", True)), fetched_at=0, ttl=100)
        self.assertTrue(rules.is_allowed("/page"))

    def test_robots_txt_itself_is_always_allowed(self):
        rules = RobotsRules.disallow_all(fetched_at=0, ttl=100)
        self.assertTrue(rules.is_allowed("/robots.txt"))
        self.assertFalse(rules.is_allowed("/"))

    def test_expiry(self):
        rules = RobotsRules.allow_all(fetched_at=100, ttl=10)
        self.assertFalse(rules.is_expired(109))
        self.assertTrue(rules.is_expired(110))


class TestRobotsCache(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.fetcher = FakeFetcher(robots={'http://a.test': (200, ROBOTS_TXT)})
        self.cache = RobotsCache(self.fetcher, "PoliteCrawler/1.0 (+http://bot.test)",
                                 ttl=60, unreachable_ttl=10, clock=self.clock)

    async def test_concurrent_lookups_share_one_fetch(self):
        url = normalize("http://a.test/page")
        results = await asyncio.gather(*(self.cache.get_rules(url) for _ in range(10)))
        self.assertEqual(self.fetcher.robots_calls, ["http://a.test/robots.txt"])
        self.assertTrue(all(rules is results[0] for rules in results))

    async def test_cached_until_ttl(self):
        url = normalize("http://a.test/page")
        await self.cache.get_rules(url)
        await self.cache.get_rules(normalize("http://a.test/other"))
        self.assertEqual(len(self.fetcher.robots_calls), 1)
        self.assertEqual(self.cache.get_stats()['hits'], 1)

        self.clock.advance(61)
        await self.cache.get_rules(url)
        self.assertEqual(len(self.fetcher.robots_calls), 2)

    async def test_is_allowed(self):
        self.assertFalse(await self.cache.is_allowed(normalize("http://a.test/private/x")))
        self.assertTrue(await self.cache.is_allowed(normalize("http://a.test/public")))
        self.assertEqual(await self.cache.get_crawl_delay("a.test"), 3.0)

    async def test_missing_robots_allows_everything(self):
        rules = await self.cache.get_rules(normalize("http://missing.test/"))
        self.assertEqual(rules.source, 'missing')
        self.assertTrue(rules.is_allowed("/anything"))
        self.assertEqual(rules.ttl, 60)

    async def test_server_error_uses_unreachable_policy(self):
        self.fetcher.robots['http://down.test'] = (503, '')
        rules = await self.cache.get_rules(normalize("http://down.test/"))
        self.assertEqual(rules.source, 'unreachable')
        self.assertTrue(rules.is_allowed("/page"))
        self.assertEqual(rules.ttl, 10)

    async def test_unreachable_disallow_policy(self):
        self.fetcher.robots['http://slow.test'] = FetchTimeout("timed out")
        cache = RobotsCache(self.fetcher, "PoliteCrawler", unreachable_policy='disallow',
                            unreachable_ttl=10, clock=self.clock)
        url = normalize("http://slow.test/page")
        self.assertFalse(await cache.is_allowed(url))

        # Retried once the short unreachable TTL runs out
        self.fetcher.robots['http://slow.test'] = (404, '')
        self.clock.advance(11)
        self.assertTrue(await cache.is_allowed(url))

    async def test_origins_are_cached_separately(self):
        await self.cache.get_rules(normalize("http://a.test/"))
        await self.cache.get_rules(normalize("https://a.test/"))
        self.assertEqual(self.fetcher.robots_calls,
                         ["http://a.test/robots.txt", "https://a.test/robots.txt"])

    async def test_rejects_unknown_policy(self):
        with self.assertRaises(ValueError):
            RobotsCache(self.fetcher, "PoliteCrawler", unreachable_policy='maybe')


if __name__ == "__main__":
    unittest.main()
