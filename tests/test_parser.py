"""
Link extraction from HTML documents.
"""

import unittest

from polite_crawler.crawler.normalizer import normalize
from polite_crawler.crawler.parser import LinkExtractor

from helpers import html_page


class TestLinkExtractor(unittest.TestCase):

    def setUp(self):
        self.extractor = LinkExtractor()

    def urls(self, body, base_url="http://a.test/dir/index.html"):
        return [url.url for url in self.extractor.extract(body, base_url)]

    def test_equivalent_links_collapse(self):
        """Scenario: "/x" and "http://a.test/x?" on one page yield one link."""
        body = html_page("/x", "http://a.test/x?")
        self.assertEqual(self.urls(body), ["http://a.test/x"])

    def test_skips_non_web_links(self):
        body = html_page("#top", "mailto:me@a.test", "javascript:void(0)", "tel:123",
                         "data:text/plain,hi", "sub/page")
        self.assertEqual(self.urls(body), ["http://a.test/dir/sub/page"])

    def test_skips_binary_extensions(self):
        body = html_page("/report.pdf", "/logo.PNG", "/page.html")
        self.assertEqual(self.urls(body), ["http://a.test/page.html"])

    def test_honours_base_href(self):
        body = ('<html><head><base href="http://b.test/root/"></head>'
                '<body><a href="a.html">a</a></body></html>')
        self.assertEqual(self.urls(body), ["http://b.test/root/a.html"])

    def test_area_tags(self):
        body = '<map><area href="/region" alt="r"></map>'
        self.assertEqual(self.urls(body), ["http://a.test/region"])

    def test_domain_filters(self):
        extractor = LinkExtractor(allowed_domains=["a.test", "evil.test"], blocked_domains=["evil.test"])
        body = html_page("http://www.a.test/1", "http://www.evil.test/2", "http://c.test/3")
        links = extractor.extract(body, "http://a.test/")
        self.assertEqual([url.url for url in links], ["http://www.a.test/1"])

    def test_nofollow(self):
        body = '<a href="/followed">f</a><a rel="nofollow" href="/skipped">s</a>'
        self.assertEqual(len(self.urls(body)), 2)

        extractor = LinkExtractor(respect_nofollow=True)
        links = extractor.extract(body, "http://a.test/")
        self.assertEqual([url.url for url in links], ["http://a.test/followed"])

    def test_invalid_hrefs_are_ignored(self):
        body = html_page("http://a.test:99999/", "ftp://a.test/file", "/ok")
        self.assertEqual(self.urls(body), ["http://a.test/ok"])
        self.assertEqual(self.extractor.stats['invalid_links'], 2)

    def test_empty_document(self):
        self.assertEqual(self.urls(""), [])
        self.assertEqual(self.urls(None), [])

    def test_unparseable_document_yields_no_links(self):
        with self.assertLogs('polite_crawler.crawler.parser', level='WARNING'):
            self.assertEqual(self.extractor.extract(12345, "http://a.test/"), [])
        self.assertEqual(self.extractor.stats['parse_errors'], 1)

    def test_broken_markup_is_best_effort(self):
        body = '<html><body><a href="/one">one<div><a href="/two">two</body>'
        self.assertEqual(self.urls(body), ["http://a.test/one", "http://a.test/two"])

    def test_extracting_normalized_urls_is_stable(self):
        originals = [normalize(raw) for raw in [
            "http://a.test/", "http://a.test/p?id=1", "https://b.test:8443/deep/path",
            "http://xn--bcher-kva.example/buch",
        ]]
        links = self.extractor.extract(html_page(*(url.url for url in originals)), "http://a.test/")
        self.assertEqual(links, originals)


if __name__ == "__main__":
    unittest.main()
