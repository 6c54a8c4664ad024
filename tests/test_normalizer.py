"""
URL normalization scenarios.
"""

import unittest

from polite_crawler.crawler.normalizer import normalize, try_normalize
from polite_crawler.errors import InvalidURL


class TestNormalize(unittest.TestCase):

    def test_canonical_form(self):
        url = normalize("HTTP://Example.COM:80/a/./b/../c/?utm_source=x&b=2&a=1#frag")
        self.assertEqual(url.url, "http://example.com/a/c?a=1&b=2")
        self.assertEqual(url.host, "example.com")
        self.assertIsNone(url.port)

    def test_default_and_explicit_ports(self):
        self.assertEqual(normalize("https://example.com:443/").url, "https://example.com/")
        self.assertEqual(normalize("https://example.com:8443/").url, "https://example.com:8443/")
        self.assertEqual(normalize("https://example.com:8443/").origin, "https://example.com:8443")

    def test_empty_path_becomes_root(self):
        self.assertEqual(normalize("http://example.com").url, "http://example.com/")
        self.assertEqual(normalize("http://example.com").path, "/")

    def test_relative_reference_resolved_against_base(self):
        url = normalize("../x", "http://a.test/b/c/d")
        self.assertEqual(url.url, "http://a.test/b/x")

    def test_equivalent_spellings_collapse(self):
        """Scenario: "/x" on http://a.test/ and "http://a.test/x?" are one URL."""
        first = normalize("/x", "http://a.test/")
        second = normalize("http://a.test/x?")
        self.assertEqual(first, second)
        self.assertEqual(first.fingerprint, second.fingerprint)

    def test_trailing_slash_and_query_order(self):
        self.assertEqual(normalize("http://a.test/dir/?b=1&a=2"), normalize("http://a.test/dir?a=2&b=1"))

    def test_tracking_params_dropped(self):
        url = normalize("http://a.test/p?gclid=1&utm_campaign=x&id=7")
        self.assertEqual(url.query, "id=7")

    def test_blank_query_values_kept(self):
        self.assertEqual(normalize("http://a.test/p?flag=&a=1").query, "a=1&flag=")

    def test_fragment_dropped(self):
        self.assertEqual(normalize("http://a.test/p#section").url, "http://a.test/p")

    def test_idna_and_trailing_dot_host(self):
        self.assertEqual(normalize("http://Bücher.example/").host, "xn--bcher-kva.example")
        self.assertEqual(normalize("http://example.com./").host, "example.com")

    def test_userinfo_dropped(self):
        self.assertEqual(normalize("http://user:pw@example.com/").url, "http://example.com/")

    def test_different_urls_have_different_fingerprints(self):
        self.assertNotEqual(normalize("http://a.test/1").fingerprint,
                            normalize("http://a.test/2").fingerprint)

    def test_path_depth(self):
        self.assertEqual(normalize("http://a.test/").depth, 0)
        self.assertEqual(normalize("http://a.test/a/b/c").depth, 3)

    def test_invalid_urls(self):
        for raw in ["", "   ", "ftp://a.test/", "mailto:someone@a.test",
                    "http://", "http://a.test:99999/"]:
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidURL):
                    normalize(raw)

    def test_try_normalize(self):
        self.assertIsNone(try_normalize("javascript:void(0)"))
        self.assertEqual(try_normalize("http://a.test").url, "http://a.test/")


if __name__ == "__main__":
    unittest.main()
