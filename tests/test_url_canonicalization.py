import unittest

from fantasyreport.ingestion.url_utils import (
    canonicalize_url,
    choose_canonical,
    domain_of,
    is_ambiguous_url,
    unwrap_redirect,
)


class TestUrlCanonicalization(unittest.TestCase):
    def test_canonicalize_strips_tracking_params(self):
        raw = "https://Example.com/path/to/article?utm_source=x&utm_medium=y&id=123&gclid=AAA#section"
        canon = canonicalize_url(raw)
        self.assertEqual(canon, "https://example.com/path/to/article?id=123")

    def test_equivalent_urls_share_a_canonical_form(self):
        a = "https://example.com/a?utm_source=x&id=1"
        b = "https://example.com/a?id=1&utm_medium=y"
        self.assertEqual(canonicalize_url(a), canonicalize_url(b))

    def test_trailing_slash_amp_and_default_port(self):
        self.assertEqual(
            canonicalize_url("https://www.example.com:443/nfl//week-5-waivers/amp/"),
            "https://www.example.com/nfl/week-5-waivers",
        )

    def test_remaining_params_are_sorted(self):
        self.assertEqual(
            canonicalize_url("https://example.com/a?b=2&a=1&fbclid=zz"),
            "https://example.com/a?a=1&b=2",
        )

    def test_unwraps_redirector_links(self):
        wrapped = "https://l.facebook.com/l.php?u=https%3A%2F%2Fexample.com%2Fnfl%2Fstory%3Futm_source%3Dfb"
        self.assertEqual(unwrap_redirect(wrapped), "https://example.com/nfl/story?utm_source=fb")
        self.assertEqual(canonicalize_url(wrapped), "https://example.com/nfl/story")

    def test_plain_query_param_is_not_treated_as_redirect(self):
        url = "https://example.com/search-results?url=https://other.com/x"
        self.assertEqual(unwrap_redirect(url), url)

    def test_domain_drops_www(self):
        self.assertEqual(domain_of("https://www.FantasyPros.com/nfl/x"), "fantasypros.com")
        self.assertIsNone(domain_of("not a url"))

    def test_ambiguous_urls(self):
        self.assertTrue(is_ambiguous_url("https://bit.ly/3abc"))
        self.assertTrue(is_ambiguous_url("https://example.com/news/"))
        self.assertFalse(is_ambiguous_url("https://example.com/news/week-5-waivers"))

    def test_choose_canonical_ignores_generic_and_offsite_declarations(self):
        page = "https://example.com/nfl/week-5-waivers?utm_source=rss"
        self.assertEqual(choose_canonical(page, "https://example.com/"), "https://example.com/nfl/week-5-waivers")
        self.assertEqual(choose_canonical(page, "https://other.com/story"), "https://example.com/nfl/week-5-waivers")
        self.assertEqual(
            choose_canonical(page, "/nfl/week-5-waiver-wire"),
            "https://example.com/nfl/week-5-waiver-wire",
        )


if __name__ == "__main__":
    unittest.main()
