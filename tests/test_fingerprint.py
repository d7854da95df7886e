import unittest

from fantasyreport.ingestion.fingerprint import (
    DUPLICATE,
    INSERT,
    SKIP,
    UPDATE,
    DedupEngine,
    compute_fingerprint,
    merge_changes,
    normalize_title,
    title_key,
)
from fantasyreport.storage.base import ArticleRecord, SourceRecord

from tests.fakes import TempStoreMixin


def _article(source_id, url, title="Week 5 Waiver Wire Pickups", **kw):
    return ArticleRecord(
        source_id=source_id,
        title=title,
        cleaned_title=normalize_title(title),
        url=url,
        canonical_url=url,
        fingerprint=compute_fingerprint(url, title),
        **kw,
    )


class TestFingerprint(unittest.TestCase):
    def test_tracking_params_do_not_change_fingerprint(self):
        a = compute_fingerprint("https://example.com/nfl/week-5-waivers?utm_source=rss", "Week 5 waivers")
        b = compute_fingerprint("https://example.com/nfl/week-5-waivers/?fbclid=abc#top", "Different title")
        self.assertEqual(a, b)
        self.assertTrue(a.startswith("u:"))

    def test_ambiguous_url_falls_back_to_title(self):
        a = compute_fingerprint("https://bit.ly/abc", "Week 5 Waiver Wire Pickups")
        b = compute_fingerprint("https://t.co/xyz", "Week 5 waiver wire pickups!")
        self.assertTrue(a.startswith("t:"))
        self.assertEqual(a, b)

    def test_short_title_on_ambiguous_url_keeps_url_identity(self):
        self.assertTrue(compute_fingerprint("https://example.com/news", "News").startswith("u:"))

    def test_normalize_title(self):
        self.assertEqual(normalize_title("NEWS:  Bijan&nbsp;Robinson &amp; the   Falcons"), "Bijan Robinson & the Falcons")
        self.assertEqual(title_key("Puka Nacua’s  big day!"), "puka nacuas big day")

    def test_merge_changes_never_shrinks_tags(self):
        existing = _article(1, "https://example.com/a", topics=["injury"], players=["p1"])
        incoming = _article(1, "https://example.com/a", topics=[], players=["p2"])
        changes = merge_changes(existing, incoming)
        self.assertNotIn("topics", changes)
        self.assertEqual(changes["players"], ["p1", "p2"])

    def test_merge_changes_empty_for_identical_content(self):
        a = _article(1, "https://example.com/a", topics=["news"])
        b = _article(1, "https://example.com/a", topics=["news"])
        self.assertEqual(merge_changes(a, b), {})


class TestDedupEngine(TempStoreMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.s1 = self.store.add_source(SourceRecord(name="Alpha"))
        self.s2 = self.store.add_source(SourceRecord(name="Beta"))
        self.engine = DedupEngine(self.store)

    def test_insert_then_skip_then_update(self):
        first = self.engine.apply(_article(self.s1, "https://example.com/a", topics=["waiver-wire"]))
        self.assertEqual(first.action, INSERT)

        again = self.engine.apply(_article(self.s1, "https://example.com/a", topics=["waiver-wire"]))
        self.assertEqual(again.action, SKIP)

        changed = self.engine.apply(
            _article(self.s1, "https://example.com/a", title="Week 5 Waiver Wire Pickups (Updated)", topics=["waiver-wire"])
        )
        self.assertEqual(changed.action, UPDATE)
        self.assertEqual(self.store.count_articles(), 1)
        stored = self.store.find_article(self.s1, first.fingerprint)
        self.assertEqual(stored.title, "Week 5 Waiver Wire Pickups (Updated)")

    def test_cross_source_duplicate_unions_tags_into_canonical(self):
        original = _article(self.s1, "https://example.com/a", topics=["injury"], players=["p1"])
        self.engine.apply(original)

        copy = _article(self.s2, "https://example.com/a", topics=["rankings"], players=["p2"])
        decision = self.engine.apply(copy)
        self.assertEqual(decision.action, DUPLICATE)
        self.assertEqual(decision.existing.id, original.id)
        self.assertEqual(self.store.count_articles(), 1)

        canonical = self.store.get_article(original.id)
        self.assertEqual(canonical.topics, ["injury", "rankings"])
        self.assertEqual(canonical.players, ["p1", "p2"])

        # Seeing the same duplicate again is a no-op.
        self.assertEqual(self.engine.apply(_article(self.s2, "https://example.com/a")).action, SKIP)

    def test_insert_conflict_is_redecided(self):
        article = _article(self.s1, "https://example.com/a")
        stale = self.engine.decide(article)
        self.assertEqual(stale.action, INSERT)
        self.engine.apply(_article(self.s1, "https://example.com/a"))

        # The earlier INSERT decision loses the race against the stored row.
        result = self.engine.apply(article, stale)
        self.assertEqual(result.action, SKIP)
        self.assertEqual(self.store.count_articles(), 1)

    def test_link_fingerprint_keeps_one_row_per_story(self):
        link = "https://example.com/story?id=77"
        link_fp = compute_fingerprint(link, "Week 5 Waiver Wire Pickups")
        enriched = _article(self.s1, "https://example.com/nfl/week-5-waiver-wire")
        enriched.url = link
        self.assertEqual(self.engine.apply(enriched, link_fingerprint=link_fp).action, INSERT)
        self.assertEqual(self.store.find_linked_article(self.s1, link_fp).id, enriched.id)

        # A later pass that only knows the index link lands on the same row.
        bare = _article(self.s1, link, topics=["waiver-wire"])
        decision = self.engine.apply(bare, link_fingerprint=link_fp)
        self.assertEqual(decision.action, UPDATE)
        self.assertEqual(decision.existing.id, enriched.id)
        self.assertEqual(self.store.count_articles(), 1)

    def test_row_stored_under_link_is_found_after_enrichment(self):
        link = "https://example.com/story?id=77"
        bare = _article(self.s1, link)
        self.engine.apply(bare)
        enriched = _article(self.s1, "https://example.com/nfl/week-5-waiver-wire")
        decision = self.engine.apply(enriched, link_fingerprint=bare.fingerprint)
        self.assertEqual(decision.action, SKIP)
        self.assertEqual(decision.existing.id, bare.id)
        self.assertEqual(self.store.count_articles(), 1)

    def test_aliases_of_other_sources_are_not_merged(self):
        link_fp = compute_fingerprint("https://example.com/story?id=77", "Week 5 Waiver Wire Pickups")
        self.engine.apply(_article(self.s1, "https://example.com/nfl/week-5-waiver-wire"), link_fingerprint=link_fp)
        other = _article(self.s2, "https://example.com/story?id=77")
        self.assertEqual(self.engine.decide(other).action, INSERT)


if __name__ == "__main__":
    unittest.main()
