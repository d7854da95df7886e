import unittest
from unittest import mock

from fantasyreport.classification.players import PlayerDirectory
from fantasyreport.ingestion.http_client import FetchError
from fantasyreport.ingestion.orchestrator import IngestSummary, Orchestrator, UnknownSourceError, totals
from fantasyreport.storage.base import PlayerRecord, SourceRecord
from fantasyreport.storage.sqlite_store import SqliteStore
from tests.fakes import FakeHttp, InsertFailingStore, TempStoreMixin, rss_feed

FEED_URL = "https://feeds.example.com/nfl.xml"

FEED = rss_feed(
    [
        (
            "Week 5 Waiver Wire: Jake Browning is a streamer",
            "https://example.com/nfl/week-5-waiver-wire-browning?utm_source=rss",
            "Wed, 01 Oct 2025 12:00:00 GMT",
            "Quarterback options for the week",
        ),
        (
            "Bijan Robinson injury update",
            "https://example.com/nfl/bijan-robinson-injury-update",
            "Wed, 01 Oct 2025 14:00:00 GMT",
            "",
        ),
        ("Home", "https://example.com/", "Wed, 01 Oct 2025 15:00:00 GMT", ""),
    ]
)


def _directory():
    return PlayerDirectory(
        [
            PlayerRecord("100", "Bijan Robinson", position="RB", team="ATL"),
            PlayerRecord("200", "Jacob T. Browning", position="QB", team="CIN", aliases=["Jacob Browning"]),
        ]
    )


class OrchestratorTestCase(TempStoreMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.http = FakeHttp({FEED_URL: FEED})
        self.source_id = self.store.add_source(SourceRecord("Example Feed", rss_url=FEED_URL, priority=1))

    def orchestrator(self, **kw):
        kw.setdefault("fetch_details", False)
        kw.setdefault("player_directory", _directory())
        return Orchestrator(self.store, self.http, **kw)


class TestIngestOne(OrchestratorTestCase):
    def test_first_run_inserts_and_tags(self):
        summary = self.orchestrator().ingest_one(self.source_id)
        self.assertTrue(summary.ok)
        self.assertEqual((summary.total, summary.inserted, summary.skipped), (3, 2, 1))
        self.assertEqual(self.store.count_articles(), 2)

        rows = {a.cleaned_title: a for a in self.store.list_window_articles(since=_long_ago())}
        waiver = rows["Week 5 Waiver Wire: Jake Browning is a streamer"]
        self.assertEqual(waiver.canonical_url, "https://example.com/nfl/week-5-waiver-wire-browning")
        self.assertEqual(waiver.topics, ["waiver-wire"])
        self.assertEqual(waiver.week, 5)
        self.assertEqual(waiver.players, ["200"])
        self.assertEqual(waiver.domain, "example.com")
        self.assertEqual(rows["Bijan Robinson injury update"].players, ["100"])

        source = self.store.get_source(self.source_id)
        self.assertIsNotNone(source.last_ok_at)

    def test_second_run_is_idempotent(self):
        orch = self.orchestrator()
        orch.ingest_one(self.source_id)
        before = {a.id: a for a in self.store.list_window_articles(since=_long_ago())}
        again = orch.ingest_one(self.source_id)
        after = {a.id: a for a in self.store.list_window_articles(since=_long_ago())}
        self.assertEqual((again.inserted, again.updated, again.skipped), (0, 0, 3))
        self.assertEqual(before, after)

    def test_tracking_parameter_variants_share_a_row(self):
        orch = self.orchestrator()
        orch.ingest_one(self.source_id)
        self.http.pages[FEED_URL] = rss_feed(
            [
                (
                    "Week 5 Waiver Wire: Jake Browning is a streamer",
                    "https://example.com/nfl/week-5-waiver-wire-browning/?fbclid=abc&amp;utm_medium=social#top",
                    "Wed, 01 Oct 2025 12:00:00 GMT",
                    "Quarterback options for the week",
                )
            ]
        )
        summary = orch.ingest_one(self.source_id)
        self.assertEqual(summary.inserted, 0)
        self.assertEqual(self.store.count_articles(), 2)

    def test_reingest_adds_tags_without_dropping(self):
        self.orchestrator(player_directory=None).ingest_one(self.source_id)
        summary = self.orchestrator().ingest_one(self.source_id)
        self.assertEqual(summary.updated, 2)
        rows = {a.cleaned_title: a for a in self.store.list_window_articles(since=_long_ago())}
        self.assertEqual(rows["Bijan Robinson injury update"].players, ["100"])

    def test_detail_page_supplies_canonical_and_players(self):
        self.http.pages[FEED_URL] = rss_feed(
            [("Streaming quarterbacks for week 6", "https://example.com/nfl/qb-streamers?ref=home", "", "")]
        )
        self.http.pages["https://example.com/nfl/qb-streamers?ref=home"] = """
            <html><head>
            <link rel="canonical" href="https://example.com/nfl/week-6-qb-streamers">
            <meta property="og:title" content="Page headline differs">
            <meta property="article:published_time" content="2025-10-08T10:00:00Z">
            </head><body><table>
            <tr><th>Player</th><th>Pos</th></tr>
            <tr><td>Jake Browning</td><td>QB</td></tr>
            </table></body></html>
        """
        summary = self.orchestrator(fetch_details=True).ingest_one(self.source_id)
        self.assertEqual(summary.inserted, 1)
        (article,) = self.store.list_window_articles(since=_long_ago())
        self.assertEqual(article.canonical_url, "https://example.com/nfl/week-6-qb-streamers")
        self.assertEqual(article.cleaned_title, "Streaming quarterbacks for week 6")
        self.assertEqual(article.players, ["200"])
        self.assertIsNotNone(article.published_at)

    def test_detail_failure_falls_back_to_index_data(self):
        summary = self.orchestrator(fetch_details=True).ingest_one(self.source_id)
        # Detail pages are unmapped (404) but the feed data is enough.
        self.assertEqual(summary.inserted, 2)
        self.assertEqual(summary.failed, 0)

    def test_index_failure_is_reported(self):
        self.http.pages[FEED_URL] = "not a feed at all"
        summary = self.orchestrator().ingest_one(self.source_id)
        self.assertFalse(summary.ok)
        self.assertIn("index failed", summary.error)
        self.assertEqual(self.store.get_source(self.source_id).consecutive_failures, 1)

    def test_unknown_source(self):
        with self.assertRaises(UnknownSourceError):
            self.orchestrator().ingest_one(9999)

    def test_item_errors_do_not_stop_the_source(self):
        orch = self.orchestrator()
        original = orch.classifier.classify
        calls = []

        def flaky(**kw):
            calls.append(kw["title"])
            if len(calls) == 1:
                raise RuntimeError("boom")
            return original(**kw)

        orch.classifier.classify = flaky
        summary = orch.ingest_one(self.source_id)
        self.assertEqual((summary.failed, summary.inserted), (1, 1))
        self.assertTrue(summary.ok)


STORY_LINK = "https://example.com/nfl/story?id=77"
STORY_PAGE = """
    <html><head>
    <link rel="canonical" href="/nfl/week-5-waiver-wire">
    <meta property="og:title" content="Week 5 waiver wire targets">
    </head><body><p>Targets for the week.</p></body></html>
"""


class TestDetailFetchVariance(OrchestratorTestCase):
    def setUp(self):
        super().setUp()
        self.http.pages[FEED_URL] = rss_feed(
            [("Week 5 waiver wire targets", STORY_LINK, "Wed, 01 Oct 2025 12:00:00 GMT", "")]
        )

    def test_failed_page_fetch_on_rerun_keeps_one_row(self):
        self.http.pages[STORY_LINK] = STORY_PAGE
        orch = self.orchestrator(fetch_details=True)
        self.assertEqual(orch.ingest_one(self.source_id).inserted, 1)
        (article,) = self.store.list_window_articles(since=_long_ago())
        self.assertEqual(article.canonical_url, "https://example.com/nfl/week-5-waiver-wire")

        self.http.pages[STORY_LINK] = FetchError(STORY_LINK, "http_503", status=503)
        again = orch.ingest_one(self.source_id)
        self.assertEqual(again.inserted, 0)
        self.assertEqual(again.failed, 0)
        self.assertEqual(self.store.count_articles(), 1)

    def test_page_fetch_recovering_on_rerun_keeps_one_row(self):
        orch = self.orchestrator(fetch_details=True)
        self.assertEqual(orch.ingest_one(self.source_id).inserted, 1)
        self.http.pages[STORY_LINK] = STORY_PAGE
        again = orch.ingest_one(self.source_id)
        self.assertEqual(again.inserted, 0)
        self.assertEqual(self.store.count_articles(), 1)
        # And once more with the page gone again.
        del self.http.pages[STORY_LINK]
        self.assertEqual(orch.ingest_one(self.source_id).inserted, 0)
        self.assertEqual(self.store.count_articles(), 1)

    def test_page_parse_error_falls_back_to_feed_data(self):
        self.http.pages[STORY_LINK] = STORY_PAGE
        with mock.patch("fantasyreport.ingestion.adapters.parse_article_meta", side_effect=ValueError("bad markup")):
            summary = self.orchestrator(fetch_details=True).ingest_one(self.source_id)
        self.assertEqual((summary.inserted, summary.failed), (1, 0))
        (article,) = self.store.list_window_articles(since=_long_ago())
        self.assertEqual(article.canonical_url, STORY_LINK)


class TestPagination(OrchestratorTestCase):
    def test_page_budget_reaches_later_listing_pages(self):
        source_id = self.store.add_source(
            SourceRecord(
                "Listing",
                homepage_url="https://example.com/",
                fetch_mode="html",
                scrape_path="/nfl",
                scrape_pagination="/nfl/page/{page}",
            )
        )
        self.http.pages["https://example.com/nfl"] = (
            '<article><h2><a href="/nfl/week-5-start-sit">Week 5 Start/Sit Decisions</a></h2></article>'
        )
        self.http.pages["https://example.com/nfl/page/2"] = (
            '<article><h2><a href="/nfl/dfs-value-plays-week-5">DFS Value Plays for Week 5</a></h2></article>'
        )
        summary = self.orchestrator(page_budget=2).ingest_one(source_id)
        self.assertIn("https://example.com/nfl/page/2", self.http.calls)
        self.assertEqual(summary.total, 2)

    def test_default_budget_reads_one_page(self):
        source_id = self.store.add_source(
            SourceRecord("Listing", homepage_url="https://example.com/", fetch_mode="html", scrape_path="/nfl",
                         scrape_pagination="/nfl/page/{page}")
        )
        self.http.pages["https://example.com/nfl"] = (
            '<article><h2><a href="/nfl/week-5-start-sit">Week 5 Start/Sit Decisions</a></h2></article>'
        )
        self.orchestrator().ingest_one(source_id)
        self.assertNotIn("https://example.com/nfl/page/2", self.http.calls)


class TestStorageFailures(TempStoreMixin, unittest.TestCase):
    def test_insert_failure_marks_the_source(self):
        store = InsertFailingStore(self.tmpdir + "/failing.db")
        source_id = store.add_source(SourceRecord("Example Feed", rss_url=FEED_URL))
        store.broken_sources.add(source_id)
        summary = Orchestrator(store, FakeHttp({FEED_URL: FEED}), fetch_details=False).ingest_one(source_id)
        self.assertTrue(summary.storage_failure)
        self.assertFalse(summary.ok)
        self.assertIn("storage error", summary.error)
        self.assertEqual(store.get_source(source_id).consecutive_failures, 1)

    def test_other_sources_still_ingest(self):
        store = InsertFailingStore(self.tmpdir + "/failing.db")
        good = store.add_source(SourceRecord("Good", rss_url=FEED_URL, priority=1))
        bad = store.add_source(SourceRecord("Bad", rss_url="https://feeds.example.com/other.xml", priority=2))
        store.broken_sources.add(bad)
        other = rss_feed([("Week 5 tight end rankings", "https://other.example.com/nfl/week-5-te-rankings", "", "")])
        http = FakeHttp({FEED_URL: FEED, "https://feeds.example.com/other.xml": other})
        results = Orchestrator(store, http, fetch_details=False).ingest_all()
        self.assertEqual(results[good].inserted, 2)
        self.assertTrue(results[bad].storage_failure)
        self.assertFalse(results[good].storage_failure)


class TestIngestAll(OrchestratorTestCase):
    def test_failing_sources_do_not_abort_the_run(self):
        broken = self.store.add_source(SourceRecord("Broken Feed", rss_url="https://down.example.com/rss", priority=2))
        bogus = self.store.add_source(SourceRecord("Bogus Adapter", adapter="nope", priority=3))
        results = self.orchestrator(concurrency=3).ingest_all(limit=10)
        self.assertEqual(list(results), [self.source_id, broken, bogus])
        self.assertTrue(results[self.source_id].ok)
        self.assertEqual(results[self.source_id].inserted, 2)
        self.assertFalse(results[broken].ok)
        self.assertFalse(results[bogus].ok)
        agg = totals(list(results.values()))
        self.assertEqual((agg["sources"], agg["failed_sources"], agg["inserted"]), (3, 2, 2))

    def test_allowed_only(self):
        self.store.add_source(SourceRecord("Disallowed", rss_url="https://x.example.com/rss", allowed=False))
        results = self.orchestrator().ingest_allowed(limit=10)
        self.assertEqual(list(results), [self.source_id])

    def test_same_story_from_two_sources_is_a_duplicate(self):
        second = self.store.add_source(
            SourceRecord("Mirror", rss_url="https://mirror.example.com/rss", priority=5)
        )
        self.http.pages["https://mirror.example.com/rss"] = rss_feed(
            [
                (
                    "Bijan Robinson injury update",
                    "https://example.com/nfl/bijan-robinson-injury-update?utm_campaign=mirror",
                    "Wed, 01 Oct 2025 14:00:00 GMT",
                    "",
                )
            ]
        )
        orch = self.orchestrator()
        orch.ingest_one(self.source_id)
        summary = orch.ingest_one(second)
        self.assertEqual(summary.duplicates, 1)
        self.assertEqual(self.store.count_articles(), 2)

    def test_no_sources(self):
        store = SqliteStore(self.tmpdir + "/empty.db")
        self.assertEqual(Orchestrator(store, self.http).ingest_all(), {})


class TestSummary(unittest.TestCase):
    def test_ok_and_dict(self):
        summary = IngestSummary(source_id=1, source_name="x", inserted=2)
        self.assertTrue(summary.ok)
        self.assertEqual(summary.as_dict()["inserted"], 2)
        summary.error = "index failed"
        self.assertFalse(summary.ok)


def _long_ago():
    from datetime import datetime, timezone

    return datetime(2000, 1, 1, tzinfo=timezone.utc)


if __name__ == "__main__":
    unittest.main()
