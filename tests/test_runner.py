import unittest

from fantasyreport.ingestion.orchestrator import Orchestrator
from fantasyreport.jobs.runner import (
    SCOPE_ALL,
    SCOPE_ALL_ALLOWED,
    SCOPE_ONE_SOURCE,
    JobRunner,
    normalize_params,
)
from fantasyreport.jobs.tracker import JobTracker
from fantasyreport.storage.base import JOB_FAILED, JOB_SUCCEEDED, SourceRecord, StorageError
from tests.fakes import FakeHttp, InsertFailingStore, TempStoreMixin, rss_feed

FEED_URL = "https://feeds.example.com/nfl.xml"
SECOND_FEED_URL = "https://feeds.example.com/second.xml"


class TestNormalizeParams(unittest.TestCase):
    def test_limits_are_clamped(self):
        self.assertEqual(normalize_params(SCOPE_ALL, {"limit": 5000})["limit"], 500)
        self.assertEqual(normalize_params(SCOPE_ALL, {"limit": 0})["limit"], 1)
        self.assertEqual(normalize_params(SCOPE_ALL, {"limit": "abc"})["limit"], 50)
        self.assertEqual(normalize_params(SCOPE_ALL_ALLOWED, None), {"scope": "all-allowed", "limit": 50})

    def test_one_source_needs_an_id(self):
        self.assertEqual(normalize_params(SCOPE_ONE_SOURCE, {"source_id": "7"})["source_id"], 7)
        with self.assertRaises(ValueError):
            normalize_params(SCOPE_ONE_SOURCE, {})

    def test_unknown_scope(self):
        with self.assertRaises(ValueError):
            normalize_params("everything", {})


class TestJobRunner(TempStoreMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.http = FakeHttp(
            {
                FEED_URL: rss_feed(
                    [
                        (
                            "Week 5 rankings: running backs",
                            "https://example.com/nfl/week-5-rb-rankings",
                            "Wed, 01 Oct 2025 12:00:00 GMT",
                            "",
                        )
                    ]
                )
            }
        )
        self.good = self.store.add_source(SourceRecord("Good Feed", rss_url=FEED_URL, priority=1))
        self.bad = self.store.add_source(SourceRecord("Down Feed", rss_url="https://down.example.com/rss", priority=2))
        self.tracker = JobTracker(self.store)
        self.runner = JobRunner(self.tracker, lambda: Orchestrator(self.store, self.http, fetch_details=False))

    def tearDown(self):
        self.runner.shutdown()
        super().tearDown()

    def test_background_job_reaches_success_with_events(self):
        job_id = self.runner.trigger_ingest(SCOPE_ONE_SOURCE, {"source_id": self.good, "limit": 10}, actor="admin")
        self.assertIsNotNone(self.tracker.get(job_id))
        job = self.runner.wait(job_id, timeout=30)
        self.assertEqual(job.status, JOB_SUCCEEDED)
        self.assertTrue(job.last_message.startswith("Done: inserted=1"))
        events = self.tracker.events_after(job_id)
        self.assertEqual([e.seq for e in events], list(range(1, len(events) + 1)))
        self.assertTrue(events[0].message.startswith("Ingest started"))
        self.assertEqual(events[-1].meta["summary"]["inserted"], 1)
        self.assertEqual(self.store.count_articles(), 1)

    def test_single_source_index_failure_fails_the_job(self):
        job = self.runner.run_sync(SCOPE_ONE_SOURCE, {"source_id": self.bad})
        self.assertEqual(job.status, JOB_FAILED)
        self.assertIn("index failed", job.error_detail)
        levels = [e.level for e in self.tracker.events_after(job.id)]
        self.assertIn("error", levels)

    def test_unknown_source_fails_the_job(self):
        job = self.runner.run_sync(SCOPE_ONE_SOURCE, {"source_id": 4242})
        self.assertEqual(job.status, JOB_FAILED)
        self.assertIn("UnknownSourceError", job.error_detail)

    def test_multi_source_job_survives_a_bad_source(self):
        job = self.runner.run_sync(SCOPE_ALL, {"limit": 10})
        self.assertEqual(job.status, JOB_SUCCEEDED)
        self.assertIn("failed_sources=1", job.last_message)
        self.assertEqual((job.progress_current, job.progress_total), (2, 2))

    def test_all_allowed_scope(self):
        self.store.add_source(SourceRecord("Off", rss_url="https://off.example.com/rss", allowed=False))
        job = self.runner.run_sync(SCOPE_ALL_ALLOWED, {"limit": 10})
        self.assertEqual(job.status, JOB_SUCCEEDED)
        self.assertIn("sources=2", job.last_message)

    def test_crashing_orchestrator_fails_the_job(self):
        def broken_factory():
            raise StorageError("database is locked")

        runner = JobRunner(self.tracker, broken_factory)
        try:
            job = runner.run_sync(SCOPE_ALL, {})
        finally:
            runner.shutdown()
        self.assertEqual(job.status, JOB_FAILED)
        self.assertIn("database is locked", job.error_detail)

    def test_wait_on_unknown_job(self):
        self.assertIsNone(self.runner.wait("missing", timeout=0.1))


class TestStorageFailureOutcomes(TempStoreMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.store = InsertFailingStore(self.tmpdir + "/failing.db")
        http = FakeHttp(
            {
                FEED_URL: rss_feed(
                    [("Week 5 rankings: running backs", "https://example.com/nfl/week-5-rb-rankings", "", "")]
                ),
                SECOND_FEED_URL: rss_feed(
                    [("Week 5 rankings: wide receivers", "https://other.example.com/nfl/week-5-wr-rankings", "", "")]
                ),
            }
        )
        self.first = self.store.add_source(SourceRecord("First", rss_url=FEED_URL, priority=1))
        self.second = self.store.add_source(SourceRecord("Second", rss_url=SECOND_FEED_URL, priority=2))
        self.tracker = JobTracker(self.store)
        self.runner = JobRunner(self.tracker, lambda: Orchestrator(self.store, http, fetch_details=False))

    def tearDown(self):
        self.runner.shutdown()
        super().tearDown()

    def test_single_source_storage_failure_fails_the_job(self):
        self.store.broken_sources.add(self.first)
        job = self.runner.run_sync(SCOPE_ONE_SOURCE, {"source_id": self.first})
        self.assertEqual(job.status, JOB_FAILED)
        self.assertIn("storage error", job.error_detail)

    def test_every_source_failing_on_storage_fails_the_job(self):
        self.store.broken_sources.update({self.first, self.second})
        job = self.runner.run_sync(SCOPE_ALL, {})
        self.assertEqual(job.status, JOB_FAILED)
        self.assertIn("storage unavailable", job.error_detail)

    def test_partial_storage_failure_still_succeeds(self):
        self.store.broken_sources.add(self.second)
        job = self.runner.run_sync(SCOPE_ALL, {})
        self.assertEqual(job.status, JOB_SUCCEEDED)
        self.assertIn("failed_sources=1", job.last_message)
        self.assertIn("inserted=1", job.last_message)
        levels = [e.level for e in self.tracker.events_after(job.id)]
        self.assertIn("error", levels)


if __name__ == "__main__":
    unittest.main()
