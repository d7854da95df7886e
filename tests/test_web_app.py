import unittest

from fantasyreport.config import Config
from fantasyreport.ingestion.fingerprint import DedupEngine
from fantasyreport.ingestion.orchestrator import Orchestrator
from fantasyreport.jobs.runner import JobRunner
from fantasyreport.jobs.tracker import JobTracker
from fantasyreport.retrieval.cache import SectionCache, SectionService
from fantasyreport.storage.base import ArticleRecord, SourceRecord, StorageError
from fantasyreport.storage.sqlite_store import SqliteStore
from tests.fakes import FakeHttp, TempStoreMixin, rss_feed
from web_app import create_app

FEED_URL = "https://feeds.example.com/nfl.xml"
TOKEN = "s3cret-token"


class WebAppTestCase(TempStoreMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        http = FakeHttp(
            {
                FEED_URL: rss_feed(
                    [
                        (
                            "Questionable tags to watch in week 6",
                            "https://example.com/nfl/week-6-injury-report",
                            "Fri, 10 Oct 2025 12:00:00 GMT",
                            "",
                        )
                    ]
                )
            }
        )
        self.source_id = self.store.add_source(SourceRecord("Example", rss_url=FEED_URL))
        self.runner = JobRunner(JobTracker(self.store), lambda: Orchestrator(self.store, http, fetch_details=False))
        self.app = create_app(
            Config(admin_token=TOKEN, section_cache_ttl=0),
            store=self.store,
            runner=self.runner,
        )
        self.app.config["TESTING"] = True
        self.client = self.app.test_client()

    def tearDown(self):
        self.runner.shutdown()
        super().tearDown()

    def auth(self, **extra):
        headers = {"Authorization": f"Bearer {TOKEN}"}
        headers.update(extra)
        return headers


class TestAdminJobs(WebAppTestCase):
    def test_admin_routes_require_the_token(self):
        resp = self.client.post("/api/admin/jobs/ingest", json={"sourceId": self.source_id})
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post(
            "/api/admin/jobs/ingest", json={"sourceId": self.source_id}, headers={"Authorization": "Bearer wrong"}
        )
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.client.get("/api/admin/jobs/abc").status_code, 401)

    def test_trigger_then_poll_job_and_events(self):
        resp = self.client.post("/api/admin/jobs/ingest", json={"sourceId": self.source_id}, headers=self.auth())
        self.assertEqual(resp.status_code, 202)
        job_id = resp.get_json()["job_id"]
        self.runner.wait(job_id, timeout=30)

        job = self.client.get(f"/api/admin/jobs/{job_id}", headers={"X-Admin-Token": TOKEN}).get_json()
        self.assertTrue(job["ok"])
        self.assertEqual(job["job"]["status"], "succeeded")
        self.assertEqual(job["job"]["params"]["source_id"], self.source_id)

        first = self.client.get(f"/api/admin/jobs/{job_id}/events?after=0&limit=2", headers=self.auth()).get_json()
        self.assertEqual([e["seq"] for e in first["events"]], [1, 2])
        self.assertEqual(first["last_seq"], 2)
        rest = self.client.get(f"/api/admin/jobs/{job_id}/events?after=2", headers=self.auth()).get_json()
        self.assertEqual(rest["events"][0]["seq"], 3)
        done = self.client.get(f"/api/admin/jobs/{job_id}/events?after={rest['last_seq']}", headers=self.auth())
        self.assertEqual(done.get_json(), {"ok": True, "events": [], "last_seq": rest["last_seq"]})

    def test_trigger_validation(self):
        resp = self.client.post("/api/admin/jobs/ingest", json={}, headers=self.auth())
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/admin/jobs/ingest", json={"source_id": 999}, headers=self.auth())
        self.assertEqual(resp.status_code, 404)

    def test_ingest_allowed(self):
        resp = self.client.post("/api/admin/jobs/ingest-allowed", json={"perSourceLimit": 5}, headers=self.auth())
        self.assertEqual(resp.status_code, 202)
        job = self.runner.wait(resp.get_json()["job_id"], timeout=30)
        self.assertEqual(job.status, "succeeded")
        self.assertEqual(job.params, {"scope": "all-allowed", "limit": 5})

    def test_unknown_job(self):
        self.assertEqual(self.client.get("/api/admin/jobs/nope", headers=self.auth()).status_code, 404)
        self.assertEqual(self.client.get("/api/admin/jobs/nope/events", headers=self.auth()).status_code, 404)


class TestPublicRoutes(WebAppTestCase):
    def test_section_page(self):
        DedupEngine(self.store).apply(
            ArticleRecord(
                source_id=self.source_id,
                title="Questionable tags to watch",
                url="https://example.com/nfl/questionable-tags",
                canonical_url="https://example.com/nfl/questionable-tags",
                fingerprint="u:q",
                topics=["injury", "rankings"],
            )
        )
        body = self.client.get("/api/section?key=injury&limit=5").get_json()
        self.assertFalse(body["degraded"])
        self.assertFalse(body["cached"])
        self.assertEqual([i["title"] for i in body["items"]], ["Questionable tags to watch"])
        self.assertEqual(body["items"][0]["provider"], "example")
        self.assertEqual(self.client.get("/api/section?key=rankings").get_json()["items"], [])

    def test_health(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["status"], "healthy")
        self.assertEqual(resp.headers["X-Content-Type-Options"], "nosniff")

    def test_unknown_route_is_json_404(self):
        resp = self.client.get("/api/nothing-here")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()["error"], "Endpoint not found")


class BrokenStore(SqliteStore):
    def ping(self):
        raise StorageError("connection refused")

    def list_window_articles(self, **kw):
        raise StorageError("connection refused")


class TestDegraded(TempStoreMixin, unittest.TestCase):
    def test_health_and_section_degrade(self):
        store = BrokenStore(self.tmpdir + "/broken.db")
        runner = JobRunner(JobTracker(store), lambda: None)
        try:
            app = create_app(
                Config(admin_token=TOKEN),
                store=store,
                runner=runner,
                section_service=SectionService(store, SectionCache(ttl=60)),
            )
            client = app.test_client()
            health = client.get("/api/health")
            self.assertEqual(health.status_code, 503)
            self.assertFalse(health.get_json()["database"])
            section = client.get("/api/section?key=news")
            self.assertEqual(section.status_code, 200)
            body = section.get_json()
            self.assertTrue(body["degraded"])
            self.assertEqual(body["items"], [])
        finally:
            runner.shutdown()


if __name__ == "__main__":
    unittest.main()
