import os
import unittest
from unittest import mock

from fantasyreport.config import Config
from fantasyreport.storage.base import SourceRecord
from ingest_worker import build_parser, main, run_once, run_source
from tests.fakes import TempStoreMixin


class TestParser(unittest.TestCase):
    def test_commands(self):
        parser = build_parser()
        args = parser.parse_args(["source", "7", "--limit", "20"])
        self.assertEqual((args.command, args.source_id, args.limit), ("source", 7, 20))
        self.assertEqual(parser.parse_args(["once"]).limit, None)
        with self.assertRaises(SystemExit):
            parser.parse_args([])


class TestRuns(TempStoreMixin, unittest.TestCase):
    def test_run_once_with_no_sources_succeeds(self):
        self.assertTrue(run_once(Config(), self.store))

    def test_run_source_with_unusable_source_fails(self):
        sid = self.store.add_source(SourceRecord("Nothing configured"))
        self.assertFalse(run_source(Config(), self.store, sid))
        self.assertEqual(self.store.get_source(sid).consecutive_failures, 1)

    def test_init_db_command(self):
        env = {"DATABASE_URL": f"sqlite:///{self.tmpdir}/cli.db"}
        with mock.patch.dict(os.environ, env, clear=True):
            self.assertEqual(main(["init-db"]), 0)
        self.assertTrue(os.path.exists(os.path.join(self.tmpdir, "cli.db")))


if __name__ == "__main__":
    unittest.main()
