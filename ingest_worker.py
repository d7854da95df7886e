#!/usr/bin/env python3
"""Fantasy football ingestion worker.

Commands:
- once           ingest every allowed source (tracked as a job)
- source <id>    ingest one source
- scheduled      run `once` every INGEST_SCHEDULE_MINUTES
- load-players   refresh the player directory from Sleeper
- init-db        create tables
"""

from __future__ import annotations

import argparse
import logging
import time
from typing import List, Optional

import schedule

from fantasyreport.classification.roster import load_players
from fantasyreport.config import Config, configure_logging
from fantasyreport.ingestion.http_client import FetchError, HttpClient
from fantasyreport.ingestion.orchestrator import Orchestrator
from fantasyreport.jobs.runner import SCOPE_ALL_ALLOWED, SCOPE_ONE_SOURCE, JobRunner
from fantasyreport.jobs.tracker import JobTracker
from fantasyreport.storage.base import JOB_SUCCEEDED, StorageError, Store, open_store

logger = logging.getLogger("ingest_worker")


def _runner(config: Config, store: Store) -> JobRunner:
    return JobRunner(JobTracker(store), lambda: Orchestrator.from_config(config, store), max_workers=1)


def run_once(config: Config, store: Store, limit: Optional[int] = None) -> bool:
    job = _runner(config, store).run_sync(
        SCOPE_ALL_ALLOWED, {"limit": limit or config.ingest_limit}, actor="ingest_worker"
    )
    logger.info(f"[ingest] job={job.id} status={job.status} {job.last_message or ''}")
    return job.status == JOB_SUCCEEDED


def run_source(config: Config, store: Store, source_id: int, limit: Optional[int] = None) -> bool:
    job = _runner(config, store).run_sync(
        SCOPE_ONE_SOURCE,
        {"source_id": source_id, "limit": limit or config.ingest_limit},
        actor="ingest_worker",
    )
    logger.info(f"[ingest] job={job.id} status={job.status} {job.last_message or ''}")
    return job.status == JOB_SUCCEEDED


def run_scheduled(config: Config, store: Store) -> None:
    def tick() -> None:
        try:
            run_once(config, store)
        except StorageError as e:
            logger.error(f"Scheduled ingest could not start: {e}")

    tick()
    schedule.every(config.ingest_schedule_minutes).minutes.do(tick)
    while True:
        schedule.run_pending()
        time.sleep(5)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="fantasyreport ingestion worker")
    sub = parser.add_subparsers(dest="command", required=True)

    once = sub.add_parser("once", help="ingest all allowed sources")
    once.add_argument("--limit", type=int, default=None)

    one = sub.add_parser("source", help="ingest a single source")
    one.add_argument("source_id", type=int)
    one.add_argument("--limit", type=int, default=None)

    sub.add_parser("scheduled", help="ingest allowed sources on a schedule")
    sub.add_parser("load-players", help="refresh players from Sleeper")
    sub.add_parser("init-db", help="create database tables")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config.from_env()
    configure_logging(config)
    store = open_store(config.database_url)

    if args.command == "init-db":
        store.ensure_schema()
        logger.info("Schema ready")
        return 0
    if args.command == "load-players":
        try:
            load_players(store, HttpClient.from_config(config), config.sleeper_players_url)
        except FetchError as e:
            logger.error(f"Player load failed: {e}")
            return 1
        return 0
    if args.command == "source":
        return 0 if run_source(config, store, args.source_id, args.limit) else 1
    if args.command == "scheduled":
        run_scheduled(config, store)
        return 0
    return 0 if run_once(config, store, args.limit) else 1


if __name__ == "__main__":
    raise SystemExit(main())
