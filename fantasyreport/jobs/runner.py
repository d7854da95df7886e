"""Triggers ingestion jobs and runs them in the background.

The job row is written before `trigger_ingest` returns, so callers can start
polling immediately; the work itself runs on a small thread pool and always
leaves the job in a terminal state.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from fantasyreport.ingestion.orchestrator import Orchestrator, totals
from fantasyreport.jobs.tracker import JobEventSink, JobTracker
from fantasyreport.storage.base import JobRecord, StorageError

logger = logging.getLogger(__name__)

SCOPE_ONE_SOURCE = "one-source"
SCOPE_ALL_ALLOWED = "all-allowed"
SCOPE_ALL = "all"
SCOPES = (SCOPE_ONE_SOURCE, SCOPE_ALL_ALLOWED, SCOPE_ALL)

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


def _limit(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, n))


def normalize_params(scope: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validated job parameters; ValueError for an unknown scope or missing source id."""
    if scope not in SCOPES:
        raise ValueError(f"Unknown ingest scope {scope!r}")
    params = dict(params or {})
    out: Dict[str, Any] = {"scope": scope, "limit": _limit(params.get("limit", DEFAULT_LIMIT))}
    if scope == SCOPE_ONE_SOURCE:
        try:
            out["source_id"] = int(params.get("source_id"))
        except (TypeError, ValueError):
            raise ValueError("source_id is required for a one-source ingest") from None
    return out


class JobRunner:
    def __init__(
        self,
        tracker: JobTracker,
        orchestrator_factory: Callable[[], Orchestrator],
        max_workers: int = 2,
    ):
        self.tracker = tracker
        self.orchestrator_factory = orchestrator_factory
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="ingest-job")
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def trigger_ingest(self, scope: str, params: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> str:
        job_params = normalize_params(scope, params)
        job = self.tracker.create("ingest", job_params, actor=actor)
        future = self._pool.submit(self._run, job.id, job_params)
        with self._lock:
            self._futures[job.id] = future
        future.add_done_callback(lambda _f, job_id=job.id: self._forget(job_id))
        return job.id

    def run_sync(self, scope: str, params: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> JobRecord:
        job_params = normalize_params(scope, params)
        job = self.tracker.create("ingest", job_params, actor=actor)
        self._run(job.id, job_params)
        return self.tracker.get(job.id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobRecord]:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeout:
                logger.warning(f"Timed out waiting for job {job_id}")
        return self.tracker.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def _run(self, job_id: str, params: Dict[str, Any]) -> None:
        try:
            self.tracker.start(job_id)
            sink = JobEventSink(self.tracker, job_id)
            sink.info(f"Ingest started ({params['scope']})", **params)
            orchestrator = self.orchestrator_factory()
            if params["scope"] == SCOPE_ONE_SOURCE:
                self._run_one(job_id, orchestrator, sink, params)
            else:
                self._run_many(job_id, orchestrator, sink, params)
        except Exception as e:
            logger.exception(f"Job {job_id} crashed")
            detail = f"{type(e).__name__}: {e}"
            try:
                self.tracker.append_event(job_id, "error", f"Job failed: {detail}")
            except StorageError as log_error:
                logger.error(f"Could not record failure event for job {job_id}: {log_error}")
            try:
                self.tracker.fail(job_id, detail)
            except StorageError as state_error:
                logger.error(f"Could not mark job {job_id} failed: {state_error}")

    def _run_one(self, job_id: str, orchestrator: Orchestrator, sink: JobEventSink, params: Dict[str, Any]) -> None:
        summary = orchestrator.ingest_one(params["source_id"], params["limit"], events=sink)
        if summary.ok:
            message = (
                f"Done: inserted={summary.inserted} updated={summary.updated} "
                f"duplicates={summary.duplicates} skipped={summary.skipped} failed={summary.failed}"
            )
            sink.info(message, summary=summary.as_dict())
            self.tracker.finish_success(job_id, message)
        else:
            self.tracker.fail(job_id, summary.error or "source failed")

    def _run_many(self, job_id: str, orchestrator: Orchestrator, sink: JobEventSink, params: Dict[str, Any]) -> None:
        allowed_only = params["scope"] == SCOPE_ALL_ALLOWED
        results = orchestrator.ingest_all(params["limit"], allowed_only=allowed_only, events=sink)
        summaries = list(results.values())
        agg = totals(summaries)
        message = (
            f"Done: sources={agg['sources']} failed_sources={agg['failed_sources']} "
            f"inserted={agg['inserted']} updated={agg['updated']} duplicates={agg['duplicates']}"
        )
        sink.info(message, totals=agg)
        if summaries and all(s.storage_failure for s in summaries):
            self.tracker.fail(job_id, "storage unavailable for every source")
        else:
            self.tracker.finish_success(job_id, message)
