"""Persisted job state machine and its append-only event log.

A job moves pending -> running -> succeeded | failed and never leaves a
terminal state. Event sequence numbers are assigned by the store inside the
insert transaction, so concurrent writers on the same job still produce a
gap-free 1..N sequence. Readers poll with `events_after(job_id, last_seq)`.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from fantasyreport.storage.base import (
    EVENT_LEVELS,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    EventRecord,
    JobRecord,
    Store,
    utcnow,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class JobTracker:
    def __init__(self, store: Store):
        self.store = store

    def create(self, type: str, params: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> JobRecord:
        job = JobRecord(
            id=uuid.uuid4().hex,
            type=type,
            status=JOB_PENDING,
            params=dict(params or {}),
            actor=actor,
            created_at=utcnow(),
        )
        self.store.create_job(job)
        logger.info(f"Created {type} job {job.id} params={job.params}")
        return job

    def start(self, job_id: str) -> bool:
        return self.store.transition_job(job_id, from_statuses=[JOB_PENDING], to_status=JOB_RUNNING)

    def append_event(
        self,
        job_id: str,
        level: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> EventRecord:
        level = level if level in EVENT_LEVELS else "info"
        event = self.store.append_event(job_id, level, message, meta)
        logger.log(_LOG_LEVELS[level], f"[job {job_id} #{event.seq}] {message}")
        return event

    def set_progress(self, job_id: str, current: int, total: Optional[int] = None) -> None:
        self.store.set_job_progress(job_id, current, total)

    def finish_success(self, job_id: str, message: Optional[str] = None) -> bool:
        done = self.store.transition_job(
            job_id,
            from_statuses=[JOB_PENDING, JOB_RUNNING],
            to_status=JOB_SUCCEEDED,
            message=message,
        )
        if not done:
            logger.debug(f"Job {job_id} already terminal; success ignored")
        return done

    def fail(self, job_id: str, error_detail: str) -> bool:
        done = self.store.transition_job(
            job_id,
            from_statuses=[JOB_PENDING, JOB_RUNNING],
            to_status=JOB_FAILED,
            message=error_detail[:500],
            error_detail=error_detail,
        )
        if not done:
            logger.debug(f"Job {job_id} already terminal; failure ignored")
        return done

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self.store.get_job(job_id)

    def events_after(self, job_id: str, after_seq: int = 0, limit: Optional[int] = None) -> List[EventRecord]:
        return self.store.list_events(job_id, after_seq=max(0, int(after_seq)), limit=limit)


class JobEventSink:
    """Event writer handed to the orchestrator while it runs under a job."""

    def __init__(self, tracker: JobTracker, job_id: str):
        self.tracker = tracker
        self.job_id = job_id

    def _emit(self, level: str, message: str, meta: Dict[str, Any]) -> None:
        self.tracker.append_event(self.job_id, level, message, meta or None)

    def debug(self, message: str, **meta) -> None:
        self._emit("debug", message, meta)

    def info(self, message: str, **meta) -> None:
        self._emit("info", message, meta)

    def warn(self, message: str, **meta) -> None:
        self._emit("warn", message, meta)

    def error(self, message: str, **meta) -> None:
        self._emit("error", message, meta)

    def progress(self, current: int, total: Optional[int] = None) -> None:
        self.tracker.set_progress(self.job_id, current, total)
