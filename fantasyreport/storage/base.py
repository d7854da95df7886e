"""Storage records and the persistence interface shared by the SQLite and Postgres backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence


class StorageError(Exception):
    """Raised when the relational store is unreachable or rejects a write."""


JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
TERMINAL_JOB_STATUSES = (JOB_SUCCEEDED, JOB_FAILED)

EVENT_LEVELS = ("debug", "info", "warn", "error")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SourceRecord:
    name: str
    id: Optional[int] = None
    provider: Optional[str] = None
    homepage_url: Optional[str] = None
    rss_url: Optional[str] = None
    sitemap_url: Optional[str] = None
    adapter: Optional[str] = None
    fetch_mode: str = "auto"
    allowed: bool = True
    priority: Optional[int] = None
    category: Optional[str] = None
    sport: str = "nfl"
    scrape_selector: Optional[str] = None
    scrape_path: Optional[str] = None
    scrape_pagination: Optional[str] = None
    lookback_days: Optional[int] = None
    last_run_at: Optional[datetime] = None
    last_ok_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    @property
    def provider_key(self) -> str:
        return ((self.provider or "").strip() or self.name or "").lower()


@dataclass
class ArticleRecord:
    source_id: int
    title: str
    url: str
    canonical_url: str
    fingerprint: str
    id: Optional[int] = None
    cleaned_title: Optional[str] = None
    domain: Optional[str] = None
    published_at: Optional[datetime] = None
    discovered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sport: str = "nfl"
    topics: List[str] = field(default_factory=list)
    players: List[str] = field(default_factory=list)
    week: Optional[int] = None
    slug: Optional[str] = None
    image_url: Optional[str] = None
    author: Optional[str] = None
    summary: Optional[str] = None
    is_player_page: bool = False
    is_static: bool = False
    is_evergreen: bool = False
    # Filled in by window queries (joined from sources)
    source_name: Optional[str] = None
    provider_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "source": self.source_name,
            "provider": self.provider_key,
            "title": self.cleaned_title or self.title,
            "url": self.url,
            "canonical_url": self.canonical_url,
            "domain": self.domain,
            "image_url": self.image_url,
            "author": self.author,
            "summary": self.summary,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "discovered_at": self.discovered_at.isoformat() if self.discovered_at else None,
            "topics": list(self.topics),
            "players": list(self.players),
            "week": self.week,
            "slug": self.slug,
        }


@dataclass
class DuplicateRecord:
    canonical_article_id: int
    source_id: int
    url: str
    fingerprint: str
    discovered_at: Optional[datetime] = None


@dataclass
class PlayerRecord:
    player_id: str
    full_name: str
    position: Optional[str] = None
    team: Optional[str] = None
    active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    aliases: List[str] = field(default_factory=list)


@dataclass
class JobRecord:
    id: str
    type: str
    status: str = JOB_PENDING
    params: Dict[str, Any] = field(default_factory=dict)
    actor: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    progress_current: int = 0
    progress_total: Optional[int] = None
    last_message: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "params": self.params,
            "actor": self.actor,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "progress_current": self.progress_current,
            "progress_total": self.progress_total,
            "last_message": self.last_message,
            "error_detail": self.error_detail,
        }


@dataclass
class EventRecord:
    job_id: str
    seq: int
    level: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)
    ts: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "level": self.level,
            "message": self.message,
            "meta": self.meta,
            "ts": self.ts.isoformat() if self.ts else None,
        }


# Columns the dedup engine is allowed to refresh on an existing article.
UPDATABLE_ARTICLE_FIELDS = (
    "title",
    "cleaned_title",
    "url",
    "image_url",
    "published_at",
    "author",
    "summary",
    "topics",
    "players",
    "week",
    "is_player_page",
)


class Store:
    """Persistence interface used by the pipeline, job tracker and retrieval query.

    Backends must provide an atomic insert keyed by (source_id, fingerprint) and
    a per-job event sequence that is assigned inside the same transaction as
    the event insert.
    """

    def ensure_schema(self) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    # Sources
    def add_source(self, source: SourceRecord) -> int:
        raise NotImplementedError

    def get_source(self, source_id: int) -> Optional[SourceRecord]:
        raise NotImplementedError

    def list_sources(self, *, allowed_only: bool = False) -> List[SourceRecord]:
        """Sources ordered by priority (NULL last) then id."""
        raise NotImplementedError

    def record_source_run(self, source_id: int, *, ok: bool, error: Optional[str] = None) -> None:
        raise NotImplementedError

    # Articles
    def find_article(self, source_id: int, fingerprint: str) -> Optional[ArticleRecord]:
        raise NotImplementedError

    def find_article_elsewhere(self, fingerprint: str, exclude_source_id: int) -> Optional[ArticleRecord]:
        """Earliest-discovered article with this fingerprint from another source."""
        raise NotImplementedError

    def get_article(self, article_id: int) -> Optional[ArticleRecord]:
        raise NotImplementedError

    def insert_article(self, article: ArticleRecord) -> Optional[int]:
        """Insert unless (source_id, fingerprint) exists; returns new id or None on conflict."""
        raise NotImplementedError

    def update_article(self, article_id: int, changes: Dict[str, Any]) -> None:
        raise NotImplementedError

    def has_duplicate(self, source_id: int, fingerprint: str) -> bool:
        raise NotImplementedError

    def find_linked_article(self, source_id: int, fingerprint: str) -> Optional[ArticleRecord]:
        """Article that a duplicate or alias row for (source_id, fingerprint) points at."""
        raise NotImplementedError

    def record_duplicate(self, duplicate: DuplicateRecord) -> bool:
        """Returns False when the duplicate row already existed."""
        raise NotImplementedError

    def count_articles(self) -> int:
        raise NotImplementedError

    def list_window_articles(
        self,
        *,
        since: datetime,
        sport: Optional[str] = None,
        source_id: Optional[int] = None,
        provider: Optional[str] = None,
        week: Optional[int] = None,
    ) -> List[ArticleRecord]:
        """Non player-page articles discovered since `since`, with provider keys attached."""
        raise NotImplementedError

    # Players
    def upsert_players(self, players: Iterable[PlayerRecord]) -> int:
        raise NotImplementedError

    def list_players(self, *, active_only: bool = True) -> List[PlayerRecord]:
        raise NotImplementedError

    # Jobs
    def create_job(self, job: JobRecord) -> None:
        raise NotImplementedError

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        raise NotImplementedError

    def transition_job(
        self,
        job_id: str,
        *,
        from_statuses: Sequence[str],
        to_status: str,
        message: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        """Atomically move a job between states; False if it was not in `from_statuses`."""
        raise NotImplementedError

    def set_job_progress(self, job_id: str, current: int, total: Optional[int] = None) -> None:
        """Never lowers the stored progress value."""
        raise NotImplementedError

    def append_event(
        self,
        job_id: str,
        level: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> EventRecord:
        raise NotImplementedError

    def list_events(self, job_id: str, *, after_seq: int = 0, limit: Optional[int] = None) -> List[EventRecord]:
        raise NotImplementedError


def open_store(database_url: str) -> Store:
    """Pick a backend from a database URL.

    `sqlite:///path` URLs and bare `*.db` files use SQLite;
    anything else is handed to psycopg as a Postgres DSN.
    """
    url = (database_url or "").strip()
    if url.startswith("sqlite:///"):
        from fantasyreport.storage.sqlite_store import SqliteStore

        return SqliteStore(url[len("sqlite:///"):])
    if url.endswith((".db", ".sqlite", ".sqlite3")) and "://" not in url and "=" not in url:
        from fantasyreport.storage.sqlite_store import SqliteStore

        return SqliteStore(url)
    from fantasyreport.storage.postgres_store import PostgresStore

    return PostgresStore(url)
