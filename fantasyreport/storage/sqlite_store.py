"""SQLite backend for the fantasyreport store.

Used for local runs and the test-suite. Every operation opens its own
connection (WAL mode lets readers proceed while a worker writes), and the
multi-statement writes run under `BEGIN IMMEDIATE` so concurrent event
appends serialize on the database lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from fantasyreport.storage.base import (
    EVENT_LEVELS,
    JOB_RUNNING,
    TERMINAL_JOB_STATUSES,
    UPDATABLE_ARTICLE_FIELDS,
    ArticleRecord,
    DuplicateRecord,
    EventRecord,
    JobRecord,
    PlayerRecord,
    SourceRecord,
    Store,
    StorageError,
    utcnow,
)

logger = logging.getLogger(__name__)


SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        provider TEXT,
        homepage_url TEXT,
        rss_url TEXT,
        sitemap_url TEXT,
        adapter TEXT,
        fetch_mode TEXT NOT NULL DEFAULT 'auto',
        allowed INTEGER NOT NULL DEFAULT 1,
        priority INTEGER,
        category TEXT,
        sport TEXT NOT NULL DEFAULT 'nfl',
        scrape_selector TEXT,
        scrape_path TEXT,
        scrape_pagination TEXT,
        lookback_days INTEGER,
        last_run_at TEXT,
        last_ok_at TEXT,
        last_error TEXT,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS articles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_id INTEGER NOT NULL REFERENCES sources(id),
        title TEXT NOT NULL,
        cleaned_title TEXT,
        url TEXT NOT NULL,
        canonical_url TEXT NOT NULL,
        domain TEXT,
        published_at TEXT,
        discovered_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        sport TEXT NOT NULL DEFAULT 'nfl',
        topics TEXT NOT NULL DEFAULT '[]',
        players TEXT NOT NULL DEFAULT '[]',
        week INTEGER,
        fingerprint TEXT NOT NULL,
        slug TEXT,
        image_url TEXT,
        author TEXT,
        summary TEXT,
        is_player_page INTEGER NOT NULL DEFAULT 0,
        is_static INTEGER NOT NULL DEFAULT 0,
        is_evergreen INTEGER NOT NULL DEFAULT 0,
        UNIQUE (source_id, fingerprint)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_articles_fingerprint ON articles (fingerprint)",
    "CREATE INDEX IF NOT EXISTS idx_articles_discovered_at ON articles (discovered_at)",
    """
    CREATE TABLE IF NOT EXISTS article_duplicates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        canonical_article_id INTEGER NOT NULL REFERENCES articles(id),
        source_id INTEGER NOT NULL REFERENCES sources(id),
        url TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        discovered_at TEXT NOT NULL,
        UNIQUE (source_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS players (
        player_id TEXT PRIMARY KEY,
        full_name TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        position TEXT,
        team TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        aliases TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        params TEXT NOT NULL DEFAULT '{}',
        actor TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        progress_current INTEGER NOT NULL DEFAULT 0,
        progress_total INTEGER,
        last_message TEXT,
        error_detail TEXT,
        event_seq INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL REFERENCES jobs(id),
        seq INTEGER NOT NULL,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        meta TEXT NOT NULL DEFAULT '{}',
        ts TEXT NOT NULL,
        UNIQUE (job_id, seq)
    )
    """,
]


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed-width so string comparison in SQL matches chronological order.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    loaded = json.loads(value)
    return [str(v) for v in loaded] if isinstance(loaded, list) else []


def _db_value(key: str, value: Any) -> Any:
    if key in ("topics", "players", "aliases"):
        return json.dumps(list(value or []))
    if key in ("params", "meta"):
        return json.dumps(value or {})
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, bool):
        return int(value)
    return value


class SqliteStore(Store):
    def __init__(self, db_path: str = "fantasyreport.db"):
        self.db_path = db_path
        self._ensure_db_directory()
        self.ensure_schema()

    def _ensure_db_directory(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute("PRAGMA busy_timeout=30000;")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"sqlite error: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def ensure_schema(self) -> None:
        with self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            for stmt in SQLITE_SCHEMA:
                conn.execute(stmt)
        logger.debug(f"SQLite schema ready at {self.db_path}")

    def ping(self) -> bool:
        with self.get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: SourceRecord) -> int:
        with self.get_connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO sources (
                    name, provider, homepage_url, rss_url, sitemap_url, adapter, fetch_mode,
                    allowed, priority, category, sport, scrape_selector, scrape_path,
                    scrape_pagination, lookback_days, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source.name,
                    source.provider,
                    source.homepage_url,
                    source.rss_url,
                    source.sitemap_url,
                    source.adapter,
                    source.fetch_mode or "auto",
                    int(bool(source.allowed)),
                    source.priority,
                    source.category,
                    source.sport or "nfl",
                    source.scrape_selector,
                    source.scrape_path,
                    source.scrape_pagination,
                    source.lookback_days,
                    _ts(utcnow()),
                ),
            )
            source.id = int(cur.lastrowid)
        return source.id

    def get_source(self, source_id: int) -> Optional[SourceRecord]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return self._row_to_source(row) if row else None

    def list_sources(self, *, allowed_only: bool = False) -> List[SourceRecord]:
        where = "WHERE allowed = 1" if allowed_only else ""
        with self.get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM sources {where} ORDER BY COALESCE(priority, 999), id"
            ).fetchall()
        return [self._row_to_source(r) for r in rows]

    def record_source_run(self, source_id: int, *, ok: bool, error: Optional[str] = None) -> None:
        now = _ts(utcnow())
        with self.get_connection() as conn:
            if ok:
                conn.execute(
                    """
                    UPDATE sources
                    SET last_run_at = ?, last_ok_at = ?, last_error = NULL, consecutive_failures = 0
                    WHERE id = ?
                    """,
                    (now, now, source_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE sources
                    SET last_run_at = ?, last_error = ?, consecutive_failures = consecutive_failures + 1
                    WHERE id = ?
                    """,
                    (now, (error or "")[:1000], source_id),
                )

    @staticmethod
    def _row_to_source(row: sqlite3.Row) -> SourceRecord:
        return SourceRecord(
            id=row["id"],
            name=row["name"],
            provider=row["provider"],
            homepage_url=row["homepage_url"],
            rss_url=row["rss_url"],
            sitemap_url=row["sitemap_url"],
            adapter=row["adapter"],
            fetch_mode=row["fetch_mode"] or "auto",
            allowed=bool(row["allowed"]),
            priority=row["priority"],
            category=row["category"],
            sport=row["sport"] or "nfl",
            scrape_selector=row["scrape_selector"],
            scrape_path=row["scrape_path"],
            scrape_pagination=row["scrape_pagination"],
            lookback_days=row["lookback_days"],
            last_run_at=_dt(row["last_run_at"]),
            last_ok_at=_dt(row["last_ok_at"]),
            last_error=row["last_error"],
            consecutive_failures=row["consecutive_failures"] or 0,
        )

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    def find_article(self, source_id: int, fingerprint: str) -> Optional[ArticleRecord]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM articles WHERE source_id = ? AND fingerprint = ?",
                (source_id, fingerprint),
            ).fetchone()
        return self._row_to_article(row) if row else None

    def find_article_elsewhere(self, fingerprint: str, exclude_source_id: int) -> Optional[ArticleRecord]:
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM articles
                WHERE fingerprint = ? AND source_id <> ?
                ORDER BY discovered_at ASC, id ASC
                LIMIT 1
                """,
                (fingerprint, exclude_source_id),
            ).fetchone()
        return self._row_to_article(row) if row else None

    def get_article(self, article_id: int) -> Optional[ArticleRecord]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
        return self._row_to_article(row) if row else None

    def insert_article(self, article: ArticleRecord) -> Optional[int]:
        now = utcnow()
        discovered = article.discovered_at or now
        with self.get_connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO articles (
                    source_id, title, cleaned_title, url, canonical_url, domain, published_at,
                    discovered_at, updated_at, sport, topics, players, week, fingerprint, slug,
                    image_url, author, summary, is_player_page, is_static, is_evergreen
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (source_id, fingerprint) DO NOTHING
                """,
                (
                    article.source_id,
                    article.title,
                    article.cleaned_title,
                    article.url,
                    article.canonical_url,
                    article.domain,
                    _ts(article.published_at),
                    _ts(discovered),
                    _ts(now),
                    article.sport or "nfl",
                    json.dumps(list(article.topics)),
                    json.dumps(list(article.players)),
                    article.week,
                    article.fingerprint,
                    article.slug,
                    article.image_url,
                    article.author,
                    article.summary,
                    int(article.is_player_page),
                    int(article.is_static),
                    int(article.is_evergreen),
                ),
            )
            if cur.rowcount != 1:
                return None
            return int(cur.lastrowid)

    def update_article(self, article_id: int, changes: Dict[str, Any]) -> None:
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_ARTICLE_FIELDS}
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = [_db_value(k, v) for k, v in fields.items()]
        params.extend([_ts(utcnow()), article_id])
        with self.get_connection() as conn:
            conn.execute(f"UPDATE articles SET {assignments}, updated_at = ? WHERE id = ?", params)

    def has_duplicate(self, source_id: int, fingerprint: str) -> bool:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM article_duplicates WHERE source_id = ? AND fingerprint = ?",
                (source_id, fingerprint),
            ).fetchone()
        return row is not None

    def find_linked_article(self, source_id: int, fingerprint: str) -> Optional[ArticleRecord]:
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT a.* FROM article_duplicates d
                JOIN articles a ON a.id = d.canonical_article_id
                WHERE d.source_id = ? AND d.fingerprint = ?
                """,
                (source_id, fingerprint),
            ).fetchone()
        return self._row_to_article(row) if row else None

    def record_duplicate(self, duplicate: DuplicateRecord) -> bool:
        with self.get_connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO article_duplicates (canonical_article_id, source_id, url, fingerprint, discovered_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (source_id, fingerprint) DO NOTHING
                """,
                (
                    duplicate.canonical_article_id,
                    duplicate.source_id,
                    duplicate.url,
                    duplicate.fingerprint,
                    _ts(duplicate.discovered_at or utcnow()),
                ),
            )
            return cur.rowcount == 1

    def count_articles(self) -> int:
        with self.get_connection() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0])

    def list_window_articles(
        self,
        *,
        since: datetime,
        sport: Optional[str] = None,
        source_id: Optional[int] = None,
        provider: Optional[str] = None,
        week: Optional[int] = None,
    ) -> List[ArticleRecord]:
        where = ["a.discovered_at >= ?", "a.is_player_page = 0"]
        params: List[Any] = [_ts(since)]
        if sport:
            where.append("LOWER(a.sport) = ?")
            params.append(sport.lower())
        if source_id is not None:
            where.append("a.source_id = ?")
            params.append(source_id)
        if provider:
            where.append("LOWER(COALESCE(NULLIF(TRIM(s.provider), ''), s.name)) = ?")
            params.append(provider.lower())
        if week is not None:
            where.append("a.week = ?")
            params.append(week)
        sql = f"""
            SELECT a.*, s.name AS source_name, s.provider AS source_provider
            FROM articles a
            JOIN sources s ON s.id = a.source_id
            WHERE {' AND '.join(where)}
        """
        with self.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        out = []
        for row in rows:
            article = self._row_to_article(row)
            article.source_name = row["source_name"]
            article.provider_key = ((row["source_provider"] or "").strip() or row["source_name"] or "").lower()
            out.append(article)
        return out

    @staticmethod
    def _row_to_article(row: sqlite3.Row) -> ArticleRecord:
        return ArticleRecord(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            cleaned_title=row["cleaned_title"],
            url=row["url"],
            canonical_url=row["canonical_url"],
            domain=row["domain"],
            published_at=_dt(row["published_at"]),
            discovered_at=_dt(row["discovered_at"]),
            updated_at=_dt(row["updated_at"]),
            sport=row["sport"],
            topics=_json_list(row["topics"]),
            players=_json_list(row["players"]),
            week=row["week"],
            fingerprint=row["fingerprint"],
            slug=row["slug"],
            image_url=row["image_url"],
            author=row["author"],
            summary=row["summary"],
            is_player_page=bool(row["is_player_page"]),
            is_static=bool(row["is_static"]),
            is_evergreen=bool(row["is_evergreen"]),
        )

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    def upsert_players(self, players: Iterable[PlayerRecord]) -> int:
        rows = [
            (
                p.player_id,
                p.full_name,
                p.first_name,
                p.last_name,
                p.position,
                p.team,
                int(bool(p.active)),
                json.dumps(list(p.aliases)),
                _ts(utcnow()),
            )
            for p in players
        ]
        if not rows:
            return 0
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO players (player_id, full_name, first_name, last_name, position, team, active, aliases, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (player_id) DO UPDATE SET
                    full_name = excluded.full_name,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    position = excluded.position,
                    team = excluded.team,
                    active = excluded.active,
                    aliases = excluded.aliases,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def list_players(self, *, active_only: bool = True) -> List[PlayerRecord]:
        where = "WHERE active = 1" if active_only else ""
        with self.get_connection() as conn:
            rows = conn.execute(f"SELECT * FROM players {where} ORDER BY player_id").fetchall()
        return [
            PlayerRecord(
                player_id=r["player_id"],
                full_name=r["full_name"],
                first_name=r["first_name"],
                last_name=r["last_name"],
                position=r["position"],
                team=r["team"],
                active=bool(r["active"]),
                aliases=_json_list(r["aliases"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Jobs and events
    # ------------------------------------------------------------------

    def create_job(self, job: JobRecord) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO jobs (id, type, status, params, actor, created_at, started_at, last_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.type,
                    job.status,
                    json.dumps(job.params or {}),
                    job.actor,
                    _ts(job.created_at or utcnow()),
                    _ts(job.started_at),
                    job.last_message,
                ),
            )

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        return JobRecord(
            id=row["id"],
            type=row["type"],
            status=row["status"],
            params=json.loads(row["params"] or "{}"),
            actor=row["actor"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            progress_current=row["progress_current"] or 0,
            progress_total=row["progress_total"],
            last_message=row["last_message"],
            error_detail=row["error_detail"],
        )

    def transition_job(
        self,
        job_id: str,
        *,
        from_statuses: Sequence[str],
        to_status: str,
        message: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        now = _ts(utcnow())
        sets = ["status = ?"]
        params: List[Any] = [to_status]
        if to_status == JOB_RUNNING:
            sets.append("started_at = COALESCE(started_at, ?)")
            params.append(now)
        if to_status in TERMINAL_JOB_STATUSES:
            sets.append("finished_at = ?")
            params.append(now)
        if message is not None:
            sets.append("last_message = ?")
            params.append(message)
        if error_detail is not None:
            sets.append("error_detail = ?")
            params.append(error_detail)
        placeholders = ", ".join("?" for _ in from_statuses)
        params.append(job_id)
        params.extend(from_statuses)
        with self.get_connection() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET {', '.join(sets)} WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            return cur.rowcount == 1

    def set_job_progress(self, job_id: str, current: int, total: Optional[int] = None) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET progress_current = MAX(progress_current, ?),
                    progress_total = COALESCE(?, progress_total)
                WHERE id = ?
                """,
                (int(current), total, job_id),
            )

    def append_event(
        self,
        job_id: str,
        level: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> EventRecord:
        level = level if level in EVENT_LEVELS else "info"
        now = utcnow()
        with self._transaction() as conn:
            if level == "debug":
                cur = conn.execute("UPDATE jobs SET event_seq = event_seq + 1 WHERE id = ?", (job_id,))
            else:
                cur = conn.execute(
                    "UPDATE jobs SET event_seq = event_seq + 1, last_message = ? WHERE id = ?",
                    (message, job_id),
                )
            if cur.rowcount != 1:
                raise StorageError(f"Unknown job {job_id}")
            seq = int(conn.execute("SELECT event_seq FROM jobs WHERE id = ?", (job_id,)).fetchone()[0])
            conn.execute(
                "INSERT INTO job_events (job_id, seq, level, message, meta, ts) VALUES (?, ?, ?, ?, ?, ?)",
                (job_id, seq, level, message, json.dumps(meta or {}, default=str), _ts(now)),
            )
        return EventRecord(job_id=job_id, seq=seq, level=level, message=message, meta=dict(meta or {}), ts=now)

    def list_events(self, job_id: str, *, after_seq: int = 0, limit: Optional[int] = None) -> List[EventRecord]:
        sql = "SELECT * FROM job_events WHERE job_id = ? AND seq > ? ORDER BY seq ASC"
        params: List[Any] = [job_id, int(after_seq)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            EventRecord(
                job_id=r["job_id"],
                seq=r["seq"],
                level=r["level"],
                message=r["message"],
                meta=json.loads(r["meta"] or "{}"),
                ts=_dt(r["ts"]),
            )
            for r in rows
        ]
