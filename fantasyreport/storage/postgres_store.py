"""Postgres backend for the fantasyreport store (psycopg + SQL)."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

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
)
from fantasyreport.storage.postgres_schema import ensure_postgres_schema

logger = logging.getLogger(__name__)


def _pg_value(key: str, value: Any) -> Any:
    if key in ("topics", "players", "aliases"):
        return Jsonb(list(value or []))
    return value


class PostgresStore(Store):
    def __init__(self, pg_dsn: str):
        self.pg_dsn = pg_dsn

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with psycopg.connect(self.pg_dsn, autocommit=True, row_factory=dict_row) as conn:
                yield conn
        except psycopg.Error as e:
            raise StorageError(f"postgres error: {e}") from e

    def ensure_schema(self) -> None:
        try:
            ensure_postgres_schema(self.pg_dsn)
        except psycopg.Error as e:
            raise StorageError(f"postgres schema error: {e}") from e

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    # Sources

    def add_source(self, source: SourceRecord) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO sources (
                  name, provider, homepage_url, rss_url, sitemap_url, adapter, fetch_mode, allowed,
                  priority, category, sport, scrape_selector, scrape_path, scrape_pagination, lookback_days
                )
                VALUES (
                  %(name)s, %(provider)s, %(homepage_url)s, %(rss_url)s, %(sitemap_url)s, %(adapter)s,
                  %(fetch_mode)s, %(allowed)s, %(priority)s, %(category)s, %(sport)s, %(scrape_selector)s,
                  %(scrape_path)s, %(scrape_pagination)s, %(lookback_days)s
                )
                RETURNING id
                """,
                {
                    "name": source.name,
                    "provider": source.provider,
                    "homepage_url": source.homepage_url,
                    "rss_url": source.rss_url,
                    "sitemap_url": source.sitemap_url,
                    "adapter": source.adapter,
                    "fetch_mode": source.fetch_mode or "auto",
                    "allowed": bool(source.allowed),
                    "priority": source.priority,
                    "category": source.category,
                    "sport": source.sport or "nfl",
                    "scrape_selector": source.scrape_selector,
                    "scrape_path": source.scrape_path,
                    "scrape_pagination": source.scrape_pagination,
                    "lookback_days": source.lookback_days,
                },
            ).fetchone()
        source.id = int(row["id"])
        return source.id

    def get_source(self, source_id: int) -> Optional[SourceRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = %s", (source_id,)).fetchone()
        return self._row_to_source(row) if row else None

    def list_sources(self, *, allowed_only: bool = False) -> List[SourceRecord]:
        where = "WHERE allowed" if allowed_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM sources {where} ORDER BY COALESCE(priority, 999), id"
            ).fetchall()
        return [self._row_to_source(r) for r in rows]

    def record_source_run(self, source_id: int, *, ok: bool, error: Optional[str] = None) -> None:
        with self._connect() as conn:
            if ok:
                conn.execute(
                    """
                    UPDATE sources
                    SET last_run_at = now(), last_ok_at = now(), last_error = NULL, consecutive_failures = 0
                    WHERE id = %s
                    """,
                    (source_id,),
                )
            else:
                conn.execute(
                    """
                    UPDATE sources
                    SET last_run_at = now(), last_error = %s, consecutive_failures = consecutive_failures + 1
                    WHERE id = %s
                    """,
                    ((error or "")[:1000], source_id),
                )

    @staticmethod
    def _row_to_source(row: Dict[str, Any]) -> SourceRecord:
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
            last_run_at=row["last_run_at"],
            last_ok_at=row["last_ok_at"],
            last_error=row["last_error"],
            consecutive_failures=row["consecutive_failures"] or 0,
        )

    # Articles

    def find_article(self, source_id: int, fingerprint: str) -> Optional[ArticleRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM articles WHERE source_id = %s AND fingerprint = %s",
                (source_id, fingerprint),
            ).fetchone()
        return self._row_to_article(row) if row else None

    def find_article_elsewhere(self, fingerprint: str, exclude_source_id: int) -> Optional[ArticleRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM articles
                WHERE fingerprint = %s AND source_id <> %s
                ORDER BY discovered_at ASC, id ASC
                LIMIT 1
                """,
                (fingerprint, exclude_source_id),
            ).fetchone()
        return self._row_to_article(row) if row else None

    def get_article(self, article_id: int) -> Optional[ArticleRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM articles WHERE id = %s", (article_id,)).fetchone()
        return self._row_to_article(row) if row else None

    def insert_article(self, article: ArticleRecord) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO articles (
                  source_id, title, cleaned_title, url, canonical_url, domain, published_at,
                  discovered_at, sport, topics, players, week, fingerprint, slug, image_url,
                  author, summary, is_player_page, is_static, is_evergreen
                )
                VALUES (
                  %(source_id)s, %(title)s, %(cleaned_title)s, %(url)s, %(canonical_url)s, %(domain)s,
                  %(published_at)s, COALESCE(%(discovered_at)s, now()), %(sport)s, %(topics)s, %(players)s,
                  %(week)s, %(fingerprint)s, %(slug)s, %(image_url)s, %(author)s, %(summary)s,
                  %(is_player_page)s, %(is_static)s, %(is_evergreen)s
                )
                ON CONFLICT (source_id, fingerprint) DO NOTHING
                RETURNING id
                """,
                {
                    "source_id": article.source_id,
                    "title": article.title,
                    "cleaned_title": article.cleaned_title,
                    "url": article.url,
                    "canonical_url": article.canonical_url,
                    "domain": article.domain,
                    "published_at": article.published_at,
                    "discovered_at": article.discovered_at,
                    "sport": article.sport or "nfl",
                    "topics": Jsonb(list(article.topics)),
                    "players": Jsonb(list(article.players)),
                    "week": article.week,
                    "fingerprint": article.fingerprint,
                    "slug": article.slug,
                    "image_url": article.image_url,
                    "author": article.author,
                    "summary": article.summary,
                    "is_player_page": article.is_player_page,
                    "is_static": article.is_static,
                    "is_evergreen": article.is_evergreen,
                },
            ).fetchone()
        return int(row["id"]) if row else None

    def update_article(self, article_id: int, changes: Dict[str, Any]) -> None:
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_ARTICLE_FIELDS}
        if not fields:
            return
        assignments = ", ".join(f"{k} = %({k})s" for k in fields)
        params = {k: _pg_value(k, v) for k, v in fields.items()}
        params["article_id"] = article_id
        with self._connect() as conn:
            conn.execute(
                f"UPDATE articles SET {assignments}, updated_at = now() WHERE id = %(article_id)s",
                params,
            )

    def has_duplicate(self, source_id: int, fingerprint: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM article_duplicates WHERE source_id = %s AND fingerprint = %s",
                (source_id, fingerprint),
            ).fetchone()
        return row is not None

    def find_linked_article(self, source_id: int, fingerprint: str) -> Optional[ArticleRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT a.* FROM article_duplicates d
                JOIN articles a ON a.id = d.canonical_article_id
                WHERE d.source_id = %s AND d.fingerprint = %s
                """,
                (source_id, fingerprint),
            ).fetchone()
        return self._row_to_article(row) if row else None

    def record_duplicate(self, duplicate: DuplicateRecord) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO article_duplicates (canonical_article_id, source_id, url, fingerprint, discovered_at)
                VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
                ON CONFLICT (source_id, fingerprint) DO NOTHING
                RETURNING id
                """,
                (
                    duplicate.canonical_article_id,
                    duplicate.source_id,
                    duplicate.url,
                    duplicate.fingerprint,
                    duplicate.discovered_at,
                ),
            ).fetchone()
        return row is not None

    def count_articles(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM articles").fetchone()
        return int(row["n"] or 0)

    def list_window_articles(
        self,
        *,
        since: datetime,
        sport: Optional[str] = None,
        source_id: Optional[int] = None,
        provider: Optional[str] = None,
        week: Optional[int] = None,
    ) -> List[ArticleRecord]:
        where = ["a.discovered_at >= %s", "NOT COALESCE(a.is_player_page, false)"]
        params: List[Any] = [since]
        if sport:
            where.append("LOWER(a.sport) = %s")
            params.append(sport.lower())
        if source_id is not None:
            where.append("a.source_id = %s")
            params.append(source_id)
        if provider:
            where.append("LOWER(COALESCE(NULLIF(TRIM(s.provider), ''), s.name)) = %s")
            params.append(provider.lower())
        if week is not None:
            where.append("a.week = %s")
            params.append(week)
        sql = f"""
        SELECT a.*, s.name AS source_name,
               LOWER(COALESCE(NULLIF(TRIM(s.provider), ''), s.name)) AS provider_key
        FROM articles a
        JOIN sources s ON s.id = a.source_id
        WHERE {' AND '.join(where)}
        """
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        out = []
        for row in rows:
            article = self._row_to_article(row)
            article.source_name = row["source_name"]
            article.provider_key = row["provider_key"]
            out.append(article)
        return out

    @staticmethod
    def _row_to_article(row: Dict[str, Any]) -> ArticleRecord:
        return ArticleRecord(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            cleaned_title=row["cleaned_title"],
            url=row["url"],
            canonical_url=row["canonical_url"],
            domain=row["domain"],
            published_at=row["published_at"],
            discovered_at=row["discovered_at"],
            updated_at=row["updated_at"],
            sport=row["sport"],
            topics=list(row["topics"] or []),
            players=list(row["players"] or []),
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

    # Players

    def upsert_players(self, players: Iterable[PlayerRecord]) -> int:
        rows = [
            {
                "player_id": p.player_id,
                "full_name": p.full_name,
                "first_name": p.first_name,
                "last_name": p.last_name,
                "position": p.position,
                "team": p.team,
                "active": bool(p.active),
                "aliases": Jsonb(list(p.aliases)),
            }
            for p in players
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO players (player_id, full_name, first_name, last_name, position, team, active, aliases)
                        VALUES (%(player_id)s, %(full_name)s, %(first_name)s, %(last_name)s, %(position)s,
                                %(team)s, %(active)s, %(aliases)s)
                        ON CONFLICT (player_id) DO UPDATE SET
                          full_name = EXCLUDED.full_name,
                          first_name = EXCLUDED.first_name,
                          last_name = EXCLUDED.last_name,
                          position = EXCLUDED.position,
                          team = EXCLUDED.team,
                          active = EXCLUDED.active,
                          aliases = EXCLUDED.aliases,
                          updated_at = now()
                        """,
                        rows,
                    )
        return len(rows)

    def list_players(self, *, active_only: bool = True) -> List[PlayerRecord]:
        where = "WHERE active" if active_only else ""
        with self._connect() as conn:
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
                aliases=list(r["aliases"] or []),
            )
            for r in rows
        ]

    # Jobs and events

    def create_job(self, job: JobRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jobs (id, type, status, params, actor, created_at, started_at, last_message)
                VALUES (%s, %s, %s, %s, %s, COALESCE(%s, now()), %s, %s)
                """,
                (
                    job.id,
                    job.type,
                    job.status,
                    Jsonb(job.params or {}),
                    job.actor,
                    job.created_at,
                    job.started_at,
                    job.last_message,
                ),
            )

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = %s", (job_id,)).fetchone()
        if not row:
            return None
        return JobRecord(
            id=row["id"],
            type=row["type"],
            status=row["status"],
            params=row["params"] or {},
            actor=row["actor"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
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
        sets = ["status = %(to_status)s"]
        if to_status == JOB_RUNNING:
            sets.append("started_at = COALESCE(started_at, now())")
        if to_status in TERMINAL_JOB_STATUSES:
            sets.append("finished_at = now()")
        if message is not None:
            sets.append("last_message = %(message)s")
        if error_detail is not None:
            sets.append("error_detail = %(error_detail)s")
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs SET {', '.join(sets)}
                WHERE id = %(job_id)s AND status = ANY(%(from_statuses)s)
                """,
                {
                    "to_status": to_status,
                    "message": message,
                    "error_detail": error_detail,
                    "job_id": job_id,
                    "from_statuses": list(from_statuses),
                },
            )
            return cur.rowcount == 1

    def set_job_progress(self, job_id: str, current: int, total: Optional[int] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET progress_current = GREATEST(progress_current, %s),
                    progress_total = COALESCE(%s, progress_total)
                WHERE id = %s
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
        with self._connect() as conn:
            with conn.transaction():
                # The UPDATE takes a row lock on the job, serializing concurrent appenders.
                row = conn.execute(
                    """
                    UPDATE jobs
                    SET event_seq = event_seq + 1,
                        last_message = CASE WHEN %s THEN last_message ELSE %s END
                    WHERE id = %s
                    RETURNING event_seq
                    """,
                    (level == "debug", message, job_id),
                ).fetchone()
                if not row:
                    raise StorageError(f"Unknown job {job_id}")
                seq = int(row["event_seq"])
                inserted = conn.execute(
                    """
                    INSERT INTO job_events (job_id, seq, level, message, meta)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING ts
                    """,
                    (job_id, seq, level, message, Jsonb(meta or {})),
                ).fetchone()
        return EventRecord(job_id=job_id, seq=seq, level=level, message=message, meta=dict(meta or {}), ts=inserted["ts"])

    def list_events(self, job_id: str, *, after_seq: int = 0, limit: Optional[int] = None) -> List[EventRecord]:
        sql = "SELECT * FROM job_events WHERE job_id = %s AND seq > %s ORDER BY seq ASC"
        params: List[Any] = [job_id, int(after_seq)]
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            EventRecord(
                job_id=r["job_id"],
                seq=int(r["seq"]),
                level=r["level"],
                message=r["message"],
                meta=r["meta"] or {},
                ts=r["ts"],
            )
            for r in rows
        ]
