"""Postgres schema management for fantasyreport.

Schema creation is idempotent (CREATE IF NOT EXISTS), so workers and the API
can both call `ensure_postgres_schema` on startup.
"""

from __future__ import annotations

from typing import Iterable, Optional

import psycopg


SCHEMA_STATEMENTS: list[str] = [
    # Sources
    """
    CREATE TABLE IF NOT EXISTS sources (
      id BIGSERIAL PRIMARY KEY,
      name TEXT NOT NULL,
      provider TEXT,
      homepage_url TEXT,
      rss_url TEXT,
      sitemap_url TEXT,
      adapter TEXT,
      fetch_mode TEXT NOT NULL DEFAULT 'auto',
      allowed BOOLEAN NOT NULL DEFAULT TRUE,
      priority INTEGER,
      category TEXT,
      sport TEXT NOT NULL DEFAULT 'nfl',
      scrape_selector TEXT,
      scrape_path TEXT,
      scrape_pagination TEXT,
      lookback_days INTEGER,
      last_run_at TIMESTAMPTZ,
      last_ok_at TIMESTAMPTZ,
      last_error TEXT,
      consecutive_failures INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Articles
    """
    CREATE TABLE IF NOT EXISTS articles (
      id BIGSERIAL PRIMARY KEY,
      source_id BIGINT NOT NULL REFERENCES sources(id),
      title TEXT NOT NULL,
      cleaned_title TEXT,
      url TEXT NOT NULL,
      canonical_url TEXT NOT NULL,
      domain TEXT,
      published_at TIMESTAMPTZ,
      discovered_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      sport TEXT NOT NULL DEFAULT 'nfl',
      topics JSONB NOT NULL DEFAULT '[]'::jsonb,
      players JSONB NOT NULL DEFAULT '[]'::jsonb,
      week INTEGER,
      fingerprint TEXT NOT NULL,
      slug TEXT,
      image_url TEXT,
      author TEXT,
      summary TEXT,
      is_player_page BOOLEAN NOT NULL DEFAULT FALSE,
      is_static BOOLEAN NOT NULL DEFAULT FALSE,
      is_evergreen BOOLEAN NOT NULL DEFAULT FALSE,
      UNIQUE (source_id, fingerprint)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_articles_fingerprint ON articles (fingerprint);",
    "CREATE INDEX IF NOT EXISTS idx_articles_discovered_at ON articles (discovered_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_articles_published_at ON articles (published_at DESC);",
    # Cross-source duplicates (the earliest-discovered article stays canonical)
    """
    CREATE TABLE IF NOT EXISTS article_duplicates (
      id BIGSERIAL PRIMARY KEY,
      canonical_article_id BIGINT NOT NULL REFERENCES articles(id),
      source_id BIGINT NOT NULL REFERENCES sources(id),
      url TEXT NOT NULL,
      fingerprint TEXT NOT NULL,
      discovered_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      UNIQUE (source_id, fingerprint)
    );
    """,
    # Player directory (roster collaborator writes, classifier reads)
    """
    CREATE TABLE IF NOT EXISTS players (
      player_id TEXT PRIMARY KEY,
      full_name TEXT NOT NULL,
      first_name TEXT,
      last_name TEXT,
      position TEXT,
      team TEXT,
      active BOOLEAN NOT NULL DEFAULT TRUE,
      aliases JSONB NOT NULL DEFAULT '[]'::jsonb,
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Jobs + append-only events; event_seq is the per-job sequence counter
    """
    CREATE TABLE IF NOT EXISTS jobs (
      id TEXT PRIMARY KEY,
      type TEXT NOT NULL,
      status TEXT NOT NULL,
      params JSONB NOT NULL DEFAULT '{}'::jsonb,
      actor TEXT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      started_at TIMESTAMPTZ,
      finished_at TIMESTAMPTZ,
      progress_current INTEGER NOT NULL DEFAULT 0,
      progress_total INTEGER,
      last_message TEXT,
      error_detail TEXT,
      event_seq BIGINT NOT NULL DEFAULT 0
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs (created_at DESC);",
    """
    CREATE TABLE IF NOT EXISTS job_events (
      id BIGSERIAL PRIMARY KEY,
      job_id TEXT NOT NULL REFERENCES jobs(id),
      seq BIGINT NOT NULL,
      level TEXT NOT NULL,
      message TEXT NOT NULL,
      meta JSONB NOT NULL DEFAULT '{}'::jsonb,
      ts TIMESTAMPTZ NOT NULL DEFAULT now(),
      UNIQUE (job_id, seq)
    );
    """,
]


def ensure_postgres_schema(pg_dsn: str, *, statements: Optional[Iterable[str]] = None) -> None:
    stmts = list(statements) if statements is not None else SCHEMA_STATEMENTS
    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        with conn.cursor() as cur:
            for stmt in stmts:
                cur.execute(stmt)
