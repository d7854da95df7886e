"""Runtime configuration and logging setup for fantasyreport workers and API."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_DATABASE_URL = "sqlite:///fantasyreport.db"
DEFAULT_SLEEPER_PLAYERS_URL = "https://api.sleeper.app/v1/players/nfl"


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring malformed {name}={raw!r}, using {default}")
        return default
    return max(lo, min(value, hi))


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring malformed {name}={raw!r}, using {default}")
        return default
    return max(lo, min(value, hi))


@dataclass
class Config:
    """Configuration shared by the ingest worker and the Flask app."""

    database_url: str = DEFAULT_DATABASE_URL

    # Ingestion
    ingest_concurrency: int = 4
    ingest_limit: int = 50
    ingest_page_budget: int = 1
    ingest_schedule_minutes: int = 30

    # Outbound HTTP
    http_timeout: float = 15.0
    http_retries: int = 3
    http_retry_base: float = 0.5
    http_user_agent: str = "FantasyReportBot/1.0 (+https://fantasyreport.app)"

    # Retrieval cache
    section_cache_ttl: int = 60
    section_cache_stale_ttl: int = 900

    # Admin API
    admin_token: str = ""

    # Roster collaborator
    sleeper_players_url: str = DEFAULT_SLEEPER_PLAYERS_URL

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Config":
        """Load configuration from environment variables (and .env when present)."""
        if dotenv:
            load_dotenv()
        database_url = (
            os.getenv("DATABASE_URL")
            or os.getenv("PG_DSN")
            or DEFAULT_DATABASE_URL
        ).strip()
        config = cls(
            database_url=database_url,
            ingest_concurrency=_env_int("INGEST_CONCURRENCY", 4, 1, 32),
            ingest_limit=_env_int("INGEST_LIMIT", 50, 1, 500),
            ingest_page_budget=_env_int("INGEST_PAGE_BUDGET", 1, 1, 10),
            ingest_schedule_minutes=_env_int("INGEST_SCHEDULE_MINUTES", 30, 1, 24 * 60),
            http_timeout=_env_float("HTTP_TIMEOUT", 15.0, 1.0, 120.0),
            http_retries=_env_int("HTTP_RETRIES", 3, 1, 6),
            http_retry_base=_env_float("HTTP_RETRY_BASE", 0.5, 0.0, 10.0),
            http_user_agent=os.getenv("HTTP_USER_AGENT", cls.http_user_agent),
            section_cache_ttl=_env_int("SECTION_CACHE_TTL", 60, 0, 3600),
            section_cache_stale_ttl=_env_int("SECTION_CACHE_STALE_TTL", 900, 0, 24 * 3600),
            admin_token=os.getenv("ADMIN_TOKEN", "").strip(),
            sleeper_players_url=os.getenv("SLEEPER_PLAYERS_URL", DEFAULT_SLEEPER_PLAYERS_URL),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )
        config._validate()
        return config

    def _validate(self) -> None:
        errors: List[str] = []
        if not self.database_url:
            errors.append("DATABASE_URL must not be empty")
        if self.section_cache_stale_ttl < self.section_cache_ttl:
            errors.append("SECTION_CACHE_STALE_TTL should be >= SECTION_CACHE_TTL")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown LOG_LEVEL {self.log_level}")
        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            raise ValueError(error_msg)


def configure_logging(config: Optional[Config] = None) -> None:
    """Configure root logging for an entry point."""
    level_name = config.log_level if config else "INFO"
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config and config.log_file:
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
