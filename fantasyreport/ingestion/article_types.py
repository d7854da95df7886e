"""Shared ingestion data types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple


@dataclass(frozen=True)
class NameHit:
    """A name-like span pulled from a title, list or table, with an optional position hint."""

    name: str
    position: Optional[str] = None
    section: Optional[str] = None


@dataclass(frozen=True)
class CandidateArticle:
    """Adapter index output; no identity beyond the URL until processed."""

    url: str
    title: str
    description: Optional[str] = None
    author: Optional[str] = None
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None
    adapter: str = "unknown"


@dataclass(frozen=True)
class EnrichedCandidate:
    """Metadata read from the article page itself (OG/JSON-LD/byline/tables)."""

    url: str
    canonical_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None
    name_hits: Tuple[NameHit, ...] = ()
