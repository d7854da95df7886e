"""Section pages with provider interleaving.

Each provider's articles are ranked by recency, ranks beyond the
per-provider cap are dropped, and the page is ordered by (rank, recency).
The first page therefore cycles through providers instead of letting one
high-volume provider fill it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fantasyreport.classification.topics import SECTION_ORDER, in_section
from fantasyreport.storage.base import ArticleRecord, StorageError, Store, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DAYS = 45
DEFAULT_LIMIT = 12


def _clamp(value: Any, lo: int, hi: int, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


def default_cap(limit: int) -> int:
    return max(1, min(10, limit // 3))


def normalize_key(key: Optional[str]) -> str:
    """Known section key, or "" for no section restriction."""
    k = (key or "").strip().lower()
    return k if k in SECTION_ORDER else ""


@dataclass
class SectionPage:
    items: List[ArticleRecord] = field(default_factory=list)
    degraded: bool = False
    error: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "items": [a.to_dict() for a in self.items],
            "degraded": self.degraded,
        }
        if self.error:
            out["error"] = self.error
        return out


def _recency_key(article: ArticleRecord) -> Tuple[int, float, int]:
    # Ascending sort key for published_at DESC NULLS LAST, id DESC.
    if article.published_at is None:
        return (1, 0.0, -(article.id or 0))
    return (0, -article.published_at.timestamp(), -(article.id or 0))


def interleave_by_provider(rows: Iterable[ArticleRecord], cap: int) -> List[ArticleRecord]:
    """Rank within provider, keep ranks <= cap, order by (rank, recency)."""
    by_provider: Dict[str, List[ArticleRecord]] = {}
    for row in rows:
        key = (row.provider_key or row.source_name or str(row.source_id)).lower()
        by_provider.setdefault(key, []).append(row)

    ranked: List[Tuple[int, ArticleRecord]] = []
    for group in by_provider.values():
        group.sort(key=_recency_key)
        for rank, article in enumerate(group[: max(1, cap)], start=1):
            ranked.append((rank, article))

    ranked.sort(key=lambda pair: (pair[0],) + _recency_key(pair[1]))
    return [article for _, article in ranked]


def get_section(
    store: Store,
    key: Optional[str],
    *,
    days: Any = DEFAULT_DAYS,
    week: Any = None,
    provider: Optional[str] = None,
    source_id: Any = None,
    sport: Optional[str] = None,
    per_provider_cap: Any = None,
    limit: Any = DEFAULT_LIMIT,
    offset: Any = 0,
    now: Optional[datetime] = None,
) -> SectionPage:
    """One page of a section; storage failures yield a degraded empty page."""
    section = normalize_key(key)
    limit_n = _clamp(limit, 1, 100, DEFAULT_LIMIT)
    offset_n = _clamp(offset, 0, 10_000, 0)
    days_n = _clamp(days, 1, 365, DEFAULT_DAYS)
    week_n = _clamp(week, 0, 30, 0) if week not in (None, "") else None
    cap = _clamp(per_provider_cap, 1, 10, default_cap(limit_n)) if per_provider_cap not in (None, "") else default_cap(limit_n)
    source_n = _clamp(source_id, 1, 2**31 - 1, 0) if source_id not in (None, "") else None

    since = (now or utcnow()) - timedelta(days=days_n)
    try:
        rows = store.list_window_articles(
            since=since,
            sport=sport,
            source_id=source_n or None,
            provider=(provider or "").strip() or None,
            week=week_n or None,
        )
    except StorageError as e:
        logger.error(f"Section query failed for {section or 'all'}: {e}")
        return SectionPage(items=[], degraded=True, error="storage unavailable")

    if section:
        rows = [r for r in rows if in_section(r.topics, section)]
    ordered = interleave_by_provider(rows, cap)
    return SectionPage(items=ordered[offset_n: offset_n + limit_n])
