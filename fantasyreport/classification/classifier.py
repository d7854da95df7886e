"""Runs topic tagging and player resolution for one article.

Both passes are advisory: a failure in either is logged and yields an empty
result instead of failing the article.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from fantasyreport.classification.players import PlayerDirectory, extract_name_hits
from fantasyreport.classification.topics import classify_topics
from fantasyreport.ingestion.article_types import NameHit

logger = logging.getLogger(__name__)

_PLAYER_PAGE_PATH_RE = re.compile(r"/(?:nfl/)?(?:players?|player-news|playercard|athletes?)/[^/]+", re.I)
_PLAYER_PAGE_TITLE_RE = re.compile(r"\b(?:stats|game\s*log|bio|career)\b.*\b(?:news|stats|projections|profile)\b", re.I)


def looks_like_player_page(url: Optional[str], title: Optional[str] = None) -> bool:
    """Player profile/stat pages are kept out of section listings."""
    if url and _PLAYER_PAGE_PATH_RE.search(url):
        return True
    return bool(title and _PLAYER_PAGE_TITLE_RE.search(title))


@dataclass(frozen=True)
class Classification:
    topics: List[str] = field(default_factory=list)
    week: Optional[int] = None
    players: List[str] = field(default_factory=list)
    is_player_page: bool = False


@dataclass
class Classifier:
    directory: Optional[PlayerDirectory] = None

    def topics(self, *, title: str, url: Optional[str], summary: Optional[str], source_category: Optional[str]):
        try:
            return classify_topics(title, url=url, summary=summary, source_category=source_category)
        except Exception as e:
            logger.warning(f"Topic tagging failed for {url}: {e}")
            return None

    def players(self, *, title: str, summary: Optional[str], name_hits: Sequence[NameHit] = ()) -> List[str]:
        if not self.directory or not len(self.directory):
            return []
        try:
            hits: List[NameHit] = list(name_hits)
            hits.extend(extract_name_hits(title))
            if summary:
                hits.extend(extract_name_hits(summary))
            return self.directory.resolve_all(hits)
        except Exception as e:
            logger.warning(f"Player resolution failed for {title!r}: {e}")
            return []

    def classify(
        self,
        *,
        title: str,
        url: Optional[str] = None,
        summary: Optional[str] = None,
        source_category: Optional[str] = None,
        name_hits: Iterable[NameHit] = (),
    ) -> Classification:
        result = self.topics(title=title, url=url, summary=summary, source_category=source_category)
        players = self.players(title=title, summary=summary, name_hits=list(name_hits))
        return Classification(
            topics=list(result.topics) if result else [],
            week=result.week if result else None,
            players=players,
            is_player_page=looks_like_player_page(url, title),
        )
