"""Content fingerprints and the insert/update/skip/duplicate decision.

A fingerprint is derived from the canonical URL. When the URL does not
identify a single article (shorteners, hub pages) the normalized title is
hashed instead, so the same story still maps to one row.
"""

from __future__ import annotations

import hashlib
import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fantasyreport.ingestion.url_utils import canonicalize_url, is_ambiguous_url
from fantasyreport.storage.base import ArticleRecord, DuplicateRecord, Store

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
SKIP = "skip"
DUPLICATE = "duplicate"

_WS_RE = re.compile(r"\s+")
_NEWS_PREFIX_RE = re.compile(r"^NEWS\b[\s:|\-–—]*")
_TITLE_KEY_RE = re.compile(r"[^a-z0-9 ]+")


def normalize_title(raw: Optional[str]) -> str:
    """Decode entities, collapse whitespace and drop a leading "NEWS" label."""
    text = html.unescape(raw or "")
    text = _WS_RE.sub(" ", text).strip()
    text = _NEWS_PREFIX_RE.sub("", text).strip()
    return text


def title_key(raw: Optional[str]) -> str:
    text = normalize_title(raw).lower()
    text = text.replace("’", "'").replace("'", "")
    text = _TITLE_KEY_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def compute_fingerprint(url: str, title: Optional[str] = None) -> str:
    canon = canonicalize_url(url)
    if is_ambiguous_url(canon):
        key = title_key(title)
        # Very short titles ("Home", "News") are not a usable identity.
        if len(key.split()) >= 3:
            return "t:" + _sha(key)
    return "u:" + _sha(canon)


def _union(existing: List[str], incoming: List[str]) -> List[str]:
    out = list(existing)
    for item in incoming:
        if item not in out:
            out.append(item)
    return out


def merge_changes(existing: ArticleRecord, incoming: ArticleRecord) -> Dict[str, Any]:
    """Fields of `existing` that re-ingestion should refresh.

    Topic and player sets only grow, so a later empty classification never
    wipes an earlier one and repeated runs converge.
    """
    changes: Dict[str, Any] = {}
    if incoming.title and incoming.title != existing.title:
        changes["title"] = incoming.title
        changes["cleaned_title"] = incoming.cleaned_title
    for name in ("image_url", "author", "summary"):
        new = getattr(incoming, name)
        if new and new != getattr(existing, name):
            changes[name] = new
    if incoming.published_at and incoming.published_at != existing.published_at:
        changes["published_at"] = incoming.published_at
    if incoming.week is not None and incoming.week != existing.week:
        changes["week"] = incoming.week
    topics = _union(existing.topics, incoming.topics)
    if topics != list(existing.topics):
        changes["topics"] = topics
    players = _union(existing.players, incoming.players)
    if players != list(existing.players):
        changes["players"] = players
    return changes


@dataclass
class DedupDecision:
    action: str
    fingerprint: str
    existing: Optional[ArticleRecord] = None
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DedupEngine:
    """Decides and applies the outcome for one incoming article.

    The (source_id, fingerprint) unique constraint is the authority: when an
    insert loses a race against a concurrent writer the decision is re-taken
    against the row that won.

    `link_fingerprint` is the fingerprint of the index link before page
    enrichment. When it differs from the article's own fingerprint it is kept
    as an alias of the row, so a later run that cannot reach the article page
    still lands on the same row.
    """

    store: Store
    union_duplicate_tags: bool = True

    def _own_row(self, incoming: ArticleRecord, link_fingerprint: Optional[str]) -> Optional[ArticleRecord]:
        sid = incoming.source_id
        existing = self.store.find_article(sid, incoming.fingerprint)
        if existing is not None:
            return existing
        if link_fingerprint and link_fingerprint != incoming.fingerprint:
            existing = self.store.find_article(sid, link_fingerprint)
            if existing is not None:
                return existing
        linked = self.store.find_linked_article(sid, incoming.fingerprint)
        if linked is not None and linked.source_id == sid:
            return linked
        return None

    def decide(self, incoming: ArticleRecord, link_fingerprint: Optional[str] = None) -> DedupDecision:
        fp = incoming.fingerprint
        existing = self._own_row(incoming, link_fingerprint)
        if existing is not None:
            changes = merge_changes(existing, incoming)
            return DedupDecision(UPDATE if changes else SKIP, fp, existing=existing, changes=changes)

        if self.store.has_duplicate(incoming.source_id, fp):
            return DedupDecision(SKIP, fp)

        canonical = self.store.find_article_elsewhere(fp, incoming.source_id)
        if canonical is not None:
            changes: Dict[str, Any] = {}
            if self.union_duplicate_tags:
                topics = _union(canonical.topics, incoming.topics)
                players = _union(canonical.players, incoming.players)
                if topics != list(canonical.topics):
                    changes["topics"] = topics
                if players != list(canonical.players):
                    changes["players"] = players
            return DedupDecision(DUPLICATE, fp, existing=canonical, changes=changes)

        return DedupDecision(INSERT, fp)

    def apply(
        self,
        incoming: ArticleRecord,
        decision: Optional[DedupDecision] = None,
        link_fingerprint: Optional[str] = None,
    ) -> DedupDecision:
        decision = decision or self.decide(incoming, link_fingerprint)

        if decision.action == INSERT:
            new_id = self.store.insert_article(incoming)
            if new_id is None:
                logger.debug(f"Insert conflict for {decision.fingerprint}; re-deciding against stored row")
                retry = self.decide(incoming, link_fingerprint)
                if retry.action == INSERT:
                    # Row vanished between conflict and re-read; nothing sensible to do.
                    return DedupDecision(SKIP, decision.fingerprint)
                return self.apply(incoming, retry, link_fingerprint)
            incoming.id = new_id
            self._record_alias(incoming, new_id, decision.fingerprint, link_fingerprint)
            return decision

        if decision.action == UPDATE and decision.existing is not None:
            self.store.update_article(decision.existing.id, decision.changes)
            return decision

        if decision.action == DUPLICATE and decision.existing is not None:
            recorded = self.store.record_duplicate(
                DuplicateRecord(
                    canonical_article_id=decision.existing.id,
                    source_id=incoming.source_id,
                    url=incoming.url,
                    fingerprint=decision.fingerprint,
                )
            )
            if not recorded:
                return DedupDecision(SKIP, decision.fingerprint, existing=decision.existing)
            self._record_alias(incoming, decision.existing.id, decision.fingerprint, link_fingerprint)
            if decision.changes:
                self.store.update_article(decision.existing.id, decision.changes)
            return decision

        return decision

    def _record_alias(
        self, incoming: ArticleRecord, article_id: int, fingerprint: str, link_fingerprint: Optional[str]
    ) -> None:
        if not link_fingerprint or link_fingerprint == fingerprint:
            return
        self.store.record_duplicate(
            DuplicateRecord(
                canonical_article_id=article_id,
                source_id=incoming.source_id,
                url=incoming.url,
                fingerprint=link_fingerprint,
            )
        )
