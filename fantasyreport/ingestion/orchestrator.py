"""Runs ingestion for one source or a set of sources.

Within a source, candidates are processed strictly in sequence: gates,
page enrichment, canonical URL choice, classification, dedup, persistence.
Multi-source runs fan out over a bounded thread pool, one source per task.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from fantasyreport.classification.classifier import Classifier
from fantasyreport.classification.players import PlayerDirectory
from fantasyreport.ingestion.adapters import AdapterError, SourceAdapter, select_adapter
from fantasyreport.ingestion.article_types import CandidateArticle, EnrichedCandidate
from fantasyreport.ingestion.filters import skip_reason
from fantasyreport.ingestion.fingerprint import (
    DUPLICATE,
    INSERT,
    SKIP,
    UPDATE,
    DedupEngine,
    compute_fingerprint,
    normalize_title,
)
from fantasyreport.ingestion.http_client import FetchError, HttpClient
from fantasyreport.ingestion.url_utils import canonicalize_url, choose_canonical, domain_of, slugify
from fantasyreport.storage.base import ArticleRecord, SourceRecord, StorageError, Store

logger = logging.getLogger(__name__)


class UnknownSourceError(LookupError):
    def __init__(self, source_id):
        super().__init__(f"Unknown source {source_id}")
        self.source_id = source_id


@dataclass
class IngestSummary:
    source_id: int
    source_name: str = ""
    total: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    error: Optional[str] = None
    storage_failure: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LogEvents:
    """Event sink used outside of jobs: everything goes to the module logger."""

    def debug(self, message: str, **meta) -> None:
        logger.debug(message)

    def info(self, message: str, **meta) -> None:
        logger.info(message)

    def warn(self, message: str, **meta) -> None:
        logger.warning(message)

    def error(self, message: str, **meta) -> None:
        logger.error(message)

    def progress(self, current: int, total: Optional[int] = None) -> None:
        pass


class Orchestrator:
    def __init__(
        self,
        store: Store,
        http: HttpClient,
        player_directory: Optional[PlayerDirectory] = None,
        events=None,
        concurrency: int = 4,
        adapter_factory: Callable[[SourceRecord, HttpClient], SourceAdapter] = select_adapter,
        fetch_details: bool = True,
        page_budget: int = 1,
    ):
        self.store = store
        self.http = http
        self.classifier = Classifier(player_directory)
        self.dedup = DedupEngine(store)
        self.events = events or LogEvents()
        self.concurrency = max(1, int(concurrency))
        self.adapter_factory = adapter_factory
        self.fetch_details = fetch_details
        self.page_budget = max(1, int(page_budget))

    @classmethod
    def from_config(cls, config, store: Store) -> "Orchestrator":
        """Orchestrator wired with an HTTP client and the stored player directory."""
        try:
            directory = PlayerDirectory.from_store(store)
        except StorageError as e:
            logger.warning(f"Player directory unavailable, ingesting without player tags: {e}")
            directory = None
        return cls(
            store,
            HttpClient.from_config(config),
            player_directory=directory,
            concurrency=config.ingest_concurrency,
            page_budget=config.ingest_page_budget,
        )

    # -----------------------------
    # Single source
    # -----------------------------
    def ingest_one(self, source_id: int, limit: int = 50, events=None, *, track_progress: bool = True) -> IngestSummary:
        events = events or self.events
        source = self.store.get_source(source_id)
        if source is None:
            raise UnknownSourceError(source_id)

        summary = IngestSummary(source_id=source_id, source_name=source.name)
        events.info(f"Source {source.name} started", source_id=source_id)
        try:
            adapter = self.adapter_factory(source, self.http)
            candidates = adapter.list_index(page_budget=self.page_budget, limit=limit)[: max(0, limit)]
        except (AdapterError, FetchError) as e:
            return self._source_failed(source, summary, events, f"index failed: {e}")

        summary.total = len(candidates)
        events.info(f"Fetched {len(candidates)} candidates from {source.name}", source_id=source_id, count=len(candidates))
        if track_progress:
            events.progress(0, len(candidates))

        for n, cand in enumerate(candidates, start=1):
            try:
                outcome = self._process(source, adapter, cand, events)
            except StorageError as e:
                summary.storage_failure = True
                return self._source_failed(source, summary, events, f"storage error: {e}")
            except Exception as e:
                summary.failed += 1
                events.error(f"Item failed: {cand.url}: {e}", source_id=source_id, url=cand.url)
                logger.exception(f"Unhandled error processing {cand.url}")
            else:
                self._count(summary, outcome)
            if track_progress:
                events.progress(n, len(candidates))

        events.info(
            f"Source {source.name}: inserted={summary.inserted} updated={summary.updated} "
            f"duplicates={summary.duplicates} skipped={summary.skipped} failed={summary.failed}",
            source_id=source_id,
            summary=summary.as_dict(),
        )
        self._record_run(source, ok=True)
        return summary

    def _source_failed(self, source: SourceRecord, summary: IngestSummary, events, message: str) -> IngestSummary:
        summary.error = message
        events.error(f"Source {source.name} failed: {message}", source_id=source.id)
        self._record_run(source, ok=False, error=message)
        return summary

    def _record_run(self, source: SourceRecord, *, ok: bool, error: Optional[str] = None) -> None:
        try:
            self.store.record_source_run(source.id, ok=ok, error=error)
        except StorageError as e:
            logger.warning(f"Could not record run for source {source.id}: {e}")

    @staticmethod
    def _count(summary: IngestSummary, outcome: str) -> None:
        if outcome == INSERT:
            summary.inserted += 1
        elif outcome == UPDATE:
            summary.updated += 1
        elif outcome == DUPLICATE:
            summary.duplicates += 1
        else:
            summary.skipped += 1

    def _detail(self, adapter: SourceAdapter, url: str, events) -> Optional[EnrichedCandidate]:
        if not self.fetch_details:
            return None
        try:
            return adapter.fetch_detail(url)
        except (FetchError, AdapterError) as e:
            events.warn(f"Detail fetch failed, using index data: {url}: {e}", url=url)
            return None
        except Exception as e:
            logger.exception(f"Detail parse failed for {url}")
            events.warn(f"Detail parse failed, using index data: {url}: {e}", url=url)
            return None

    def _process(self, source: SourceRecord, adapter: SourceAdapter, cand: CandidateArticle, events) -> str:
        reason = skip_reason(cand.title, cand.url)
        if reason:
            events.debug(f"Skipped {cand.url}: {reason}", url=cand.url, reason=reason)
            return SKIP

        detail = self._detail(adapter, cand.url, events)
        canonical = choose_canonical(cand.url, detail.canonical_url if detail else None)

        # Feed titles are editorial; index titles from scrapes and sitemaps are
        # link text or slugs, so the page's own title wins there.
        if cand.adapter == "rss" or not detail:
            raw_title = cand.title or (detail.title if detail else "")
        else:
            raw_title = detail.title or cand.title
        title = normalize_title(raw_title)
        if not title:
            events.debug(f"Skipped {cand.url}: empty title", url=cand.url, reason="invalid-item")
            return SKIP

        summary_text = cand.description or (detail.description if detail else None)
        result = self.classifier.classify(
            title=title,
            url=canonical,
            summary=summary_text,
            source_category=source.category,
            name_hits=detail.name_hits if detail else (),
        )

        fingerprint = compute_fingerprint(canonical, title)
        # Identity of the index link alone, as seen by a run whose page fetch fails.
        link_fingerprint = compute_fingerprint(canonicalize_url(cand.url), title)
        article = ArticleRecord(
            source_id=source.id,
            title=raw_title.strip(),
            cleaned_title=title,
            url=cand.url,
            canonical_url=canonical,
            fingerprint=fingerprint,
            domain=domain_of(canonical),
            published_at=(detail.published_at if detail else None) or cand.published_at,
            sport=source.sport or "nfl",
            topics=list(result.topics),
            players=list(result.players),
            week=result.week,
            slug=slugify(title),
            image_url=cand.image_url or (detail.image_url if detail else None),
            author=cand.author or (detail.author if detail else None),
            summary=summary_text,
            is_player_page=result.is_player_page,
        )
        decision = self.dedup.apply(article, link_fingerprint=link_fingerprint)
        if decision.action == INSERT:
            events.debug(f"Inserted {canonical}", url=canonical, article_id=article.id)
        elif decision.action == UPDATE:
            events.debug(f"Updated {canonical}", url=canonical, fields=sorted(decision.changes))
        elif decision.action == DUPLICATE:
            events.debug(
                f"Duplicate of article {decision.existing.id}: {canonical}",
                url=canonical,
                canonical_article_id=decision.existing.id,
            )
        return decision.action

    # -----------------------------
    # Many sources
    # -----------------------------
    def ingest_all(self, limit: int = 50, allowed_only: bool = False, events=None) -> Dict[int, IngestSummary]:
        events = events or self.events
        sources = self.store.list_sources(allowed_only=allowed_only)
        events.info(f"Ingesting {len(sources)} sources", count=len(sources))
        events.progress(0, len(sources))

        results: Dict[int, IngestSummary] = {}
        if not sources:
            return results

        done = 0
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(sources))) as pool:
            futures = {
                pool.submit(self.ingest_one, s.id, limit, events, track_progress=False): s for s in sources
            }
            for future in as_completed(futures):
                source = futures[future]
                try:
                    results[source.id] = future.result()
                except StorageError as e:
                    results[source.id] = IngestSummary(
                        source_id=source.id, source_name=source.name, error=f"storage error: {e}", storage_failure=True
                    )
                    events.error(f"Source {source.name} failed: {e}", source_id=source.id)
                except Exception as e:
                    logger.exception(f"Source {source.name} crashed")
                    results[source.id] = IngestSummary(source_id=source.id, source_name=source.name, error=str(e))
                    events.error(f"Source {source.name} failed: {e}", source_id=source.id)
                done += 1
                events.progress(done, len(sources))

        # Report in list order (priority, then id), not completion order.
        return {s.id: results[s.id] for s in sources}

    def ingest_allowed(self, limit: int = 50, events=None) -> Dict[int, IngestSummary]:
        return self.ingest_all(limit, allowed_only=True, events=events)


def totals(summaries: List[IngestSummary]) -> Dict[str, int]:
    out = {"sources": len(summaries), "failed_sources": 0}
    for key in ("total", "inserted", "updated", "skipped", "duplicates", "failed"):
        out[key] = sum(getattr(s, key) for s in summaries)
    out["failed_sources"] = sum(1 for s in summaries if not s.ok)
    return out
