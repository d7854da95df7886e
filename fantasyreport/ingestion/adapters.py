"""Source adapters: one class per way of listing a source's recent articles.

Every adapter exposes the same two calls:

- `list_index(page_budget, limit)` -> candidate URLs with whatever metadata
  the index carries (feed entries, sitemap lastmod, link text)
- `fetch_detail(url)` -> metadata read from the article page itself

`select_adapter` picks the implementation for a source: an explicit adapter
key wins, then the configured fetch mode, then whatever URLs are present.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence
from urllib.parse import urljoin, urlparse

import feedparser
from bs4 import BeautifulSoup

from fantasyreport.ingestion.article_types import CandidateArticle, EnrichedCandidate
from fantasyreport.ingestion.filters import HUB_SEGMENT_RE, PAGINATION_RE
from fantasyreport.ingestion.html_meta import parse_article_meta, parse_dt
from fantasyreport.ingestion.http_client import FetchError, HttpClient
from fantasyreport.ingestion.url_utils import absolutize, same_host
from fantasyreport.storage.base import SourceRecord

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """Malformed feed, unusable sitemap or a page with no recognizable article links."""


def _text(html: Optional[str]) -> Optional[str]:
    if not html:
        return None
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip() or None


def _title_from_slug(url: str) -> str:
    path = urlparse(url).path.rstrip("/")
    slug = path.rsplit("/", 1)[-1]
    slug = re.sub(r"\.(html?|php|aspx?)$", "", slug, flags=re.I)
    words = [w for w in re.split(r"[-_]+", slug) if w and not re.fullmatch(r"\d{5,}", w)]
    return " ".join(w.capitalize() for w in words)


def _looks_like_hub(url: str) -> bool:
    path = urlparse(url).path or "/"
    return path in ("", "/") or bool(HUB_SEGMENT_RE.search(path) or PAGINATION_RE.search(path))


class SourceAdapter(Protocol):
    key: str

    def list_index(self, page_budget: int = 1, limit: int = 50) -> List[CandidateArticle]:
        ...

    def fetch_detail(self, url: str) -> EnrichedCandidate:
        ...


def fetch_article_detail(http: HttpClient, url: str) -> EnrichedCandidate:
    """Article page metadata; shared by every adapter kind."""
    return parse_article_meta(http.get_text(url), url)


@dataclass
class RssAdapter:
    """RSS/Atom feed parsed with feedparser."""

    source: SourceRecord
    http: HttpClient

    key = "rss"

    def fetch_detail(self, url: str) -> EnrichedCandidate:
        return fetch_article_detail(self.http, url)

    def list_index(self, page_budget: int = 1, limit: int = 50) -> List[CandidateArticle]:
        feed_url = self.source.rss_url
        if not feed_url:
            raise AdapterError(f"Source {self.source.name} has no rss_url")
        parsed = feedparser.parse(self.http.get_text(feed_url))
        entries = parsed.entries or []
        if parsed.bozo and not entries:
            raise AdapterError(f"Malformed feed {feed_url}: {parsed.get('bozo_exception')}")

        out: List[CandidateArticle] = []
        for entry in entries:
            link = (entry.get("link") or "").strip()
            title = (entry.get("title") or "").strip()
            if not link or not title:
                continue
            out.append(
                CandidateArticle(
                    url=urljoin(feed_url, link),
                    title=title,
                    description=_text(entry.get("summary")),
                    author=(entry.get("author") or None),
                    image_url=self._entry_image(entry),
                    published_at=parse_dt(entry.get("published") or entry.get("updated")),
                    adapter=self.key,
                )
            )
            if len(out) >= limit:
                break
        return out

    @staticmethod
    def _entry_image(entry: Dict[str, Any]) -> Optional[str]:
        for media in (entry.get("media_content") or []) + (entry.get("media_thumbnail") or []):
            if media.get("url"):
                return media["url"]
        for enc in entry.get("enclosures") or []:
            if str(enc.get("type") or "").startswith("image/") and enc.get("href"):
                return enc["href"]
        image = entry.get("image")
        if isinstance(image, dict) and image.get("href"):
            return image["href"]
        return None


SITEMAP_CANDIDATES = ("/sitemap.xml", "/sitemap_index.xml", "/sitemap-index.xml", "/news-sitemap.xml")
MAX_CHILD_SITEMAPS = 6


@dataclass
class SitemapAdapter:
    """XML sitemap (or sitemap index) with an optional lastmod lookback."""

    source: SourceRecord
    http: HttpClient
    path_filter: Optional[re.Pattern] = None

    key = "sitemap"

    @property
    def base_url(self) -> str:
        return self.source.homepage_url or ""

    def fetch_detail(self, url: str) -> EnrichedCandidate:
        return fetch_article_detail(self.http, url)

    def _sitemap_urls(self) -> List[str]:
        if self.source.sitemap_url:
            return [self.source.sitemap_url]
        if not self.base_url:
            raise AdapterError(f"Source {self.source.name} has neither sitemap_url nor homepage_url")
        return [urljoin(self.base_url, p) for p in SITEMAP_CANDIDATES]

    def _load(self) -> Optional[BeautifulSoup]:
        for url in self._sitemap_urls():
            try:
                xml = self.http.get_text(url)
            except FetchError as e:
                if e.transient:
                    raise
                logger.debug(f"Sitemap candidate {url} unavailable: {e}")
                continue
            soup = BeautifulSoup(xml, "xml")
            if soup.find("urlset") or soup.find("sitemapindex"):
                return soup
        return None

    def list_index(self, page_budget: int = 1, limit: int = 50) -> List[CandidateArticle]:
        soup = self._load()
        if soup is None:
            raise AdapterError(f"No usable sitemap for {self.source.name}")

        entries = self._url_entries(soup)
        children = soup.find_all("sitemap")
        if children:
            child_locs = sorted(
                ((self._lastmod(c), (c.find("loc").get_text(strip=True) if c.find("loc") else "")) for c in children),
                key=lambda t: t[0] or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True,
            )
            for _, loc in child_locs[:MAX_CHILD_SITEMAPS]:
                if not loc:
                    continue
                try:
                    child = BeautifulSoup(self.http.get_text(loc), "xml")
                except FetchError as e:
                    if e.transient:
                        raise
                    logger.debug(f"Child sitemap {loc} unavailable: {e}")
                    continue
                entries.extend(self._url_entries(child))

        cutoff = None
        if self.source.lookback_days:
            cutoff = datetime.now(timezone.utc) - timedelta(days=int(self.source.lookback_days))

        home = self.base_url or self.source.sitemap_url or ""
        out: List[CandidateArticle] = []
        seen = set()
        entries.sort(key=lambda e: e.published_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        for cand in entries:
            if cand.url in seen:
                continue
            seen.add(cand.url)
            if home and not same_host(cand.url, home):
                continue
            if cutoff and cand.published_at and cand.published_at < cutoff:
                continue
            if self.path_filter and not self.path_filter.search(urlparse(cand.url).path):
                continue
            out.append(cand)
            if len(out) >= limit:
                break
        return out

    @staticmethod
    def _lastmod(tag) -> Optional[datetime]:
        lm = tag.find("lastmod")
        return parse_dt(lm.get_text(strip=True)) if lm else None

    def _url_entries(self, soup: BeautifulSoup) -> List[CandidateArticle]:
        out = []
        for url_tag in soup.find_all("url"):
            loc = url_tag.find("loc", recursive=False)
            if loc is None:
                continue
            href = loc.get_text(strip=True)
            if not href:
                continue
            # Only <news:news> carries a headline; <image:title> is a photo caption.
            news = url_tag.find("news")
            news_title = news.find("title") if news is not None else None
            pub = news.find("publication_date") if news is not None else None
            published = parse_dt(pub.get_text(strip=True)) if pub else self._lastmod(url_tag)
            out.append(
                CandidateArticle(
                    url=href,
                    title=(news_title.get_text(strip=True) if news_title else "") or _title_from_slug(href),
                    published_at=published,
                    adapter=self.key,
                )
            )
        return out


FALLBACK_SELECTORS = (
    "article h2 a[href]",
    "article h3 a[href]",
    "h2 a[href]",
    "h3 a[href]",
    "a.card[href]",
    "article a[href]",
    "a[href*='/nfl/']",
    "a[href*='fantasy-football']",
)


@dataclass
class ScrapeAdapter:
    """CSS-selector scrape of a listing page, with optional pagination."""

    source: SourceRecord
    http: HttpClient

    key = "scrape"

    @property
    def base_url(self) -> str:
        return self.source.homepage_url or ""

    def fetch_detail(self, url: str) -> EnrichedCandidate:
        return fetch_article_detail(self.http, url)

    def index_url(self) -> str:
        if not self.base_url:
            raise AdapterError(f"Source {self.source.name} has no homepage_url")
        return urljoin(self.base_url, self.source.scrape_path) if self.source.scrape_path else self.base_url

    def page_urls(self, page_budget: int) -> List[str]:
        urls = [self.index_url()]
        template = self.source.scrape_pagination
        if template and "{page}" in template:
            for n in range(2, max(1, page_budget) + 1):
                urls.append(urljoin(self.index_url(), template.format(page=n)))
        return urls

    def selectors(self) -> List[str]:
        configured = [s.strip() for s in (self.source.scrape_selector or "").split("||") if s.strip()]
        return configured + [s for s in FALLBACK_SELECTORS if s not in configured]

    def extract_links(self, html: str, page_url: str, selector: str) -> List[CandidateArticle]:
        soup = BeautifulSoup(html, "html.parser")
        out: List[CandidateArticle] = []
        seen = set()
        for a in soup.select(selector):
            if a.find_parent(["header", "nav", "footer"]):
                continue
            href = absolutize(a.get("href") or "", page_url)
            if not href or href in seen:
                continue
            if not same_host(href, page_url) or _looks_like_hub(href):
                continue
            title = a.get_text(" ", strip=True) or a.get("title") or a.get("aria-label") or ""
            title = re.sub(r"\s+", " ", title).strip()
            if len(title) < 8:
                continue
            seen.add(href)
            out.append(CandidateArticle(url=href, title=title, adapter=self.key))
        return out

    def list_index(self, page_budget: int = 1, limit: int = 50) -> List[CandidateArticle]:
        out: List[CandidateArticle] = []
        seen = set()
        chosen: Optional[str] = None
        for page_no, page_url in enumerate(self.page_urls(page_budget), start=1):
            try:
                html = self.http.get_text(page_url)
            except FetchError:
                if page_no == 1:
                    raise
                logger.info(f"Stopping pagination for {self.source.name} at page {page_no}")
                break
            candidates: List[CandidateArticle] = []
            for selector in ([chosen] if chosen else self.selectors()):
                candidates = self.extract_links(html, page_url, selector)
                if candidates:
                    chosen = selector
                    break
            if not candidates:
                if page_no == 1:
                    raise AdapterError(f"No article links matched on {page_url}")
                break
            for cand in candidates:
                if cand.url in seen:
                    continue
                seen.add(cand.url)
                out.append(cand)
                if len(out) >= limit:
                    return out
        return out


FFTODAY_ORIGIN = "https://www.fftoday.com"
FFTODAY_AUTHORS = ("schwarz", "orth", "mack", "hecox", "eakin", "hutchins")
_FFTODAY_LINK_RE = re.compile(r"^/articles/[^?#]+\.html?$", re.I)


@dataclass
class FFTodayAdapter:
    """FFToday has no feed; recent articles are listed on per-author index pages."""

    source: SourceRecord
    http: HttpClient
    authors: Sequence[str] = FFTODAY_AUTHORS

    key = "fftoday"

    def fetch_detail(self, url: str) -> EnrichedCandidate:
        return fetch_article_detail(self.http, url)

    @property
    def base_url(self) -> str:
        return self.source.homepage_url or FFTODAY_ORIGIN

    def _author_index(self, author: str) -> Optional[str]:
        last_error: Optional[FetchError] = None
        for suffix in ("index.html", "index.htm"):
            try:
                return self.http.get_text(urljoin(self.base_url, f"/articles/{author}/{suffix}"))
            except FetchError as e:
                if e.transient:
                    raise
                last_error = e
        logger.debug(f"FFToday author {author} index unavailable: {last_error}")
        return None

    def list_index(self, page_budget: int = 1, limit: int = 40) -> List[CandidateArticle]:
        out: List[CandidateArticle] = []
        seen = set()
        pages_found = 0
        for author in self.authors:
            html = self._author_index(author)
            if html is None:
                continue
            pages_found += 1
            soup = BeautifulSoup(html, "html.parser")
            for a in soup.select("a[href^='/articles/']"):
                href = (a.get("href") or "").strip()
                if not _FFTODAY_LINK_RE.match(href) or href.lower().endswith(("/index.html", "/index.htm")):
                    continue
                url = urljoin(self.base_url, href)
                if url in seen:
                    continue
                seen.add(url)
                title = re.sub(r"\s+", " ", a.get_text(" ", strip=True)) or _title_from_slug(url)
                out.append(CandidateArticle(url=url, title=title, author=author.capitalize(), adapter=self.key))
                if len(out) >= limit:
                    return out
        if not pages_found:
            raise AdapterError("No FFToday author index pages could be loaded")
        return out


FANTASYLIFE_ORIGIN = "https://www.fantasylife.com"
_FANTASYLIFE_ARTICLE_RE = re.compile(r"^/articles/fantasy/[^/]+/?$")


@dataclass
class FantasyLifeAdapter:
    """Fantasy Life listing pages, falling back to the sitemap when the DOM yields nothing."""

    source: SourceRecord
    http: HttpClient

    key = "fantasylife"

    def fetch_detail(self, url: str) -> EnrichedCandidate:
        return fetch_article_detail(self.http, url)

    @property
    def base_url(self) -> str:
        return self.source.homepage_url or FANTASYLIFE_ORIGIN

    def list_index(self, page_budget: int = 1, limit: int = 50) -> List[CandidateArticle]:
        out: List[CandidateArticle] = []
        seen = set()
        for page in range(1, max(1, page_budget) + 1):
            page_url = urljoin(self.base_url, f"/articles/fantasy?page={page}")
            try:
                html = self.http.get_text(page_url)
            except FetchError as e:
                if e.transient:
                    raise
                break
            soup = BeautifulSoup(html, "html.parser")
            found = 0
            for a in soup.select("main h2 a[href], main h3 a[href]"):
                if a.find_parent(["header", "nav", "footer"]):
                    continue
                url = absolutize(a.get("href") or "", page_url)
                if not url or url in seen or not _FANTASYLIFE_ARTICLE_RE.match(urlparse(url).path):
                    continue
                seen.add(url)
                found += 1
                out.append(CandidateArticle(url=url, title=a.get_text(" ", strip=True), adapter=self.key))
                if len(out) >= limit:
                    return out
            if not found:
                break
        if out:
            return out

        logger.info("Fantasy Life listing yielded no links; falling back to sitemap")
        source = self.source
        if not source.sitemap_url and not source.homepage_url:
            source = SourceRecord(
                name=source.name,
                id=source.id,
                homepage_url=FANTASYLIFE_ORIGIN,
                lookback_days=source.lookback_days or 14,
            )
        fallback = SitemapAdapter(
            source=source,
            http=self.http,
            path_filter=_FANTASYLIFE_ARTICLE_RE,
        )
        return fallback.list_index(page_budget, limit)


ADAPTERS: Dict[str, Callable[..., SourceAdapter]] = {
    RssAdapter.key: RssAdapter,
    SitemapAdapter.key: SitemapAdapter,
    ScrapeAdapter.key: ScrapeAdapter,
    "html": ScrapeAdapter,
    FFTodayAdapter.key: FFTodayAdapter,
    FantasyLifeAdapter.key: FantasyLifeAdapter,
}


def select_adapter(source: SourceRecord, http: HttpClient) -> SourceAdapter:
    key = (source.adapter or "").strip().lower()
    if key:
        factory = ADAPTERS.get(key)
        if factory is None:
            raise AdapterError(f"Unknown adapter {key!r} for source {source.name}")
        return factory(source=source, http=http)

    mode = (source.fetch_mode or "auto").strip().lower()
    if mode == "rss" and source.rss_url:
        return RssAdapter(source=source, http=http)
    if mode == "sitemap":
        return SitemapAdapter(source=source, http=http)
    if mode in ("html", "scrape") and source.homepage_url:
        return ScrapeAdapter(source=source, http=http)

    if source.rss_url:
        return RssAdapter(source=source, http=http)
    if source.sitemap_url:
        return SitemapAdapter(source=source, http=http)
    if source.homepage_url:
        return ScrapeAdapter(source=source, http=http)
    raise AdapterError(f"Source {source.name} has no rss_url, sitemap_url or homepage_url")
