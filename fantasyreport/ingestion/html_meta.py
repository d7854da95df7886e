"""Metadata extraction from article pages (OG/Twitter/JSON-LD/byline) and ranking tables."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import trafilatura
from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from fantasyreport.classification.players import extract_name_hits, normalize_position
from fantasyreport.ingestion.article_types import EnrichedCandidate, NameHit

logger = logging.getLogger(__name__)

ARTICLE_LD_TYPES = {"newsarticle", "article", "blogposting", "reportagenewsarticle", "analysisnewsarticle"}

_POS_CELL_RE = re.compile(r"^\s*(QB|RB|WR|TE|K|DST|DEF)\s*\d*\s*$", re.I)
_BY_RE = re.compile(r"^\s*by\s+", re.I)
_HEADER_NAMES = {"overall", "player", "player name", "name"}


def parse_dt(value: Any) -> Optional[datetime]:
    """Parse feed/page timestamps into aware UTC datetimes; None if unusable."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            dt = date_parser.parse(s)
        except (ValueError, OverflowError, TypeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _meta(soup: BeautifulSoup, *keys: str) -> Optional[str]:
    for key in keys:
        tag = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
        if tag is None:
            tag = soup.find("meta", attrs={"itemprop": key})
        if tag and tag.get("content"):
            value = str(tag["content"]).strip()
            if value:
                return value
    return None


def _iter_ld_nodes(data: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_ld_nodes(item)
    elif isinstance(data, dict):
        if "@graph" in data:
            yield from _iter_ld_nodes(data["@graph"])
        yield data


def _ld_article(soup: BeautifulSoup) -> Dict[str, Any]:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text() or ""
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        for node in _iter_ld_nodes(data):
            types = node.get("@type")
            types = types if isinstance(types, list) else [types]
            if any(str(t).lower() in ARTICLE_LD_TYPES for t in types if t):
                return node
    return {}


def _ld_author(node: Dict[str, Any]) -> Optional[str]:
    author = node.get("author")
    if isinstance(author, list):
        author = author[0] if author else None
    if isinstance(author, dict):
        author = author.get("name")
    return str(author).strip() if author else None


def _ld_image(node: Dict[str, Any]) -> Optional[str]:
    image = node.get("image")
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, dict):
        image = image.get("url")
    return str(image).strip() if image else None


def clean_author(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    text = re.sub(r"\s+", " ", raw).strip()
    if text.startswith(("http://", "https://")):
        return None
    text = _BY_RE.sub("", text).strip(" |,-")
    return text or None


def parse_article_meta(html: str, page_url: str, *, with_summary: bool = True) -> EnrichedCandidate:
    soup = BeautifulSoup(html or "", "lxml")
    ld = _ld_article(soup)

    canonical = None
    link = soup.find("link", rel="canonical")
    if link and link.get("href"):
        canonical = str(link["href"]).strip()
    canonical = canonical or _meta(soup, "og:url")

    title = _meta(soup, "og:title", "twitter:title") or (ld.get("headline") if ld else None)
    if not title:
        h1 = soup.find("h1")
        title = h1.get_text(" ", strip=True) if h1 else None
    if not title and soup.title:
        title = soup.title.get_text(" ", strip=True)

    description = _meta(soup, "og:description", "description", "twitter:description")
    if not description and with_summary:
        extracted = trafilatura.extract(html or "", include_comments=False, include_tables=False)
        if extracted:
            description = re.sub(r"\s+", " ", extracted).strip()[:400]

    image = _meta(soup, "og:image", "og:image:url", "twitter:image") or _ld_image(ld)

    author = clean_author(_meta(soup, "author", "article:author", "parsely-author")) or clean_author(_ld_author(ld))
    if not author:
        byline = soup.select_one("[rel=author], .byline, .author-name, .article-author")
        author = clean_author(byline.get_text(" ", strip=True)) if byline else None

    published_raw = (
        _meta(soup, "article:published_time", "datePublished", "pubdate", "parsely-pub-date")
        or (ld.get("datePublished") if ld else None)
    )
    if not published_raw:
        t = soup.find("time", attrs={"datetime": True})
        published_raw = t["datetime"] if t else None

    return EnrichedCandidate(
        url=page_url,
        canonical_url=canonical,
        title=title,
        description=description,
        author=author,
        image_url=image,
        published_at=parse_dt(published_raw),
        name_hits=tuple(extract_table_hits(soup)),
    )


def extract_table_hits(soup_or_html) -> List[NameHit]:
    """Player rows from ranking/waiver tables: rank cell, linked name, position cell.

    Falls back to "Name POS" spans in list items when no table rows qualify.
    """
    soup = soup_or_html if isinstance(soup_or_html, BeautifulSoup) else BeautifulSoup(soup_or_html or "", "lxml")
    hits: List[NameHit] = []
    seen = set()

    def push(name: str, pos: Optional[str], section: str) -> None:
        clean = re.sub(r"\s+", " ", name or "").strip()
        if len(clean.split(" ")) < 2 or clean.lower() in _HEADER_NAMES:
            return
        key = (clean.lower(), pos or "", section)
        if key in seen:
            return
        seen.add(key)
        hits.append(NameHit(clean, pos, section))

    for row in soup.find_all("tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        anchor = row.find("a")
        name = anchor.get_text(" ", strip=True) if anchor else None
        if not name:
            continue
        pos = None
        for cell in cells:
            m = _POS_CELL_RE.match(cell.get_text(" ", strip=True))
            if m:
                pos = normalize_position(m.group(1))
                break
        push(name, pos, "table")
    if hits:
        return hits

    for li in soup.find_all("li"):
        text = li.get_text(" ", strip=True)
        if not text or len(text) > 200:
            continue
        for hit in extract_name_hits(text, section="list"):
            if hit.position:
                push(hit.name, hit.position, "list")
    return hits
