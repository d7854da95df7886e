"""URL and content gates applied to candidates before they reach dedup.

Each gate returns a short reason string when the candidate should be
skipped, or None when it passes; the reason ends up in the job's event log.
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qs, unquote, urlparse


DENY_DOMAINS = {
    "bbc.com",
    "onefootball.com",
    "mlb.com",
    "nhl.com",
    "nba.com",
    "thehockeynews.com",
    "mmajunkie.usatoday.com",
    "ufc.com",
    "golfdigest.com",
}

DENY_KEYWORDS_RE = re.compile(
    r"\b(boxing|mma|ufc|wrestl\w*|bowling|nhl|hockey|mlb|baseball|nba|wnba|basketball|premier\s+league|soccer|"
    r"champions\s+league|mls|laliga|la\s+liga|serie\s+a|golf|pga|ryder\s+cup|high[\s-]?school|prep|nascar)\b",
    re.I,
)

NFL_HINT_RE = re.compile(r"\bnfl\b|fantasy[\s_-]?football", re.I)

# Path segments that mark hub/listing/utility pages rather than stories.
HUB_SEGMENT_RE = re.compile(
    r"(^|/)(tag|tags|category|categories|author|authors|team|teams|topic|topics|series|search|"
    r"videos?|podcasts?|shop|store|about|contact|privacy|terms|login|signup|subscribe|newsletter)(/|$)",
    re.I,
)
PAGINATION_RE = re.compile(r"(^|/)page/\d+(/|$)", re.I)
DATED_PATH_RE = re.compile(r"/20\d{2}[/-]\d{1,2}(?:[/-]\d{1,2})?/")
NUMERIC_ID_RE = re.compile(r"\b\d{4,}\b")
_FILE_TAIL_RE = re.compile(r"\.(html?|php|aspx?)$", re.I)


def _host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def is_utility_url(url: str) -> bool:
    """Homepages, sitemaps and watch/video pages."""
    try:
        path = (urlparse(url).path or "").lower()
    except ValueError:
        return True
    if path in ("", "/"):
        return True
    return any(k in path for k in ("sitemap", "google-news", "where-to-watch", "/watch", "/videos"))


def is_likely_article_url(url: str) -> bool:
    """Heuristic: does this URL point at a single story?"""
    if not url:
        return False
    try:
        u = urlparse(url)
    except ValueError:
        return False
    if u.scheme not in ("http", "https") or not u.hostname:
        return False
    path = (u.path or "/").rstrip("/")
    if not path:
        return False
    if HUB_SEGMENT_RE.search(path) or PAGINATION_RE.search(path):
        return False

    segs = [s for s in path.split("/") if s]
    last = _FILE_TAIL_RE.sub("", segs[-1] if segs else "")
    if last.lower() in ("", "index", "feed", "rss", "json", "xml"):
        return False

    if DATED_PATH_RE.search(path + "/") or NUMERIC_ID_RE.search(path):
        return True
    if len(segs) >= 3:
        return True
    if len(segs) >= 2 and re.search(r"[a-z][-_][a-z]", last, re.I):
        return True
    qs = parse_qs(u.query)
    if any(k in qs for k in ("id", "storyId", "cid")):
        return True
    words = [w for w in re.split(r"[-_]+", last) if w]
    if len(words) >= 3 and len(last) >= 12:
        return True
    return bool(re.fullmatch(r"[a-z0-9-]{16,}", last, re.I) and "-" in last)


def blocked_by_denylist(title: str, url: str) -> Optional[str]:
    """Reject obviously non-NFL content by domain or keyword."""
    host = _host(url)
    if host.startswith("www."):
        host = host[4:]
    if host and any(host == d or host.endswith("." + d) for d in DENY_DOMAINS):
        return "deny-domain"
    try:
        path = unquote(urlparse(url).path or "")
    except ValueError:
        path = ""
    text = f"{title or ''} {re.sub(r'[-_/]+', ' ', path)}"
    if DENY_KEYWORDS_RE.search(text) and not NFL_HINT_RE.search(text):
        return "deny-keyword"
    return None


def skip_reason(title: str, url: str) -> Optional[str]:
    """First gate a candidate fails, in evaluation order."""
    if not url or not title:
        return "invalid-item"
    if is_utility_url(url):
        return "utility-url"
    if not is_likely_article_url(url):
        return "not-article"
    return blocked_by_denylist(title, url)
