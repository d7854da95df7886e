"""URL canonicalization helpers for ingestion/dedup."""

from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import parse_qsl, unquote, urljoin, urlencode, urlparse, urlunparse


DEFAULT_STRIP_QUERY_PARAMS = {
    # tracking
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "utm_name",
    "utm_cid",
    "utm_reader",
    "utm_referrer",
    "utm_social",
    "utm_social-type",
    # misc common trackers
    "gclid",
    "fbclid",
    "mc_cid",
    "mc_eid",
    "igshid",
    "vero_conv",
    "vero_id",
    "_hsenc",
    "_hsmi",
    "spm",
    "sr",
    "ref",
    "ref_src",
    "cmp",
    "cmpid",
    "cmpid2",
    "camp",
    "campaign",
    "eid",
    "mibextid",
    "src",
    "guce_referrer",
    "guce_referrer_sig",
    "guccounter",
}

# Query keys that carry the real destination on redirector links.
REDIRECT_PARAM_KEYS = (
    "url",
    "u",
    "to",
    "dest",
    "destination",
    "redirect",
    "r",
    "rd",
    "redir",
    "link",
    "target",
    "go",
    "out",
    "next",
    "continue",
)

REDIRECT_HOSTS = {
    "l.facebook.com",
    "lm.facebook.com",
    "out.reddit.com",
    "news.google.com",
    "flip.it",
    "apple.news",
    "feedproxy.google.com",
    "www.google.com",
}

SHORTENER_HOSTS = {
    "t.co",
    "bit.ly",
    "lnkd.in",
    "tinyurl.com",
    "yhoo.it",
    "ow.ly",
    "buff.ly",
    "trib.al",
    "dlvr.it",
    "goo.gl",
}

# Hub paths that many distinct articles "canonicalize" to on sloppy sites.
GENERIC_PATHS = {
    "",
    "/",
    "/research",
    "/news",
    "/blog",
    "/articles",
    "/sports",
    "/nfl",
    "/fantasy",
    "/fantasy-football",
}

MAX_UNWRAP_HOPS = 4

_DEFAULT_PORTS = {"http": 80, "https": 443}
_MULTI_SLASH_RE = re.compile(r"/{2,}")


def _host(url: str) -> str:
    return (urlparse(url or "").hostname or "").lower()


def unwrap_redirect(url: str, *, max_hops: int = MAX_UNWRAP_HOPS) -> str:
    """Follow redirector query params (l.facebook.com/l.php?u=..., etc.) without network access."""
    current = (url or "").strip()
    for _ in range(max_hops):
        p = urlparse(current)
        if not p.query:
            break
        params = dict(parse_qsl(p.query, keep_blank_values=False))
        is_redirector = (p.hostname or "").lower() in REDIRECT_HOSTS
        target = None
        for key in REDIRECT_PARAM_KEYS:
            candidate = params.get(key)
            if not candidate:
                continue
            candidate = unquote(candidate).strip()
            if candidate.startswith(("http://", "https://")):
                target = candidate
                break
        # Only unwrap when the host is a known redirector or the path looks like one.
        if not target or not (is_redirector or re.search(r"/(l\.php|redirect|out|go|click)\b", p.path or "")):
            break
        current = target
    return current


def canonicalize_url(url: str, *, strip_params: Optional[Iterable[str]] = None) -> str:
    """Canonicalize a URL for dedup.

    - Unwrap redirector links
    - Lowercase scheme + hostname, drop default ports
    - Collapse duplicate slashes, strip trailing slash and trailing /amp
    - Remove fragments
    - Strip tracking query parameters and sort the rest
    """
    if not url:
        return ""
    strip = set(strip_params) if strip_params is not None else set(DEFAULT_STRIP_QUERY_PARAMS)
    p = urlparse(unwrap_redirect(url))
    scheme = (p.scheme or "https").lower()
    host = (p.hostname or "").lower()
    port = p.port if p.port and p.port != _DEFAULT_PORTS.get(scheme) else None
    netloc = f"{host}:{port}" if port else host

    path = _MULTI_SLASH_RE.sub("/", p.path or "/")
    if path.endswith("/amp") or path.endswith("/amp/"):
        path = path[: path.rfind("/amp")] or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    # Normalize query params
    kept = []
    for k, v in parse_qsl(p.query, keep_blank_values=True):
        kl = k.lower()
        if kl in strip or kl.startswith("utm_"):
            continue
        kept.append((k, v))
    kept.sort(key=lambda kv: (kv[0].lower(), kv[1]))
    query = urlencode(kept, doseq=True)

    # Remove fragment
    return urlunparse((scheme, netloc, path, "", query, ""))


def domain_of(url: str) -> Optional[str]:
    """Hostname without a leading www., or None."""
    host = _host(url)
    if host.startswith("www."):
        host = host[4:]
    return host or None


def absolutize(href: str, base: str) -> Optional[str]:
    if not href:
        return None
    href = href.strip()
    if href.startswith(("javascript:", "mailto:", "tel:", "#")):
        return None
    try:
        return urljoin(base, href)
    except ValueError:
        return None


def same_host(a: str, b: str) -> bool:
    return bool(domain_of(a)) and domain_of(a) == domain_of(b)


def is_shortener(url: str) -> bool:
    return _host(url) in SHORTENER_HOSTS


def is_generic_canonical(url: str) -> bool:
    """True when a canonical link points at a hub page instead of the article itself."""
    try:
        p = urlparse(url)
    except ValueError:
        return True
    if not p.scheme or not p.hostname:
        return True
    path = (p.path or "").rstrip("/").lower()
    return path in GENERIC_PATHS


def is_ambiguous_url(url: str) -> bool:
    """URLs that do not identify a single piece of content on their own."""
    return not url or is_shortener(url) or is_generic_canonical(url)


def choose_canonical(page_url: str, declared: Optional[str]) -> str:
    """Prefer the page's declared canonical link unless it is missing, generic or off-site."""
    if declared:
        absolute = absolutize(declared, page_url)
        if absolute and not is_generic_canonical(absolute) and same_host(absolute, page_url):
            return canonicalize_url(absolute)
    return canonicalize_url(page_url)


def slugify(text: str, *, max_len: int = 80) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:max_len].rstrip("-")
