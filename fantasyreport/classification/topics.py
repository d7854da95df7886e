"""Topic tagging for fantasy football articles.

Deterministic keyword/pattern rules over the title, summary and URL path,
with source category hints as a weak prior. An article can carry several
tags; `primary_section` resolves them to exactly one display section.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import unquote, urlparse


# -----------------------------
# Vocabulary
# -----------------------------
START_SIT = "start-sit"
WAIVER_WIRE = "waiver-wire"
INJURY = "injury"
DFS = "dfs"
RANKINGS = "rankings"
ADVICE = "advice"
NEWS = "news"
TRADE = "trade"

# Display priority: an article belongs to the first of these it is tagged with.
SECTION_ORDER = (START_SIT, WAIVER_WIRE, INJURY, DFS, RANKINGS, ADVICE, NEWS)

VOCABULARY = SECTION_ORDER + (TRADE,)


# -----------------------------
# Rules
# -----------------------------
RULES: Dict[str, re.Pattern] = {
    START_SIT: re.compile(
        r"\b(start\s*[/-]?\s*sit|start(?:s)?\s+(?:and|&|or)\s+sit(?:s)?|who\s+to\s+(?:start|sit)|must[-\s]starts?)\b",
        re.I,
    ),
    WAIVER_WIRE: re.compile(
        r"\b(waiver\s*wire|waivers?|pick\s*ups?|adds?|streamers?|streaming|deep\s*adds?|stash(?:es)?|faab|sleepers?|spec\s*adds?|roster\s*moves?)\b",
        re.I,
    ),
    INJURY: re.compile(
        r"\b(injury|injuries|injured|out\s+for|placed\s+on\s+ir|tore|torn|ruptured|sidelined|inactive|questionable|doubtful|hamstring|acl|mcl|concussion|ankle|high[-\s]ankle)\b",
        re.I,
    ),
    DFS: re.compile(r"\b(dfs|draftkings|fanduel|lineups?|cash\s*games?|gpp|value\s*plays?|showdown)\b", re.I),
    RANKINGS: re.compile(r"\b(rankings?|ranks|top\s*\d+\s*(?:rb|wr|te|qb|dst|k)?s?|tiers?|big\s*board|ecr)\b", re.I),
    ADVICE: re.compile(r"\b(advice|tips?|guide|strategy|strategies|help|mistakes|lessons)\b", re.I),
    TRADE: re.compile(r"\b(trade(?:s|d)?|buy\s*low|sell\s*high|buy\s*/\s*sell|trade\s*targets?)\b", re.I),
}

# Waiver vocabulary ("adds", "signs") overlaps with transaction/practice news.
NOT_WAIVER = re.compile(
    r"\b(practice|camp|training\s*camp|beat\s*report|press\s*conference|injury|injured|trade|transaction|signs?|re-signs?|agrees\s+to|extension|arrested|suspended)\b",
    re.I,
)

# Source category values mapped onto the vocabulary.
CATEGORY_HINTS: Dict[str, str] = {
    "waiver": WAIVER_WIRE,
    "waivers": WAIVER_WIRE,
    "waiver-wire": WAIVER_WIRE,
    "rankings": RANKINGS,
    "ranking": RANKINGS,
    "start-sit": START_SIT,
    "start_sit": START_SIT,
    "startsit": START_SIT,
    "injury": INJURY,
    "injuries": INJURY,
    "dfs": DFS,
    "advice": ADVICE,
    "analysis": ADVICE,
    "news": NEWS,
    "trade": TRADE,
}

WEEK_RE = re.compile(r"\bweek\s*:?\s*(\d{1,2})\b", re.I)
MAX_WEEK = 22


@dataclass(frozen=True)
class TopicResult:
    topics: List[str] = field(default_factory=list)
    week: Optional[int] = None

    @property
    def primary(self) -> str:
        return primary_section(self.topics)


def extract_week(text: Optional[str]) -> Optional[int]:
    m = WEEK_RE.search(text or "")
    if not m:
        return None
    week = int(m.group(1))
    return week if 1 <= week <= MAX_WEEK else None


def url_path_words(url: Optional[str]) -> str:
    """Slug words of a URL path ("/nfl/week-5-waiver-wire/" -> "nfl week 5 waiver wire")."""
    if not url:
        return ""
    try:
        path = unquote(urlparse(url).path or "")
    except ValueError:
        return ""
    return re.sub(r"[-_/.+]+", " ", path).strip()


def _matches(text: str) -> List[str]:
    found = []
    for tag, rx in RULES.items():
        if rx.search(text):
            found.append(tag)
    if WAIVER_WIRE in found and NOT_WAIVER.search(text) and not re.search(r"\bwaiver", text, re.I):
        found.remove(WAIVER_WIRE)
    return found


def classify_topics(
    title: Optional[str],
    url: Optional[str] = None,
    summary: Optional[str] = None,
    source_category: Optional[str] = None,
) -> TopicResult:
    """Tags for an article, ordered by section priority (trade last)."""
    blob = f"{title or ''}\n{summary or ''}"
    tags = set(_matches(blob))
    path_words = url_path_words(url)
    if path_words:
        tags.update(_matches(path_words))

    hint = CATEGORY_HINTS.get((source_category or "").strip().lower())
    if hint and not tags:
        tags.add(hint)

    if not any(t in SECTION_ORDER and t != NEWS for t in tags):
        tags.add(NEWS)

    week = extract_week(title) or extract_week(summary) or extract_week(path_words)
    ordered = [t for t in VOCABULARY if t in tags]
    return TopicResult(topics=ordered, week=week)


def primary_section(topics: Iterable[str]) -> str:
    """Earliest tag in SECTION_ORDER; articles without one are news."""
    present = set(topics or [])
    for key in SECTION_ORDER:
        if key in present:
            return key
    return NEWS


def in_section(topics: Sequence[str], key: str) -> bool:
    """Section membership used by the retrieval query.

    "news" holds articles with no section tag other than news itself; any
    other key holds articles whose primary section is that key.
    """
    if key == NEWS:
        return not any(t in SECTION_ORDER and t != NEWS for t in (topics or []))
    return primary_section(topics) == key
