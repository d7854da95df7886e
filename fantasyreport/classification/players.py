"""Player name extraction and resolution against the roster directory.

Resolution tries three tiers in order and stops at the first hit:

1. exact: the player's name is exactly the hit's first and last token
2. middle: same first/last tokens with interior middle names (regex)
3. alias: case-insensitive match against the player's alternate names,
   including common nickname forms of the first name (Jake/Jacob)

Each tier is tried with the hinted position first, then without it.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from fantasyreport.ingestion.article_types import NameHit
from fantasyreport.storage.base import PlayerRecord, Store

logger = logging.getLogger(__name__)

FANTASY_POSITIONS = ("QB", "RB", "WR", "TE", "K", "DEF")

TIER_EXACT = "exact"
TIER_MIDDLE = "middle"
TIER_ALIAS = "alias"

_NAME_SUFFIXES = {"jr", "sr", "ii", "iii", "iv", "v"}
_TOKEN_RE = re.compile(r"[A-Za-z][A-Za-z'-]*")
_TRAILING_PAREN_RE = re.compile(r"\([^)]*\)\s*$")
_TRAILING_DASH_RE = re.compile(r"\s*[-–—]\s*$")

_NICKNAME_PAIRS = [
    ("jake", "jacob"),
    ("mike", "michael"),
    ("matt", "matthew"),
    ("chris", "christopher"),
    ("josh", "joshua"),
    ("nick", "nicholas"),
    ("tony", "anthony"),
    ("rob", "robert"),
    ("bob", "robert"),
    ("will", "william"),
    ("bill", "william"),
    ("zach", "zachary"),
    ("cam", "cameron"),
    ("gabe", "gabriel"),
    ("joe", "joseph"),
    ("dan", "daniel"),
    ("danny", "daniel"),
    ("dave", "david"),
    ("alex", "alexander"),
    ("ben", "benjamin"),
    ("sam", "samuel"),
    ("tom", "thomas"),
    ("jon", "jonathan"),
    ("ken", "kenneth"),
    ("jim", "james"),
    ("jimmy", "james"),
    ("steve", "steven"),
    ("greg", "gregory"),
    ("pat", "patrick"),
    ("drew", "andrew"),
    ("andy", "andrew"),
    ("tim", "timothy"),
    ("ed", "edward"),
    ("hollywood", "marquise"),
]


def _build_nicknames() -> Dict[str, set]:
    out: Dict[str, set] = {}
    for a, b in _NICKNAME_PAIRS:
        out.setdefault(a, set()).add(b)
        out.setdefault(b, set()).add(a)
    return out


NICKNAMES = _build_nicknames()

_POS_ALT = r"QB|RB|WR|TE|K|DST|DEF"
_NAME = r"[A-Z][A-Za-z.'-]+(?:\s+[A-Z][A-Za-z.'-]+){1,2}"
_NAME_POS_RE = re.compile(rf"({_NAME})\s+\(?(?:[A-Z]{{2,3}}\s*[,-]\s*)?({_POS_ALT})\b")
_POS_NAME_RE = re.compile(rf"\b({_POS_ALT})\s+({_NAME})")
_CAP_WORD_RE = re.compile(r"[A-Z][A-Za-z.'-]*")
_POSSESSIVE_RE = re.compile(r"['’]s$")
_POSITION_WORDS = {"QB", "RB", "WR", "TE", "K", "DST", "DEF"}


def normalize_position(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    t = raw.upper()
    for pos in ("QB", "RB", "WR", "TE"):
        if re.search(rf"\b{pos}\d*\b", t):
            return pos
    if re.search(r"\bK\d*\b", t):
        return "K"
    if re.search(r"\b(?:DST|DEF|D/ST)\d*\b", t) or "D/ST" in t:
        return "DEF"
    return None


def _name_tokens(raw: str) -> List[str]:
    tokens = [t.lower() for t in _TOKEN_RE.findall(raw or "")]
    return [t for t in tokens if t.strip("'") not in _NAME_SUFFIXES] or tokens


def pick_first_last(raw: str) -> Optional[Tuple[str, str]]:
    """First and last name tokens of a hit, or None when fewer than two tokens remain."""
    cleaned = _TRAILING_PAREN_RE.sub("", raw or "")
    cleaned = cleaned.replace("“", '"').replace("”", '"').replace("’", "'").replace("‘", "'")
    cleaned = _TRAILING_DASH_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    tokens = _name_tokens(cleaned)
    if len(tokens) < 2:
        return None
    return tokens[0], tokens[-1]


def _eligible(player: PlayerRecord) -> bool:
    return bool(player.active) and bool(player.team) and normalize_position(player.position) in FANTASY_POSITIONS


def _dedupe_hits(hits: Iterable[NameHit]) -> List[NameHit]:
    seen = set()
    out = []
    for h in hits:
        key = (h.name.lower(), h.position or "", h.section or "")
        if key in seen:
            continue
        seen.add(key)
        out.append(h)
    return out


def extract_name_hits(text: str, *, section: Optional[str] = None) -> List[NameHit]:
    """Name-like spans from free text.

    Spans with an adjacent position ("Jake Browning QB", "WR Puka Nacua",
    "Bijan Robinson (ATL - RB)") come first; then every two and three word
    window of each capitalized run, without a hint.
    """
    if not text:
        return []
    hits: List[NameHit] = []
    for m in _NAME_POS_RE.finditer(text):
        hits.append(NameHit(m.group(1).strip(), normalize_position(m.group(2)), section))
    for m in _POS_NAME_RE.finditer(text):
        hits.append(NameHit(m.group(2).strip(), normalize_position(m.group(1)), section))

    words = re.findall(r"\S+", text)
    run: List[str] = []

    def flush() -> None:
        for size in (2, 3):
            for i in range(0, len(run) - size + 1):
                hits.append(NameHit(" ".join(run[i : i + size]), None, section))
        run.clear()

    for w in words:
        token = w.strip(",:;!?\"()[]")
        # "Browning." ends a sentence; "D.J." and "T." are initials.
        sentence_end = token.endswith(".") and token.count(".") == 1 and len(token) > 2
        if sentence_end:
            token = token[:-1]
        possessive = bool(_POSSESSIVE_RE.search(token))
        token = _POSSESSIVE_RE.sub("", token)
        if _CAP_WORD_RE.fullmatch(token) and token.upper() not in _POSITION_WORDS:
            run.append(token)
            if sentence_end or possessive or w[-1:] in ",:;!?)":
                flush()
        else:
            flush()
    flush()
    return _dedupe_hits(hits)


class PlayerDirectory:
    """In-memory, read-only view of eligible players for name resolution."""

    def __init__(self, players: Iterable[PlayerRecord]):
        self._players: List[PlayerRecord] = sorted(
            (p for p in players if _eligible(p)), key=lambda p: p.player_id
        )
        self._by_first_last: Dict[Tuple[str, str], List[PlayerRecord]] = {}
        self._by_last: Dict[str, List[Tuple[str, PlayerRecord]]] = {}
        self._by_alias: Dict[str, List[PlayerRecord]] = {}
        for p in self._players:
            tokens = _name_tokens(p.full_name)
            if not tokens:
                continue
            if len(tokens) == 2:
                self._by_first_last.setdefault((tokens[0], tokens[1]), []).append(p)
            self._by_last.setdefault(tokens[-1], []).append((" ".join(tokens), p))
            for alias in p.aliases or []:
                key = re.sub(r"\s+", " ", alias or "").strip().lower()
                if key:
                    self._by_alias.setdefault(key, []).append(p)

    @classmethod
    def from_store(cls, store: Store) -> "PlayerDirectory":
        return cls(store.list_players(active_only=True))

    def __len__(self) -> int:
        return len(self._players)

    @staticmethod
    def _pick(candidates: Sequence[PlayerRecord], position: Optional[str]) -> Optional[PlayerRecord]:
        for p in candidates:
            if position is None or normalize_position(p.position) == position:
                return p
        return None

    def _exact(self, first: str, last: str, position: Optional[str]) -> Optional[PlayerRecord]:
        return self._pick(self._by_first_last.get((first, last), []), position)

    def _middle(self, first: str, last: str, position: Optional[str]) -> Optional[PlayerRecord]:
        rx = re.compile(rf"^{re.escape(first)}\s.*\s{re.escape(last)}$")
        return self._pick([p for joined, p in self._by_last.get(last, []) if rx.match(joined)], position)

    def _alias(self, name: str, position: Optional[str]) -> Optional[PlayerRecord]:
        key = re.sub(r"\s+", " ", name).strip().lower()
        found = self._pick(self._by_alias.get(key, []), position)
        if found:
            return found
        tokens = key.split(" ")
        for variant in sorted(NICKNAMES.get(tokens[0], ())):
            alt = " ".join([variant] + tokens[1:])
            found = self._pick(self._by_alias.get(alt, []), position)
            if found:
                return found
        return None

    def resolve_with_tier(self, hit: NameHit) -> Tuple[Optional[PlayerRecord], Optional[str]]:
        fl = pick_first_last(hit.name)
        if fl is None:
            return None, None
        first, last = fl
        hinted = normalize_position(hit.position or hit.section)
        cleaned = " ".join(_TOKEN_RE.findall(_TRAILING_PAREN_RE.sub("", hit.name)))
        positions = [hinted, None] if hinted else [None]
        for pos in positions:
            player = self._exact(first, last, pos)
            if player:
                return player, TIER_EXACT
            player = self._middle(first, last, pos)
            if player:
                return player, TIER_MIDDLE
            player = self._alias(cleaned, pos)
            if player:
                return player, TIER_ALIAS
        return None, None

    def resolve(self, hit: NameHit) -> Optional[PlayerRecord]:
        player, _ = self.resolve_with_tier(hit)
        return player

    def resolve_all(self, hits: Iterable[NameHit]) -> List[str]:
        """Distinct player ids in first-seen order; never raises."""
        out: List[str] = []
        for hit in hits:
            player = self.resolve(hit)
            if player and player.player_id not in out:
                out.append(player.player_id)
        return out
