"""Loads the NFL player directory from Sleeper's public players endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fantasyreport.ingestion.http_client import FetchError, HttpClient
from fantasyreport.storage.base import PlayerRecord, Store

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _team_of(raw: Dict[str, Any]) -> Optional[str]:
    team = _clean(raw.get("team")) or _clean(raw.get("team_abbr"))
    return team.upper() if team else None


def _full_name(raw: Dict[str, Any]) -> Optional[str]:
    full = _clean(raw.get("full_name"))
    if full:
        return full
    parts = " ".join(p for p in (_clean(raw.get("first_name")), _clean(raw.get("last_name"))) if p)
    if parts:
        return parts
    # Team defenses come without names.
    if (_clean(raw.get("position")) or "").upper() == "DEF":
        team = _team_of(raw) or (_clean(raw.get("player_id")) or "").upper()
        if team:
            return f"{team} D/ST"
    return None


def _search_names(full_name: str, raw: Dict[str, Any]) -> List[str]:
    names: List[str] = []

    def add(value: Any) -> None:
        text = _clean(value)
        if text and text not in names:
            names.append(text)

    add(full_name)
    first, last = _clean(raw.get("first_name")), _clean(raw.get("last_name"))
    add(last)
    if first and last:
        add(f"{first} {last}")
    if (_clean(raw.get("position")) or "").upper() == "DEF":
        team = _team_of(raw) or (_clean(raw.get("player_id")) or "").upper()
        if team:
            add(f"{team} D/ST")
            add(f"{team} Defense")
            add(team)
    for alias in raw.get("aliases") or []:
        add(alias)
    return names


def to_player_record(raw: Dict[str, Any]) -> Optional[PlayerRecord]:
    """One Sleeper payload entry as a PlayerRecord; None for nameless entries."""
    player_id = _clean(raw.get("player_id"))
    if not player_id:
        return None
    full_name = _full_name(raw)
    if not full_name:
        return None
    return PlayerRecord(
        player_id=player_id,
        full_name=full_name,
        position=_clean(raw.get("position")),
        team=_team_of(raw),
        active=raw.get("active") is not False,
        first_name=_clean(raw.get("first_name")),
        last_name=_clean(raw.get("last_name")),
        aliases=_search_names(full_name, raw),
    )


def fetch_sleeper_players(http: HttpClient, url: str) -> List[PlayerRecord]:
    payload = http.get_json(url)
    if isinstance(payload, dict):
        entries = list(payload.values())
    elif isinstance(payload, list):
        entries = payload
    else:
        raise FetchError(url, f"unexpected players payload: {type(payload).__name__}")

    players = []
    for raw in entries:
        if not isinstance(raw, dict):
            continue
        record = to_player_record(raw)
        if record is not None:
            players.append(record)
    return players


def load_players(store: Store, http: HttpClient, url: str) -> int:
    players = fetch_sleeper_players(http, url)
    logger.info(f"Fetched {len(players)} players from {url}")
    count = store.upsert_players(players)
    logger.info(f"Upserted {count} players")
    return count
