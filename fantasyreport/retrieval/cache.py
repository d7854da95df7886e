"""TTL cache with stale fallback for section pages.

The cache is an explicit collaborator handed to `SectionService`; nothing
is kept at module level, so tests build their own with a fake clock.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cachelib import BaseCache, SimpleCache

from fantasyreport.retrieval.sections import SectionPage, get_section
from fantasyreport.storage.base import StorageError, Store

logger = logging.getLogger(__name__)


@dataclass
class CacheResult:
    value: Any
    hit: bool = False
    stale: bool = False


class SectionCache:
    def __init__(
        self,
        backend: Optional[BaseCache] = None,
        ttl: float = 60,
        stale_ttl: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = max(0, ttl)
        self.stale_ttl = max(self.ttl, stale_ttl)
        self.clock = clock
        # Backend expiry only evicts; freshness is judged against `clock`.
        self.backend = backend or SimpleCache(threshold=500, default_timeout=int(self.stale_ttl) + 1)
        self._lock = threading.Lock()

    def _entry(self, key: str):
        entry = self.backend.get(key)
        if not entry:
            return None
        value, stored_at = entry
        return value, self.clock() - stored_at

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> CacheResult:
        if self.ttl <= 0:
            return CacheResult(loader())

        entry = self._entry(key)
        if entry is not None and entry[1] < self.ttl:
            return CacheResult(entry[0], hit=True)

        try:
            value = loader()
        except Exception as e:
            if entry is not None and entry[1] <= self.stale_ttl:
                logger.warning(f"Serving stale cache entry for {key} after load failure: {e}")
                return CacheResult(entry[0], hit=True, stale=True)
            raise

        with self._lock:
            self.backend.set(key, (value, self.clock()), timeout=int(self.stale_ttl) + 1)
        return CacheResult(value)

    def clear(self) -> None:
        self.backend.clear()


def cache_key(key: str, params: Dict[str, Any]) -> str:
    return "section:" + json.dumps({"key": key, **params}, sort_keys=True, default=str)


class SectionService:
    """Cached section retrieval that degrades instead of raising."""

    def __init__(self, store: Store, cache: Optional[SectionCache] = None):
        self.store = store
        self.cache = cache or SectionCache()

    def get_section(self, key: Optional[str], **params) -> SectionPage:
        def load() -> SectionPage:
            page = get_section(self.store, key, **params)
            if page.degraded:
                raise StorageError(page.error or "storage unavailable")
            return page

        try:
            result = self.cache.get_or_load(cache_key(key or "", params), load)
        except StorageError as e:
            return SectionPage(items=[], degraded=True, error=str(e))

        page: SectionPage = result.value
        if result.stale:
            return SectionPage(items=list(page.items), degraded=True, error="storage unavailable; serving cached results", cached=True)
        if result.hit:
            return SectionPage(items=list(page.items), cached=True)
        return page
