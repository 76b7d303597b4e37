"""In-memory, size-bounded cache of whole scan results."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import ScanConfig
from .models import ScanOptions, ScanResult

logger = logging.getLogger("imgscan")

EVICTION_FRACTION = 0.2


def fingerprint(url: str, options: ScanOptions) -> str:
    """Stable key for a (normalized target URL, options) pair."""
    payload = json.dumps({"url": url, "options": options.to_dict()}, sort_keys=True)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    value: ScanResult
    created_at: float
    ttl: float
    size: int

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class ResultCache:
    """Best-effort memo of scan results with per-entry TTL.

    Entries are kept in insertion order; when an insert would push the
    approximate footprint past ``max_bytes`` the oldest fifth is evicted.
    """

    def __init__(self, config: ScanConfig, clock: Callable[[], float] = time.time) -> None:
        self.default_ttl = config.cache_ttl
        self.max_bytes = config.cache_max_bytes
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.size = 0
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[ScanResult]:
        entry = self._entries.get(key)
        if entry is not None and entry.expired(self._clock()):
            self.evict(key)
            entry = None
        if entry is None:
            self.misses += 1
            logger.debug("Cache miss for %s", key)
            return None
        self.hits += 1
        logger.debug("Cache hit for %s", key)
        return entry.value

    def set(self, key: str, value: ScanResult, ttl: Optional[float] = None) -> bool:
        try:
            size = len(json.dumps(value.to_dict()).encode("utf-8"))
            self.evict(key)
            if self.size + size > self.max_bytes:
                self.evict_oldest()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=self._clock(),
                ttl=self.default_ttl if ttl is None else ttl,
                size=size,
            )
            self.size += size
            logger.debug("Cached %s (%d bytes)", key, size)
            return True
        except (TypeError, ValueError) as exc:
            logger.error("Failed to cache %s: %s", key, exc)
            return False

    def evict(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self.size -= entry.size
        return True

    def evict_oldest(self) -> int:
        count = math.ceil(len(self._entries) * EVICTION_FRACTION)
        for key in list(self._entries)[:count]:
            self.evict(key)
        if count:
            logger.info("Evicted %d oldest cache entries", count)
        return count

    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "items": len(self._entries),
            "size": self.size,
        }
