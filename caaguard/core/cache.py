from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

CacheKey = Tuple[str, str, str]


@dataclass
class CacheEntry:
    expires_at: float
    value: Any


class TTLCache:
    """Small TTL-aware cache for DNS answers.

    Keyed by (server, qname, qtype). When full, the entry closest
    to expiry is evicted first.
    """

    def __init__(self, max_items: int = 2048):
        self._max = max_items
        self._data: Dict[CacheKey, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: CacheKey) -> Optional[Any]:
        entry = self._data.get(key)
        if not entry:
            return None
        if time.time() >= entry.expires_at:
            self._data.pop(key, None)
            return None
        return entry.value

    def set(self, key: CacheKey, value: Any, ttl: int) -> None:
        if ttl <= 0 or self._max <= 0:
            return
        if key not in self._data and len(self._data) >= self._max:
            oldest = min(self._data, key=lambda k: self._data[k].expires_at)
            self._data.pop(oldest, None)
        self._data[key] = CacheEntry(expires_at=time.time() + ttl, value=value)
