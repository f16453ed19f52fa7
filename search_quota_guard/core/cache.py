"""
Short-lived response cache.

Successful search responses are memoized for a fixed TTL. Lookups are
free: a hit never touches the usage ledger or the governor.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Tuple

from .fingerprint import compute_fingerprint

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=5)
DEFAULT_MAX_ENTRIES = 256

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    """A cached response and when it was stored."""
    key: CacheKey
    value: Any
    stored_at: datetime


class ResponseCache:
    """TTL cache keyed by (endpoint_id, parameter fingerprint).

    Expiry is lazy, checked only at lookup time. When max_entries is set,
    storing beyond the bound evicts the oldest stored entry.
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL, max_entries: Optional[int] = DEFAULT_MAX_ENTRIES):
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl = ttl
        self.max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()

    @staticmethod
    def make_key(endpoint_id: str, parameters: Mapping[str, Any]) -> CacheKey:
        return (endpoint_id, compute_fingerprint(parameters))

    def get(self, endpoint_id: str, parameters: Mapping[str, Any], now: datetime) -> Optional[Any]:
        """Return the cached value, or None on a miss or an expired entry."""
        key = self.make_key(endpoint_id, parameters)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now - entry.stored_at > self.ttl:
            del self._entries[key]
            return None
        logger.debug("Cache hit for %s", endpoint_id)
        return entry.value

    def put(self, endpoint_id: str, parameters: Mapping[str, Any], value: Any, now: datetime) -> None:
        key = self.make_key(endpoint_id, parameters)
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=now)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def purge_expired(self, now: datetime) -> int:
        """Drop every expired entry and return how many were removed."""
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at > self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
