"""In-process response cache for direct-mode fetches.

Entries are immutable after insertion and expire a fixed time after they
were written, regardless of how often they are read. Expiry is enforced
lazily on read and, when an event loop is running, also scheduled with
``loop.call_later`` so idle entries do not linger.

The store is an ordinary object passed to whoever needs it, so tests get a
fresh cache (and a fake clock) instead of sharing module globals.
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from wallet_constants import RESPONSE_CACHE_TTL_S

logger = logging.getLogger(__name__)


def request_fingerprint(uri: str, uri_data: Any = None) -> str:
    """Stable cache key for a (uri, body) pair.

    The body is serialized with sorted keys so logically equal bodies hash
    the same no matter how the model ordered them.
    """
    body = "" if uri_data is None else json.dumps(uri_data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(f"{uri}\n{body}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float


class TTLStore:
    """Mapping with a per-entry time-to-live."""

    def __init__(self, ttl_s: float = RESPONSE_CACHE_TTL_S,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        ttl = self.ttl_s if ttl_s is None else ttl_s
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl)
        self._entries[key] = entry
        self._schedule_eviction(key, entry, ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _schedule_eviction(self, key: str, entry: CacheEntry, ttl: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(ttl, self._evict_if_current, key, entry)

    def _evict_if_current(self, key: str, entry: CacheEntry) -> None:
        # A newer set() for the same key owns its own timer
        if self._entries.get(key) is entry:
            del self._entries[key]
            logger.debug(f"Evicted cache entry {key[:12]}")
