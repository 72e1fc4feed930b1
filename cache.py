"""
Relay Cache Layer
Fingerprint-keyed in-memory cache for completed query responses.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from models import QueryRequest, QueryResponse

logger = logging.getLogger(__name__)


def fingerprint(request: QueryRequest) -> str:
    """
    SHA-256 over (query, model, task type), as 64 lowercase hex characters.

    request_id and model_version are not part of the key: two
    requests that differ only in those share a slot.
    """
    data = {
        "query": request.query or "",
        "model": str(request.model) if request.model is not None else "",
        "task_type": str(request.task_type) if request.task_type is not None else "",
    }
    canonical = json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """
    In-memory response cache with write-time TTL and an LRU size bound.

    Reads do not extend an entry's lifetime. Stored responses are never
    mutated; callers get copies.
    """

    def __init__(
        self,
        enabled: bool = True,
        ttl_seconds: int = 300,
        max_items: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.max_items = max_items
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[QueryResponse, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        logger.info(f"Cache initialized: enabled={enabled}, ttl={ttl_seconds}s, maxItems={max_items}")

    def get(self, request: QueryRequest) -> Optional[QueryResponse]:
        """Return the stored response for this request, or None on miss/expiry."""
        if not self.enabled:
            return None

        key = fingerprint(request)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug(f"Cache miss for key: {key}")
                return None

            response, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                self._evictions += 1
                logger.debug(f"Cache entry expired for key: {key}")
                return None

            self._entries.move_to_end(key)
            self._hits += 1

        logger.debug(f"Cache hit for key: {key}")
        return response.model_copy(deep=True)

    def set(self, request: QueryRequest, response: QueryResponse) -> None:
        """Store (or overwrite) the response for this request."""
        if not self.enabled or self.max_items <= 0:
            return

        key = fingerprint(request)
        stored = response.model_copy(deep=True)
        with self._lock:
            self._entries[key] = (stored, self._clock() + self.ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_items:
                self._entries.popitem(last=False)
                self._evictions += 1

        logger.debug(f"Added response to cache with key: {key}, model: {response.model}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        """Return cache statistics for monitoring."""
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total * 100) if total > 0 else 0

            return {
                "total_requests": total,
                "cache_hits": self._hits,
                "cache_misses": self._misses,
                "evictions": self._evictions,
                "hit_rate_percent": round(hit_rate, 2),
                "stored_items": len(self._entries),
            }
