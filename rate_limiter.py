"""
Rate Limiter - Token bucket algorithm, global and per-client, in process.

RESPONSIBILITY:
    Admission control for every endpoint. A request costs one token; tokens
    refill continuously at requests_per_minute / 60 per second, up to `burst`.

STATE:
    One global bucket plus a directory of per-client buckets keyed by client
    IP. The directory is bounded (MAX_CLIENTS) so a flood of spoofed
    X-Forwarded-For values cannot grow memory without limit. Pruning drops
    the oldest half; it is an anti-DoS bound, not a fairness policy.

EDGE CASES:
    - burst = 0: no token is ever available, allow() is always False
    - requests_per_minute = 0: once drained, the bucket never refills
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

MAX_CLIENTS = 10_000
CLEANUP_MIN_CLIENTS = 100
CLEANUP_INTERVAL_SEC = 300.0


class TokenBucket:
    """
    Single token bucket. All mutation happens under the bucket's own lock.

    Invariant: 0 <= tokens <= max_tokens after every call.
    """

    def __init__(
        self,
        max_tokens: float,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_tokens = float(max(0.0, max_tokens))
        self.refill_per_second = float(max(0.0, refill_per_second))
        self.tokens = self.max_tokens
        self._clock = clock
        self.last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_per_second)
        self.last_refill = now

    def try_acquire(self) -> bool:
        """Consume one token if available."""
        with self._lock:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self.tokens


class RateLimiterService:
    """
    Global and per-client admission.

    allow_client() can be overridden with a predicate (set_allow_client_func)
    which then fully replaces the bucket path; tests use this to force
    allow/deny without timing games.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        burst: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_minute = requests_per_minute
        self.burst = burst
        self._clock = clock
        self._global = self._new_bucket()

        self._clients: Dict[str, TokenBucket] = {}
        self._clients_lock = threading.Lock()
        self._last_cleanup = clock()
        self._allow_client_func: Optional[Callable[[str], bool]] = None

        logger.info(f"Rate limiter initialized: rpm={requests_per_minute}, burst={burst}")

    def _new_bucket(self) -> TokenBucket:
        return TokenBucket(
            max_tokens=self.burst,
            refill_per_second=self.requests_per_minute / 60.0,
            clock=self._clock,
        )

    def allow(self) -> bool:
        """Global admission check."""
        return self._global.try_acquire()

    def allow_client(self, client_id: str) -> bool:
        """Per-client admission check."""
        if self._allow_client_func is not None:
            return self._allow_client_func(client_id)

        with self._clients_lock:
            bucket = self._clients.get(client_id)
            if bucket is None:
                bucket = self._new_bucket()
                self._clients[client_id] = bucket
            self._maybe_prune()

        allowed = bucket.try_acquire()
        if not allowed:
            logger.debug(f"Rate limited client {client_id}")
        return allowed

    def set_allow_client_func(self, func: Optional[Callable[[str], bool]]) -> None:
        self._allow_client_func = func

    def client_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    def _maybe_prune(self) -> None:
        """Drop half the directory when it is over the bound or due for periodic cleanup. Caller holds the lock."""
        size = len(self._clients)
        now = self._clock()
        overdue = size > CLEANUP_MIN_CLIENTS and now - self._last_cleanup >= CLEANUP_INTERVAL_SEC
        if size <= MAX_CLIENTS and not overdue:
            return

        # dicts iterate in insertion order, so this removes the oldest clients
        victims = list(self._clients)[: size // 2]
        for client_id in victims:
            del self._clients[client_id]
        self._last_cleanup = now
        logger.info(f"Pruned {len(victims)} client rate limiters ({len(self._clients)} remain)")
