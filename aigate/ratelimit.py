"""In-memory token bucket rate limiting.

Buckets refill continuously: a bucket that was last touched ``elapsed``
seconds ago gains ``elapsed * refill_rate`` tokens, capped at its capacity.
Each allowed request consumes exactly one token.

The bucket map lives in a :class:`BucketStore` that the limiter is handed
at construction time, so tests (and a future shared store) can swap it
without touching call sites.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable

logger = logging.getLogger("aigate.ratelimit")


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single :meth:`TokenBucketLimiter.acquire` call."""

    allowed: bool
    remaining: float
    #: Seconds until one whole token is available again; ``None`` when allowed.
    retry_after: float | None = None


class BucketStore:
    """Process-local bucket map with bounded growth.

    Entries are kept in least-recently-used order.  Two eviction rules keep
    the map from growing without bound:

    - more than *max_keys* entries: the least recently used key is dropped;
    - a key untouched for *idle_ttl* seconds is dropped on the next sweep.

    A dropped key behaves exactly like a key never seen before (it starts
    again at full capacity), so eviction only ever errs towards allowing.
    Callers must hold :attr:`lock` across a read-modify-write.
    """

    def __init__(self, max_keys: int = 100_000, idle_ttl: float | None = 3600.0) -> None:
        if max_keys <= 0:
            raise ValueError(f"max_keys must be positive, got {max_keys}")
        self.max_keys = max_keys
        self.idle_ttl = idle_ttl
        self.lock = threading.Lock()
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def get(self, key: str) -> TokenBucket | None:
        bucket = self._buckets.get(key)
        if bucket is not None:
            self._buckets.move_to_end(key)
        return bucket

    def put(self, key: str, bucket: TokenBucket) -> None:
        self._buckets[key] = bucket
        self._buckets.move_to_end(key)
        while len(self._buckets) > self.max_keys:
            evicted, _ = self._buckets.popitem(last=False)
            logger.debug("Evicted bucket %s (max_keys=%d)", evicted, self.max_keys)

    def sweep(self, now: float) -> int:
        """Drop buckets idle for longer than *idle_ttl*; return how many."""
        if self.idle_ttl is None:
            return 0
        dropped = 0
        # LRU order means the oldest entries are at the front.
        while self._buckets:
            key, bucket = next(iter(self._buckets.items()))
            if now - bucket.last_refill < self.idle_ttl:
                break
            del self._buckets[key]
            dropped += 1
        return dropped

    def snapshot(self, key: str) -> TokenBucket | None:
        """Return a copy of the stored state for *key* without touching it.

        The returned token count is as of the last refill, not as of now.
        Intended for status reporting and tests.
        """
        with self.lock:
            bucket = self._buckets.get(key)
            return replace(bucket) if bucket is not None else None

    def clear(self) -> None:
        with self.lock:
            self._buckets.clear()


class TokenBucketLimiter:
    """Refill-then-consume token bucket limiter keyed by arbitrary strings."""

    def __init__(
        self,
        store: BucketStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store if store is not None else BucketStore()
        self._clock = clock

    def acquire(self, key: str, capacity: float, refill_rate: float) -> RateLimitDecision:
        """Refill the bucket for *key*, then try to take one token from it.

        The refill timestamp is advanced on every call, allowed or not, so
        elapsed time is never counted twice.
        """
        if not key:
            raise ValueError("rate limit key must be a non-empty string")
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be positive, got {refill_rate}")

        with self.store.lock:
            now = self._clock()
            self.store.sweep(now)
            bucket = self.store.get(key)
            if bucket is None:
                bucket = TokenBucket(tokens=float(capacity), last_refill=now)

            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                self.store.put(key, bucket)
                return RateLimitDecision(allowed=True, remaining=bucket.tokens)

            self.store.put(key, bucket)
            retry_after = (1.0 - bucket.tokens) / refill_rate
            return RateLimitDecision(
                allowed=False, remaining=bucket.tokens, retry_after=retry_after,
            )

    def try_consume(self, key: str, capacity: float, refill_rate: float) -> bool:
        return self.acquire(key, capacity, refill_rate).allowed
