"""Token bucket rate limiting.

One bucket per key, where a key is ``"<category>:<source>"``. Capacity and
refill are supplied by the caller for each category (optionally scaled by a
multiplier), so no category-specific logic lives here.
"""

import asyncio
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

from bridge.app.core.logging import get_logger

logger = get_logger(__name__)

# Rate limit categories
AUTHENTICATION = "authentication"
API_REQUESTS = "api_requests"
COMMAND_EXECUTION = "command_execution"


@dataclass(frozen=True)
class CategoryLimit:
    """Bucket parameters for one rate limit category."""
    capacity: int
    refill_per_minute: float

    @property
    def refill_per_second(self) -> float:
        return self.refill_per_minute / 60.0

    def scaled(self, multiplier: float) -> "CategoryLimit":
        """Return a copy with capacity and refill multiplied (e.g. per role)."""
        if multiplier == 1.0:
            return self
        return CategoryLimit(
            capacity=max(1, int(self.capacity * multiplier)),
            refill_per_minute=self.refill_per_minute * multiplier,
        )


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[int] = None


@dataclass
class TokenBucket:
    """Token bucket state. Invariant: 0 <= tokens <= capacity."""
    capacity: int
    refill_rate_per_second: float
    tokens: float
    last_refill: float = field(default_factory=time.time)

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(
                float(self.capacity),
                self.tokens + elapsed * self.refill_rate_per_second,
            )
        self.last_refill = max(self.last_refill, now)


class RateLimiter:
    """In-memory token bucket rate limiter.

    Buckets are created lazily (full) on first use of a key. The table is an
    OrderedDict so the least recently used entries can be evicted when
    ``max_entries`` is exceeded; refill and consume happen under one lock so
    concurrent callers on the same key never lose an update.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            max_entries: Maximum number of buckets to keep (LRU eviction)
            clock: Wall-clock source, injectable for tests
        """
        self._max_entries = max_entries
        self._clock = clock
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def _enforce_lru_limit(self) -> None:
        if len(self._buckets) >= self._max_entries:
            # Remove oldest 20% of entries
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._buckets))):
                self._buckets.popitem(last=False)

    async def try_consume(self, key: str, limit: CategoryLimit) -> RateLimitResult:
        """Refill the bucket for ``key`` and take one token if available."""
        async with self._lock:
            now = self._clock()

            bucket = self._buckets.get(key)
            if bucket is None:
                self._enforce_lru_limit()
                bucket = TokenBucket(
                    capacity=limit.capacity,
                    refill_rate_per_second=limit.refill_per_second,
                    tokens=float(limit.capacity),
                    last_refill=now,
                )
                self._buckets[key] = bucket
            else:
                self._buckets.move_to_end(key)
                # Parameters may change on configuration reload
                bucket.capacity = limit.capacity
                bucket.refill_rate_per_second = limit.refill_per_second
                bucket.tokens = min(bucket.tokens, float(bucket.capacity))

            bucket.refill(now)

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return RateLimitResult(
                    allowed=True,
                    limit=bucket.capacity,
                    remaining=int(bucket.tokens),
                )

            deficit = 1.0 - bucket.tokens
            # Round off float noise so 1 / (1/60) reports 60, not 61
            retry_after = max(1, math.ceil(round(deficit / bucket.refill_rate_per_second, 6)))
            return RateLimitResult(
                allowed=False,
                limit=bucket.capacity,
                remaining=0,
                retry_after=retry_after,
            )

    async def tokens(self, key: str) -> Optional[float]:
        """Current token count for ``key`` without refilling, or None."""
        async with self._lock:
            bucket = self._buckets.get(key)
            return bucket.tokens if bucket else None

    async def cleanup(self, idle_seconds: float = 600.0) -> int:
        """Drop buckets not used for ``idle_seconds`` that have refilled completely.

        Removing a full bucket is unobservable: it would be recreated full.
        """
        async with self._lock:
            now = self._clock()
            expired = []
            for key, bucket in self._buckets.items():
                if now - bucket.last_refill <= idle_seconds:
                    continue
                bucket.refill(now)
                if bucket.tokens >= bucket.capacity:
                    expired.append(key)
            for key in expired:
                del self._buckets[key]
            if expired:
                logger.debug(f"Evicted {len(expired)} idle rate limit buckets")
            return len(expired)
