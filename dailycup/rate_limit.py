"""
Sliding-window rate limiting behind an injectable counter store.

The contract is check-and-increment: each ``hit`` counts attempts inside the
trailing window and records the new one, refusing once ``limit`` is reached.
"""
from collections import defaultdict, deque
import logging
import threading
import time
from typing import Callable, Protocol
import uuid

import redis

from .config import Settings
from .errors import RateLimitError

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "ratelimit:"


class RateStore(Protocol):
    def hit(self, key: str, window: int, now: float) -> int:
        """Record an attempt and return how many attempts preceded it in the window."""
        ...


class MemoryRateStore:
    def __init__(self):
        self._hits: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str, window: int, now: float) -> int:
        with self._lock:
            q = self._hits[key]
            while q and q[0] <= now - window:
                q.popleft()
            count = len(q)
            q.append(now)
            return count


class RedisRateStore:
    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisRateStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def hit(self, key: str, window: int, now: float) -> int:
        rkey = f"{RATE_LIMIT_PREFIX}{key}"
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(rkey, "-inf", now - window)
        pipe.zcard(rkey)
        pipe.zadd(rkey, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(rkey, window + 1)
        results = pipe.execute()
        return int(results[1])


class RateLimiter:
    def __init__(self, store: RateStore, settings: Settings, clock: Callable[[], float] = time.time):
        self.store = store
        self.settings = settings
        self.clock = clock

    def hit(self, bucket: str, identity: str) -> None:
        limit, window = self.settings.rate_limit(bucket)
        count = self.store.hit(f"{bucket}:{identity}", window, self.clock())
        if count >= limit:
            logger.warning("Rate limit exceeded bucket=%s identity=%s", bucket, identity)
            raise RateLimitError(
                f"Too many requests. Maximum {limit} per {window} seconds.",
                retry_after_seconds=window,
            )


_store: RateStore | None = None


def get_rate_store(settings: Settings) -> RateStore:
    global _store
    if _store is None:
        _store = RedisRateStore.from_url(settings.REDIS_URL) if settings.REDIS_URL else MemoryRateStore()
    return _store
