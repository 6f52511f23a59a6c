"""Per-user send rate limiting (Redis preferred, in-memory fallback)."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Deque, Dict

import redis  # type: ignore

from core import config
from core.config import REDIS_URL
from core.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int


class RateLimiter:
    """Fixed-window counter in Redis; sliding window in memory when Redis is down."""

    def __init__(self, redis_url: str = REDIS_URL, use_redis: bool = True):
        self._lock = Lock()
        self._buckets: Dict[str, Deque[float]] = defaultdict(deque)
        self._redis_url = redis_url
        self._use_redis = use_redis

    def allow(self, *, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        limit = int(limit)
        window_seconds = int(window_seconds)
        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(allowed=True, retry_after_seconds=0)

        if self._use_redis:
            try:
                return self._allow_redis(key, limit, window_seconds)
            except redis.RedisError as exc:
                logger.warning("Rate limiter falling back to memory: %s", exc)

        return self._allow_memory(key, limit, window_seconds)

    def _allow_redis(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        r = redis.Redis.from_url(self._redis_url)
        pipe = r.pipeline()
        pipe.incr(key, 1)
        pipe.ttl(key)
        current, ttl = pipe.execute()
        if ttl == -1:
            r.expire(key, window_seconds)
            ttl = window_seconds
        if int(current) <= limit:
            return RateLimitResult(allowed=True, retry_after_seconds=0)
        retry_after = int(ttl if ttl and ttl > 0 else window_seconds)
        return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))

    def _allow_memory(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = time.time()
        with self._lock:
            bucket = self._buckets[key]
            cutoff = now - window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) < limit:
                bucket.append(now)
                return RateLimitResult(allowed=True, retry_after_seconds=0)
            retry_after = int((bucket[0] + window_seconds) - now)
            return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))


default_rate_limiter = RateLimiter()


def enforce_message_rate_limit(user_id: int, limiter: RateLimiter = None) -> None:
    """Raise ``RateLimited`` once ``user_id`` exceeds the per-minute send budget."""
    limiter = limiter or default_rate_limiter
    result = limiter.allow(
        key=f"rl:messages:{user_id}",
        limit=config.MESSAGE_RATE_LIMIT_PER_MINUTE,
        window_seconds=60,
    )
    if not result.allowed:
        raise RateLimited(
            f"Message rate limit of {config.MESSAGE_RATE_LIMIT_PER_MINUTE}/min exceeded",
            retry_after_seconds=result.retry_after_seconds,
        )
