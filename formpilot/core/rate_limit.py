import threading
import time
from collections import defaultdict, deque
from functools import lru_cache

import redis

from formpilot.core.config import get_settings
from formpilot.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "formpilot:ratelimit:"


class RateLimiter:
    """Fixed-window counters in Redis, or per-process sliding buckets when Redis is down."""

    def __init__(self, redis_url: str | None = None) -> None:
        self._buckets: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._redis = None
        try:
            client = redis.from_url(redis_url or get_settings().redis_url, decode_responses=True)
            client.ping()
            self._redis = client
        except redis.RedisError:
            logger.warning("Redis unavailable for rate limiting; using in-memory buckets")

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        if self._redis is not None:
            try:
                current = self._redis.incr(KEY_PREFIX + key)
                if current == 1:
                    self._redis.expire(KEY_PREFIX + key, window_seconds)
                return current <= limit
            except redis.RedisError:
                logger.warning("Rate limit lookup failed; using in-memory bucket", extra={"extra": {"key": key}})
        return self._allow_local(key, limit, window_seconds)

    def _allow_local(self, key: str, limit: int, window_seconds: int) -> bool:
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets[key]
            while bucket and now - bucket[0] > window_seconds:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    return RateLimiter()
