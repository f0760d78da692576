import logging
from dataclasses import dataclass

import redis as _redis

from app.utils import now_ts

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RedisRateLimiter:
    """Fixed-window request counter kept in redis, one key per client and path."""

    def __init__(self, redis, limit: int, window_seconds: int = 60, prefix: str = "rl"):
        self.redis = redis
        self.limit = max(1, limit)
        self.window = max(1, window_seconds)
        self.prefix = prefix

    def check(self, identifier: str) -> RateLimitResult:
        window_id = now_ts() // self.window
        key = f"{self.prefix}:{identifier}:{window_id}"
        try:
            pipe = self.redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window)
            count, _ = pipe.execute()
        except _redis.RedisError:
            logger.warning("rate limiter unavailable; allowing request", exc_info=True)
            return RateLimitResult(allowed=True, remaining=self.limit)
        count = int(count)
        if count > self.limit:
            retry_after = self.window - (now_ts() % self.window)
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)
        return RateLimitResult(allowed=True, remaining=self.limit - count)
