# =============================================================================
# Rate Limiter — Redis-Based Sliding Window for Job Submissions
# =============================================================================
#
# Implements a sliding window counter using Redis sorted sets (ZSET).
# Each submission adds an entry with its timestamp as the score. On each
# check, entries older than the window are pruned and the remaining
# count is compared against the limit.
#
# Graceful degradation: if Redis is unavailable, the check is bypassed
# with a warning and the submission goes through.
#
# Uses Redis db 2 (db 0/1 reserved for Celery).
# =============================================================================

from __future__ import annotations

import logging
import time

from thesis_validator.config import settings
from thesis_validator.errors import RateLimitExceededError

logger = logging.getLogger(__name__)

# Lazy Redis connection
_redis_client = None


def _get_rate_limit_redis():
    """Lazily create and cache the async Redis client for rate limiting."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(
            settings.rate_limit_redis_url,
            decode_responses=True,
        )
    return _redis_client


class SubmissionRateLimiter:
    """Sliding-window limit on job submissions per key (engagement)."""

    def __init__(
        self,
        redis=None,
        limit: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        self._redis = redis
        self.limit = limit or settings.submission_rate_limit
        self.window_seconds = window_seconds or settings.submission_rate_window_seconds

    async def check(self, key: str) -> None:
        """
        Record a submission for `key` and enforce the window limit.

        Raises:
            RateLimitExceededError: The window already holds `limit` entries.

        No-op when Redis is unavailable (graceful degradation).
        """
        redis_key = f"ratelimit:submissions:{key}"

        try:
            r = self._redis or _get_rate_limit_redis()
            now = time.time()
            window_start = now - self.window_seconds

            pipe = r.pipeline()
            pipe.zremrangebyscore(redis_key, 0, window_start)
            pipe.zcard(redis_key)
            pipe.zadd(redis_key, {str(now): now})
            pipe.expire(redis_key, self.window_seconds + 10)
            results = await pipe.execute()

            current_count = results[1]  # zcard result

            if current_count >= self.limit:
                raise RateLimitExceededError(self.limit, self.window_seconds)

        except RateLimitExceededError:
            raise
        except Exception as e:
            logger.warning(
                "Rate limiter unavailable (Redis error): %s. "
                "Allowing submission through.",
                e,
            )
