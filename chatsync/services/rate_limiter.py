"""
Rate Limiter

Per-user sliding-window throttling for outbound messaging operations
(create, update, delete, upload).
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from chatsync.config import settings
from chatsync.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    wait_seconds: int = 0


class RateLimiter(ABC):
    """Sliding-window limiter keyed by action and user"""

    def __init__(self, window_seconds: int = 60):
        self.window_seconds = window_seconds

    @abstractmethod
    async def check(self, key: str, limit: int) -> RateLimitDecision:
        """Record an attempt for ``key`` and report whether it is allowed"""

    async def enforce(self, action: str, user_id: str, limit: int) -> None:
        """
        Raise if ``user_id`` exceeded ``limit`` attempts of ``action`` in the window.

        A limit of zero or less disables throttling for the action.
        """
        if limit <= 0:
            return
        decision = await self.check(f"{action}:{user_id}", limit)
        if not decision.allowed:
            logger.warning(f"[RateLimit] Blocked {action} for user {user_id} (retry in {decision.wait_seconds}s)")
            raise RateLimitExceededError(
                f"Too many {action} requests. Please try again later.",
                retry_after=decision.wait_seconds
            )


class InMemoryRateLimiter(RateLimiter):
    """Process-local limiter. Counts are not shared between workers."""

    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        super().__init__(window_seconds)
        self._clock = clock
        self._attempts: Dict[str, List[float]] = {}
        self._last_sweep = clock()

    def _sweep(self, cutoff: float) -> None:
        # Drop keys whose newest attempt has left the window
        stale = [key for key, attempts in self._attempts.items() if not attempts or attempts[-1] <= cutoff]
        for key in stale:
            del self._attempts[key]

    async def check(self, key: str, limit: int) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self.window_seconds

        if now - self._last_sweep >= self.window_seconds:
            self._sweep(cutoff)
            self._last_sweep = now

        # Remove old attempts outside the window
        recent = [t for t in self._attempts.get(key, []) if t > cutoff]
        if len(recent) >= limit:
            self._attempts[key] = recent
            wait_s = max(0, int(recent[0] + self.window_seconds - now))
            return RateLimitDecision(allowed=False, wait_seconds=wait_s)

        recent.append(now)
        self._attempts[key] = recent
        return RateLimitDecision(allowed=True)

    def tracked_keys(self) -> int:
        return len(self._attempts)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._attempts.clear()
        else:
            self._attempts.pop(key, None)


class RedisRateLimiter(RateLimiter):
    """Limiter shared by every worker through a Redis sorted set per key"""

    def __init__(self, redis_url: str, window_seconds: int = 60):
        super().__init__(window_seconds)
        self._client = redis.from_url(redis_url, decode_responses=True)

    async def check(self, key: str, limit: int) -> RateLimitDecision:
        redis_key = f"chat_rate:{key}"
        now_ts = time.time()
        min_ts = now_ts - self.window_seconds

        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, 0, min_ts)
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.expire(redis_key, self.window_seconds + 5)
            _, count, oldest, _ = await pipe.execute()

            if int(count) >= limit:
                if not oldest:
                    return RateLimitDecision(allowed=False, wait_seconds=self.window_seconds)
                oldest_ts = float(oldest[0][1])
                wait_s = max(0, int((oldest_ts + self.window_seconds) - now_ts))
                return RateLimitDecision(allowed=False, wait_seconds=wait_s)

            await self._client.zadd(redis_key, {str(now_ts): now_ts})
            await self._client.expire(redis_key, self.window_seconds + 5)
            return RateLimitDecision(allowed=True)

        # If Redis is down/unreachable, do not block messaging
        except redis_exceptions.RedisError as e:
            logger.warning(f"Redis rate limiter unavailable, allowing request: {e}")
            return RateLimitDecision(allowed=True)


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create global rate limiter instance"""
    global _rate_limiter
    if _rate_limiter is None:
        if settings.RATE_LIMIT_BACKEND == "redis" and settings.REDIS_URL:
            logger.info("Using Redis rate limiter")
            _rate_limiter = RedisRateLimiter(settings.REDIS_URL, settings.RATE_LIMIT_WINDOW_SECONDS)
        else:
            _rate_limiter = InMemoryRateLimiter(settings.RATE_LIMIT_WINDOW_SECONDS)
    return _rate_limiter
