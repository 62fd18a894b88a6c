"""Rate limiting using Redis sliding window."""

from fastapi import Request
from datetime import datetime, timezone
import redis.asyncio as redis
from typing import Optional
import structlog

from roastme.core.config import settings
from roastme.core.exceptions import RateLimitError


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


logger = structlog.get_logger()


class RateLimiter:
    """Redis-based sliding window rate limiter."""

    def __init__(self):
        self._redis: Optional[redis.Redis] = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url)
        return self._redis

    async def is_allowed(self, client_key: str) -> tuple[bool, int]:
        """
        Check if request is allowed for a client.

        Returns:
            tuple: (is_allowed, remaining_requests)
        """
        r = await self.get_redis()
        now = utcnow().timestamp()
        window_start = now - settings.rate_limit_window

        key = f"rate_limit:{client_key}"

        pipe = r.pipeline()
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zadd(key, {str(now): now})
        pipe.zcard(key)
        pipe.expire(key, settings.rate_limit_window + 1)

        results = await pipe.execute()
        request_count = results[2]

        remaining = max(0, settings.rate_limit_requests - request_count)
        is_allowed = request_count <= settings.rate_limit_requests

        return is_allowed, remaining

    async def close(self):
        if self._redis:
            await self._redis.close()


rate_limiter = RateLimiter()


def client_key_for(request: Request) -> Optional[str]:
    """Identify the caller: user key header, then anonymous cookie, then IP."""
    key = request.headers.get("X-User-Key") or request.cookies.get("anon_user_id")
    if key:
        return key
    if request.client:
        return f"ip:{request.client.host}"
    return None


async def check_rate_limit(request: Request):
    """FastAPI dependency for rate limiting."""
    client_key = client_key_for(request)
    if not client_key:
        return

    try:
        is_allowed, remaining = await rate_limiter.is_allowed(client_key)
    except redis.RedisError as e:
        # Redis down: fail open
        logger.warning(
            "Rate limiter Redis error - allowing request (fail-open)",
            client_key=client_key[:8] + "...",
            error=str(e),
        )
        return
    except Exception as e:
        logger.error(
            "Rate limiter unexpected error",
            client_key=client_key[:8] + "...",
            error=str(e),
        )
        return

    request.state.rate_limit_remaining = remaining
    request.state.rate_limit_limit = settings.rate_limit_requests

    if not is_allowed:
        raise RateLimitError(retry_after=settings.rate_limit_window)
