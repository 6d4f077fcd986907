"""Rate limiting middleware"""

from typing import Optional
from fastapi import Request, HTTPException, status
import redis
import structlog

from gatehouse.config import settings

logger = structlog.get_logger()

# Set by init_redis(); None disables rate limiting
redis_client: Optional[redis.Redis] = None


def _build_rate_limit_subject(request: Request, identifier: Optional[str] = None) -> str:
    """Client IP, plus a normalized identifier (e.g. the login name) when given"""
    client_ip = request.client.host if request.client else "unknown"
    if identifier:
        normalized = identifier.strip().lower()
        if normalized:
            return f"{client_ip}:{normalized}"
    return client_ip


async def enforce_rate_limit(
    request: Request,
    key: str,
    limit: int,
    window: int = 60,
    identifier: Optional[str] = None,
) -> None:
    """Fixed-window counter per (key, subject)"""
    if not redis_client:
        return

    subject = _build_rate_limit_subject(request, identifier=identifier)
    redis_key = f"rate_limit:{key}:{subject}"
    try:
        current = redis_client.incr(redis_key)
        if current == 1:
            redis_client.expire(redis_key, window)
    except redis.RedisError as e:
        logger.warning("rate_limit_unavailable", key=key, error=str(e))
        return

    if current > limit:
        logger.info("rate_limit_exceeded", key=key, subject=subject)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded: {limit} requests per {window} seconds",
        )


def init_redis():
    """Connect the rate limiter; it stays disabled if Redis is unreachable"""
    global redis_client
    try:
        redis_client = redis.from_url(settings.REDIS_URL)
        redis_client.ping()
        logger.info("Redis connected for rate limiting")
    except (redis.RedisError, ValueError) as e:
        logger.warning("Redis not available for rate limiting", error=str(e))
        redis_client = None


def rate_limit(key: str, limit: int, window: int = 60):
    """Dependency factory applying a per-route limit"""
    async def rate_limiter(request: Request):
        await enforce_rate_limit(request=request, key=key, limit=limit, window=window)

    return rate_limiter
