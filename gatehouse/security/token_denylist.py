"""Revoked token identifiers.

Each entry lives exactly as long as the token it revokes could still verify.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict
import threading
import time

import redis
import structlog

from gatehouse.config import settings
from gatehouse.errors import ServiceUnavailableError

logger = structlog.get_logger()


class TokenDenyList(ABC):
    @abstractmethod
    def revoke(self, jti: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def is_revoked(self, jti: str) -> bool:
        pass


class InMemoryTokenDenyList(TokenDenyList):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, float] = {}

    def revoke(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[jti] = self._clock() + ttl_seconds

    def is_revoked(self, jti: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[jti]
                return False
            return True


class RedisTokenDenyList(TokenDenyList):
    """Fails closed: when Redis cannot answer, neither revocation nor the
    revocation check pretends to have succeeded."""

    def __init__(self, client: "redis.Redis"):
        self._client = client

    def revoke(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            self._client.setex(f"revoked-token:{jti}", ttl_seconds, "1")
        except redis.RedisError as e:
            logger.error("token_revoke_failed", jti=jti, error=str(e))
            raise ServiceUnavailableError("Token revocation is temporarily unavailable")

    def is_revoked(self, jti: str) -> bool:
        try:
            return bool(self._client.exists(f"revoked-token:{jti}"))
        except redis.RedisError as e:
            logger.error("token_revocation_check_failed", jti=jti, error=str(e))
            raise ServiceUnavailableError("Token verification is temporarily unavailable")


def build_token_denylist() -> TokenDenyList:
    """Deny-list on Redis when the permission cache uses Redis, else in memory"""
    if settings.PERMISSION_CACHE_BACKEND == "redis":
        try:
            client = redis.from_url(settings.REDIS_URL)
            client.ping()
            return RedisTokenDenyList(client)
        except redis.RedisError as e:
            logger.warning("Redis not available for token deny-list, using memory", error=str(e))
    return InMemoryTokenDenyList()
