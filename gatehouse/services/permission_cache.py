"""Permission decision cache.

Maps (user, permission slug) to a boolean with a TTL. The cache is never a
source of truth: any entry can be dropped and recomputed from the store. It is
injected into the RBAC services rather than held as a module global.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple
import threading
import time
import zlib

import redis
import structlog

from gatehouse.config import settings

logger = structlog.get_logger()

KEY_PREFIX = "perm"


def cache_key(user_id: str, permission_slug: str) -> str:
    """Namespaced key; one user's entries never share a key with another's"""
    return f"{KEY_PREFIX}:{user_id}:{permission_slug}"


class PermissionCache(ABC):
    """Key-value store for permission decisions"""

    @abstractmethod
    def get(self, user_id: str, permission_slug: str) -> Optional[bool]:
        """Return the cached decision, or None on a miss"""

    @abstractmethod
    def set(self, user_id: str, permission_slug: str, allowed: bool, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def delete(self, user_id: str, permission_slug: str) -> None:
        pass

    @abstractmethod
    def invalidate_user(self, user_id: str) -> None:
        """Drop every entry belonging to one user"""

    @abstractmethod
    def clear(self) -> None:
        pass


class InMemoryPermissionCache(PermissionCache):
    """Process-local cache.

    Entries are grouped per user and users are spread over lock stripes, so
    writers for unrelated users do not contend on one lock.
    """

    def __init__(self, stripes: int = 64, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._stripes = [(threading.Lock(), {}) for _ in range(stripes)]

    def _stripe(self, user_id: str) -> Tuple[threading.Lock, Dict[str, Dict[str, Tuple[bool, float]]]]:
        return self._stripes[zlib.crc32(user_id.encode()) % len(self._stripes)]

    def get(self, user_id: str, permission_slug: str) -> Optional[bool]:
        lock, users = self._stripe(user_id)
        with lock:
            entries = users.get(user_id)
            if not entries or permission_slug not in entries:
                return None
            allowed, expires_at = entries[permission_slug]
            if expires_at <= self._clock():
                del entries[permission_slug]
                return None
            return allowed

    def set(self, user_id: str, permission_slug: str, allowed: bool, ttl_seconds: int) -> None:
        lock, users = self._stripe(user_id)
        with lock:
            users.setdefault(user_id, {})[permission_slug] = (allowed, self._clock() + ttl_seconds)

    def delete(self, user_id: str, permission_slug: str) -> None:
        lock, users = self._stripe(user_id)
        with lock:
            entries = users.get(user_id)
            if entries:
                entries.pop(permission_slug, None)

    def invalidate_user(self, user_id: str) -> None:
        lock, users = self._stripe(user_id)
        with lock:
            users.pop(user_id, None)

    def clear(self) -> None:
        for lock, users in self._stripes:
            with lock:
                users.clear()


class RedisPermissionCache(PermissionCache):
    """Cache shared by every process pointed at the same Redis.

    Redis failures degrade to cache misses; the store stays authoritative.
    """

    def __init__(self, client: "redis.Redis"):
        self._client = client

    def get(self, user_id: str, permission_slug: str) -> Optional[bool]:
        try:
            value = self._client.get(cache_key(user_id, permission_slug))
        except redis.RedisError as e:
            logger.warning("permission_cache_get_failed", error=str(e))
            return None
        if value is None:
            return None
        return value in (b"1", "1")

    def set(self, user_id: str, permission_slug: str, allowed: bool, ttl_seconds: int) -> None:
        try:
            self._client.setex(cache_key(user_id, permission_slug), ttl_seconds, "1" if allowed else "0")
        except redis.RedisError as e:
            logger.warning("permission_cache_set_failed", error=str(e))

    def delete(self, user_id: str, permission_slug: str) -> None:
        try:
            self._client.delete(cache_key(user_id, permission_slug))
        except redis.RedisError as e:
            logger.warning("permission_cache_delete_failed", user_id=user_id, error=str(e))

    def invalidate_user(self, user_id: str) -> None:
        # Stale entries left behind by a failure expire with their TTL
        try:
            keys = list(self._client.scan_iter(match=f"{KEY_PREFIX}:{user_id}:*"))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("permission_cache_invalidate_failed", user_id=user_id, error=str(e))

    def clear(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{KEY_PREFIX}:*"))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("permission_cache_clear_failed", error=str(e))


def build_permission_cache() -> PermissionCache:
    """Create the cache selected by PERMISSION_CACHE_BACKEND"""
    if settings.PERMISSION_CACHE_BACKEND == "redis":
        try:
            client = redis.from_url(settings.REDIS_URL)
            client.ping()
            logger.info("Redis connected for permission cache")
            return RedisPermissionCache(client)
        except redis.RedisError as e:
            logger.warning("Redis not available for permission cache, using memory", error=str(e))
    return InMemoryPermissionCache()
