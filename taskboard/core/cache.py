"""
Permission cache collaborator.

The resolver caches role-derived permission sets per (subject, organisation).
Every mutating operation calls one of the invalidate hooks after it commits:

- invalidate(subject, organisation_id): assignment or override changes
- invalidate_organisation(organisation_id): organisation template changes
- invalidate_all(): system template changes

No cross-node consistency protocol is defined here; RedisPermissionCache simply
shares one keyspace between processes.
"""
import json
import time
import threading
from typing import Optional, Protocol

import redis.asyncio as redis

from taskboard.core import config
from taskboard.core.subjects import Subject
from taskboard.utils import get_logger


log = get_logger(__name__)

KEY_PREFIX = "taskboard:perm"


def cache_key(subject: Subject, organisation_id: str) -> str:
    return f"{KEY_PREFIX}:{organisation_id}:{subject.type}:{subject.id}"


class PermissionCache(Protocol):
    async def get(self, subject: Subject, organisation_id: str) -> Optional[frozenset[str]]: ...

    async def set(self, subject: Subject, organisation_id: str, permissions: frozenset[str]) -> None: ...

    async def invalidate(self, subject: Subject, organisation_id: str) -> None: ...

    async def invalidate_organisation(self, organisation_id: str) -> None: ...

    async def invalidate_all(self) -> None: ...


class NullPermissionCache:
    """Cache that never stores anything."""

    async def get(self, subject: Subject, organisation_id: str) -> Optional[frozenset[str]]:
        return None

    async def set(self, subject: Subject, organisation_id: str, permissions: frozenset[str]) -> None:
        pass

    async def invalidate(self, subject: Subject, organisation_id: str) -> None:
        pass

    async def invalidate_organisation(self, organisation_id: str) -> None:
        pass

    async def invalidate_all(self) -> None:
        pass


class InMemoryPermissionCache:
    """
    Process-local TTL cache.

    Shared by request workers of one process; a lock guards the dict because
    thread-pool workers may touch it concurrently.
    """

    def __init__(self, ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[tuple[str, str, str], tuple[float, frozenset[str]]] = {}
        self._lock = threading.Lock()

    async def get(self, subject: Subject, organisation_id: str) -> Optional[frozenset[str]]:
        key = (organisation_id, subject.type, subject.id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, permissions = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return permissions

    async def set(self, subject: Subject, organisation_id: str, permissions: frozenset[str]) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[(organisation_id, subject.type, subject.id)] = (
                time.monotonic() + self.ttl_seconds,
                frozenset(permissions),
            )

    async def invalidate(self, subject: Subject, organisation_id: str) -> None:
        with self._lock:
            self._entries.pop((organisation_id, subject.type, subject.id), None)

    async def invalidate_organisation(self, organisation_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == organisation_id]:
                del self._entries[key]

    async def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisPermissionCache:
    """Redis-backed cache; connection failures degrade to cache misses."""

    def __init__(self, url: str = config.REDIS_URL, ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def get(self, subject: Subject, organisation_id: str) -> Optional[frozenset[str]]:
        try:
            raw = await self.client.get(cache_key(subject, organisation_id))
        except redis.ConnectionError:
            return None
        if raw is None:
            return None
        return frozenset(json.loads(raw))

    async def set(self, subject: Subject, organisation_id: str, permissions: frozenset[str]) -> None:
        if self.ttl_seconds <= 0:
            return
        try:
            await self.client.setex(
                cache_key(subject, organisation_id),
                self.ttl_seconds,
                json.dumps(sorted(permissions)),
            )
        except redis.ConnectionError:
            log.warning("Redis unavailable, permission set for %s not cached", subject)

    async def invalidate(self, subject: Subject, organisation_id: str) -> None:
        try:
            await self.client.delete(cache_key(subject, organisation_id))
        except redis.ConnectionError:
            log.warning("Redis unavailable, could not invalidate %s in %s", subject, organisation_id)

    async def invalidate_organisation(self, organisation_id: str) -> None:
        await self._invalidate_pattern(f"{KEY_PREFIX}:{organisation_id}:*")

    async def invalidate_all(self) -> None:
        await self._invalidate_pattern(f"{KEY_PREFIX}:*")

    async def _invalidate_pattern(self, pattern: str) -> None:
        try:
            keys = [key async for key in self.client.scan_iter(match=pattern)]
            if keys:
                await self.client.delete(*keys)
        except redis.ConnectionError:
            log.warning("Redis unavailable, could not invalidate pattern %s", pattern)
