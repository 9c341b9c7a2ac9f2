"""
Project snapshot cache.

Request-path consumers cache a small snapshot of each project (status,
environment) so they do not hit the database on every call. Suspension
transitions invalidate the snapshot after commit.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from capguard.config import Settings, get_settings
from capguard.db.base import utcnow

logger = logging.getLogger(__name__)


def snapshot_key(project_id: str) -> str:
    return f"project:{project_id}"


@dataclass
class CacheEntry:
    """A cached value with its expiry."""

    value: Any
    created_at: datetime = field(default_factory=utcnow)
    ttl_seconds: int | None = None

    @property
    def is_expired(self) -> bool:
        if self.ttl_seconds is None:
            return False
        return utcnow() > self.created_at + timedelta(seconds=self.ttl_seconds)


class SnapshotCache(ABC):
    """
    Base class for snapshot cache backends.

    Reads and writes are best effort and never raise. ``invalidate`` lets
    backend errors propagate so the caller can retry it.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def get(self, project_id: str) -> dict[str, Any] | None:
        """Get a project's snapshot, or None if absent or expired."""
        ...

    @abstractmethod
    def set(self, project_id: str, snapshot: dict[str, Any], ttl_seconds: int | None = None) -> bool:
        """Store a project's snapshot."""
        ...

    @abstractmethod
    def invalidate(self, project_id: str) -> bool:
        """
        Drop a project's snapshot.

        Returns:
            True if an entry was removed
        """
        ...

    @abstractmethod
    def clear(self) -> int:
        """Drop every snapshot and return how many were removed."""
        ...


class InMemorySnapshotCache(SnapshotCache):
    """Process-local cache; suitable for single-instance deployments and tests."""

    def __init__(self, default_ttl_seconds: int = 300) -> None:
        self._store: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "memory"

    def get(self, project_id: str) -> dict[str, Any] | None:
        key = snapshot_key(project_id)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                del self._store[key]
                return None
            return entry.value

    def set(self, project_id: str, snapshot: dict[str, Any], ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        with self._lock:
            self._store[snapshot_key(project_id)] = CacheEntry(value=snapshot, ttl_seconds=ttl)
        return True

    def invalidate(self, project_id: str) -> bool:
        with self._lock:
            return self._store.pop(snapshot_key(project_id), None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._store)
            self._store.clear()
        return count

    def size(self) -> int:
        return len(self._store)


class RedisSnapshotCache(SnapshotCache):
    """Shared cache for multi-instance deployments."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        default_ttl_seconds: int = 300,
        prefix: str = "capguard:",
        client: Any = None,
        socket_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the Redis cache.

        Args:
            url: Redis connection URL
            default_ttl_seconds: Default TTL for snapshots
            prefix: Key prefix for namespacing
            client: Pre-built redis client (built from ``url`` when None)
            socket_timeout: Socket timeout in seconds
        """
        self._url = url
        self._default_ttl = default_ttl_seconds
        self._prefix = prefix
        self._socket_timeout = socket_timeout
        self._client = client

    @property
    def name(self) -> str:
        return "redis"

    @property
    def client(self) -> Any:
        if self._client is None:
            import redis

            self._client = redis.Redis.from_url(
                self._url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
            logger.info(f"Redis snapshot cache configured for {self._url}")
        return self._client

    def _key(self, project_id: str) -> str:
        return f"{self._prefix}{snapshot_key(project_id)}"

    def get(self, project_id: str) -> dict[str, Any] | None:
        try:
            data = self.client.get(self._key(project_id))
        except Exception as e:
            logger.error(f"Redis GET error for {project_id}: {e}")
            return None
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None

    def set(self, project_id: str, snapshot: dict[str, Any], ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        try:
            payload = json.dumps(snapshot, default=str)
            if ttl > 0:
                self.client.setex(self._key(project_id), ttl, payload)
            else:
                self.client.set(self._key(project_id), payload)
            return True
        except Exception as e:
            logger.error(f"Redis SET error for {project_id}: {e}")
            return False

    def invalidate(self, project_id: str) -> bool:
        return self.client.delete(self._key(project_id)) > 0

    def clear(self) -> int:
        keys = list(self.client.scan_iter(match=f"{self._prefix}project:*"))
        if not keys:
            return 0
        return self.client.delete(*keys)


def create_snapshot_cache(backend: str | None = None, config: Settings | None = None) -> SnapshotCache:
    """
    Create a snapshot cache for the configured backend.

    Args:
        backend: "memory" or "redis" (defaults to settings)
        config: Settings override

    Returns:
        SnapshotCache instance

    Raises:
        ValueError: If the backend type is unknown
    """
    s = config or get_settings()
    backend_type = backend or s.cache_backend

    if backend_type == "memory":
        return InMemorySnapshotCache(default_ttl_seconds=s.snapshot_ttl_seconds)

    if backend_type == "redis":
        if not s.redis_url:
            logger.warning(
                "Redis URL not configured, falling back to in-memory cache. "
                "Set REDIS_URL to enable Redis caching."
            )
            return InMemorySnapshotCache(default_ttl_seconds=s.snapshot_ttl_seconds)
        return RedisSnapshotCache(
            url=s.redis_url,
            default_ttl_seconds=s.snapshot_ttl_seconds,
            prefix=s.redis_prefix,
        )

    raise ValueError(f"Unknown cache backend: {backend_type}")
