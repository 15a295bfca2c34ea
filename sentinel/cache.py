from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Protocol

import redis

LOGGER = logging.getLogger(__name__)


def build_cache_key(namespace: str, tenant_id: str, subject: str, context: dict[str, Any] | None = None) -> str:
    payload = {
        "namespace": namespace,
        "tenant_id": tenant_id,
        "subject": subject,
        "context": context or {},
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class Cache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class NullCache:
    """Cache that never stores anything."""

    name = "none"

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        return None

    def delete(self, key: str) -> None:
        return None

    def clear(self) -> None:
        return None


class LocalCache:
    """In-process TTL cache; the oldest entry is evicted once ``max_entries`` is reached."""

    name = "local"

    def __init__(self, default_ttl_seconds: int = 300, max_entries: int = 1024, clock=time.monotonic) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """Redis-backed cache; after a connection error every call goes to a local fallback.

    Values are stored as JSON, so only JSON-serialisable values can be cached.
    """

    name = "redis"

    def __init__(
        self,
        url: str,
        default_ttl_seconds: int = 300,
        prefix: str = "sentinel:",
        client: Any | None = None,
        fallback: LocalCache | None = None,
    ) -> None:
        self.url = url
        self.default_ttl_seconds = default_ttl_seconds
        self.prefix = prefix
        self._client = client
        self.fallback = fallback or LocalCache(default_ttl_seconds=default_ttl_seconds)
        self.degraded = False

    def _redis(self):
        if self._client is None:
            self._client = redis.from_url(self.url, socket_connect_timeout=2, socket_timeout=2)
        return self._client

    def _degrade(self, exc: Exception) -> None:
        if not self.degraded:
            LOGGER.warning("Redis cache unavailable at %s, falling back to local cache: %s", self.url, exc)
        self.degraded = True

    def get(self, key: str) -> Any | None:
        if self.degraded:
            return self.fallback.get(key)
        try:
            raw = self._redis().get(self.prefix + key)
        except redis.RedisError as exc:
            self._degrade(exc)
            return self.fallback.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if self.degraded:
            self.fallback.set(key, value, ttl)
            return
        try:
            self._redis().set(self.prefix + key, json.dumps(value, sort_keys=True), ex=ttl)
        except redis.RedisError as exc:
            self._degrade(exc)
            self.fallback.set(key, value, ttl)

    def delete(self, key: str) -> None:
        self.fallback.delete(key)
        if self.degraded:
            return
        try:
            self._redis().delete(self.prefix + key)
        except redis.RedisError as exc:
            self._degrade(exc)

    def clear(self) -> None:
        self.fallback.clear()
        if self.degraded:
            return
        try:
            client = self._redis()
            keys = list(client.scan_iter(match=f"{self.prefix}*"))
            if keys:
                client.delete(*keys)
        except redis.RedisError as exc:
            self._degrade(exc)


def build_cache(settings: dict[str, Any]) -> Cache:
    cache_cfg = settings.get("cache", {})
    backend = str(cache_cfg.get("backend", "local")).lower()
    ttl = int(cache_cfg.get("ttl_seconds", 300))
    if backend == "redis":
        url = cache_cfg.get("redis_url")
        if url:
            LOGGER.info("Using redis cache at %s", url)
            return RedisCache(url, default_ttl_seconds=ttl)
        LOGGER.warning("Redis cache requested without redis_url, using local cache")
        backend = "local"
    if backend == "local":
        return LocalCache(default_ttl_seconds=ttl, max_entries=int(cache_cfg.get("max_entries", 1024)))
    return NullCache()
