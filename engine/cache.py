"""Read-through cache shielding the catalog API from repeated calls."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

import anyio
import redis

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "cache"


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]:
        """Return the raw cached string or ``None``."""

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    def delete(self, key: str) -> None:
        """Remove ``key``."""


class RedisCacheBackend:
    """redis-py backed cache; expiry is delegated to Redis ``EX``."""

    def __init__(self, url: str | None = None, *, client: "redis.Redis | None" = None) -> None:
        if client is None:
            client = redis.Redis.from_url(
                url or "redis://localhost:6379/0",
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
        self.redis = client

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.redis.set(key, value, ex=max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        self.redis.delete(key)


class JsonFileCacheBackend:
    """Single JSON file holding ``{key: {"expires_at": ..., "value": ...}}`` rows."""

    def __init__(self, cache_path: str | Path) -> None:
        self._path = Path(cache_path)
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}
        self._loaded = False

    def _load_locked(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        try:
            if self._path.exists():
                payload = json.loads(self._path.read_text(encoding="utf-8"))
                if isinstance(payload, dict):
                    self._data = payload
        except (OSError, ValueError):
            logger.warning("cache file unreadable path=%s; starting empty", self._path)
            self._data = {}

    def _persist_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=True, separators=(",", ":")), encoding="utf-8")
        tmp_path.replace(self._path)

    def get(self, key: str) -> Optional[str]:
        now = time.time()
        with self._lock:
            self._load_locked()
            row = self._data.get(key)
            if not isinstance(row, dict):
                return None
            if float(row.get("expires_at") or 0.0) <= now:
                self._data.pop(key, None)
                self._persist_locked()
                return None
            value = row.get("value")
            return value if isinstance(value, str) else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = time.time()
        with self._lock:
            self._load_locked()
            expired = [
                k for k, row in self._data.items()
                if not isinstance(row, dict) or float(row.get("expires_at") or 0.0) <= now
            ]
            for stale_key in expired:
                del self._data[stale_key]
            if expired:
                logger.debug("cache file sweep removed=%s", len(expired))
            self._data[key] = {
                "expires_at": now + max(1, int(ttl_seconds)),
                "value": value,
            }
            self._persist_locked()

    def delete(self, key: str) -> None:
        with self._lock:
            self._load_locked()
            if self._data.pop(key, None) is not None:
                self._persist_locked()


def build_cache_key(operation: str, *parts: Any, **params: Any) -> str:
    """Build a deterministic key such as ``cache:playlist-tracks:abc:limit=50:offset=0``.

    Positional parts are kept in order (identifiers), keyword params are
    sorted by name so call-site ordering never changes the key.
    """
    segments = [CACHE_KEY_PREFIX, operation]
    segments.extend(str(part) for part in parts)
    segments.extend(f"{name}={params[name]}" for name in sorted(params))
    return ":".join(segments)


def is_failure_payload(value: Any) -> bool:
    """Return whether ``value`` is an explicit domain failure (``success`` false)."""
    return isinstance(value, dict) and value.get("success") is False


class ReadThroughCache:
    """Generic fetch-or-compute wrapper over a :class:`CacheBackend`.

    Backend errors (read, write, decode) are logged and degrade to direct
    computation; they never reach the caller.
    """

    def __init__(self, backend: CacheBackend | None) -> None:
        self.backend = backend

    async def _read(self, key: str) -> tuple[bool, Any]:
        try:
            raw = await anyio.to_thread.run_sync(self.backend.get, key)
        except Exception:
            logger.warning("cache read failed key=%s; computing directly", key, exc_info=True)
            return False, None
        if raw is None:
            return False, None
        try:
            return True, json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache entry undecodable key=%s; treating as miss", key)
            return False, None

    async def _write(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            encoded = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError):
            logger.warning("cache value not serializable key=%s; skipping write", key)
            return
        try:
            await anyio.to_thread.run_sync(self.backend.set, key, encoded, ttl_seconds)
        except Exception:
            logger.warning("cache write failed key=%s", key, exc_info=True)

    async def get_or_compute(
        self,
        key: str,
        ttl_seconds: int | None,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        if self.backend is None or not ttl_seconds or ttl_seconds <= 0:
            return await compute()

        hit, cached = await self._read(key)
        if hit:
            logger.debug("cache hit key=%s", key)
            return cached

        value = await compute()
        if is_failure_payload(value):
            logger.debug("cache skip failure payload key=%s", key)
            return value
        await self._write(key, value, ttl_seconds)
        return value

    async def invalidate(self, key: str) -> None:
        if self.backend is None:
            return
        try:
            await anyio.to_thread.run_sync(self.backend.delete, key)
        except Exception:
            logger.warning("cache delete failed key=%s", key, exc_info=True)


def build_cache_backend(kind: str, *, redis_url: str | None = None, file_path: str | Path | None = None) -> CacheBackend | None:
    """Create the configured backend; ``none``/``off`` disables caching."""
    normalized = (kind or "").strip().lower()
    if normalized in {"", "none", "off", "disabled"}:
        return None
    if normalized == "redis":
        return RedisCacheBackend(redis_url)
    if normalized == "file":
        if file_path is None:
            raise ValueError("file cache backend requires a file path")
        return JsonFileCacheBackend(file_path)
    raise ValueError(f"unsupported cache backend: {kind}")
