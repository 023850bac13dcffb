"""
Connection & Settings Cache
===========================
Short-lived storage for connected sessions and reconciled risk settings.

Redis holds the entries when REDIS_URL is set, so several server workers see
the same connections; otherwise each process keeps its own in-memory store.
Every entry carries a TTL: connections expire with their access token,
settings reads after RISK_CACHE_TTL seconds.

Losing an entry is never an error. A missing settings read costs one more
round trip to Tradovate; a missing connection means reconnecting.

Usage:
    from risk_manager.cache import settings_cache

    settings_cache.set_settings(connection_ref, account_id, settings.to_dict(), ttl=30)
    hit = settings_cache.get_settings(connection_ref, account_id)
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import redis

from .config import get_redis_url

logger = logging.getLogger(__name__)

# Resolved once per process; reset_backend() forces a new lookup
_redis_client = None
_redis_checked = False


def redis_backend() -> Optional[redis.Redis]:
    """Shared Redis client, or None when REDIS_URL is unset or unreachable."""
    global _redis_client, _redis_checked

    if _redis_checked:
        return _redis_client
    _redis_checked = True

    url = get_redis_url()
    if not url:
        logger.info("📦 Cache: in-memory store (set REDIS_URL to share connections between workers)")
        return None

    try:
        client = redis.from_url(url, decode_responses=True)
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"⚠️ Redis at {url} unavailable ({e}) - falling back to in-memory store")
        return None

    _redis_client = client
    logger.info("✅ Cache: Redis connected")
    return _redis_client


def reset_backend():
    """Forget the resolved backend so the next call re-reads REDIS_URL."""
    global _redis_client, _redis_checked
    _redis_client = None
    _redis_checked = False


class MemoryStore:
    """Per-process key/value store with expiry, safe to share between threads."""

    def __init__(self):
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] is not None and now >= entry[1]:
            del self._entries[key]
            return None
        return entry

    def read(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key, time.time())
            return entry[0] if entry else None

    def write(self, key: str, value: Any, ttl: Optional[float] = None):
        with self._lock:
            self._entries[key] = (value, time.time() + ttl if ttl else None)

    def remaining(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires; None when missing or permanent."""
        with self._lock:
            now = time.time()
            entry = self._live(key, now)
            if not entry or entry[1] is None:
                return None
            return entry[1] - now

    def remove(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def scan(self, prefix: str) -> Dict[str, Tuple[Any, Optional[float]]]:
        """Live ``{key: (value, seconds_left)}`` for keys starting with ``prefix``."""
        with self._lock:
            now = time.time()
            found = {}
            for key in [k for k in self._entries if k.startswith(prefix)]:
                entry = self._live(key, now)
                if entry:
                    found[key] = (entry[0], None if entry[1] is None else entry[1] - now)
            return found


class Cache:
    """
    Namespaced JSON cache on Redis, with the in-memory store as fallback.

    A Redis error on any call is logged and that call is served from memory.
    """

    def __init__(self, prefix: str = "rm"):
        self.prefix = prefix
        self._memory = MemoryStore()

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        client = redis_backend()
        if client is not None:
            try:
                raw = client.get(full_key)
                return json.loads(raw) if raw else None
            except redis.RedisError as e:
                logger.warning(f"Redis read of {full_key} failed: {e}")
        return self._memory.read(full_key)

    def set(self, key: str, value: Any, ttl: Optional[float] = None):
        full_key = self._key(key)
        client = redis_backend()
        if client is not None:
            try:
                client.set(full_key, json.dumps(value), ex=int(ttl) if ttl else None)
                return
            except redis.RedisError as e:
                logger.warning(f"Redis write of {full_key} failed: {e}")
        self._memory.write(full_key, value, ttl)

    def delete(self, key: str):
        full_key = self._key(key)
        client = redis_backend()
        if client is not None:
            try:
                client.delete(full_key)
            except redis.RedisError as e:
                logger.warning(f"Redis delete of {full_key} failed: {e}")
        self._memory.remove(full_key)

    def entries(self, prefix: str = "") -> Dict[str, Dict[str, Any]]:
        """``{key: {'data', 'expires_in'}}`` for live entries under ``prefix``."""
        full_prefix = self._key(prefix)
        client = redis_backend()
        if client is not None:
            try:
                found = {}
                for key in client.scan_iter(match=f"{full_prefix}*"):
                    raw = client.get(key)
                    if raw is None:
                        continue
                    seconds = client.ttl(key)
                    found[key] = {'data': json.loads(raw), 'expires_in': seconds if seconds >= 0 else None}
                return found
            except redis.RedisError as e:
                logger.warning(f"Redis scan of {full_prefix}* failed: {e}")

        return {
            key: {'data': value, 'expires_in': seconds}
            for key, (value, seconds) in self._memory.scan(full_prefix).items()
        }

    def clear_prefix(self, prefix: str):
        full_prefix = self._key(prefix)
        client = redis_backend()
        if client is not None:
            try:
                stale = list(client.scan_iter(match=f"{full_prefix}*"))
                if stale:
                    client.delete(*stale)
            except redis.RedisError as e:
                logger.warning(f"Redis clear of {full_prefix}* failed: {e}")
        for key in self._memory.scan(full_prefix):
            self._memory.remove(key)


class SettingsCache:
    """
    Reconciled auto-liq settings, keyed by connection and account.

    Entries are scoped to the connection that read them so one user's
    credentials never answer another user's request.
    """

    def __init__(self):
        self._cache = Cache(prefix="rm:risk")

    @staticmethod
    def _key(connection_ref: str, account_id: int) -> str:
        return f"{connection_ref}:{account_id}"

    def set_settings(self, connection_ref: str, account_id: int, settings: Optional[dict], ttl: int = 30):
        if ttl <= 0:
            return
        self._cache.set(
            self._key(connection_ref, account_id),
            {'settings': settings, 'cached_at': time.time()},
            ttl=ttl,
        )

    def get_settings(self, connection_ref: str, account_id: int) -> Optional[dict]:
        """Cached ``{'settings', 'cached_at'}``, or None if stale or missing."""
        return self._cache.get(self._key(connection_ref, account_id))

    def invalidate(self, connection_ref: str, account_id: int):
        self._cache.delete(self._key(connection_ref, account_id))

    def invalidate_connection(self, connection_ref: str):
        self._cache.clear_prefix(f"{connection_ref}:")

    def entries(self) -> Dict[str, Dict[str, Any]]:
        return self._cache.entries()


settings_cache = SettingsCache()


def get_cache_status() -> dict:
    """Backend summary for /health."""
    client = redis_backend()
    url = get_redis_url()
    return {
        'backend': 'redis' if client is not None else 'memory',
        'redis_url': url[:20] + '...' if url and len(url) > 20 else url,
        'connected': client is not None,
    }
