from __future__ import annotations

import hashlib
import json
import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


# Namespaces for read-mostly catalog data. Writers invalidate by prefix.
ROLES_NS = "ROLES"
OUTLETS_NS = "OUTLETS"


def make_cache_key(namespace: str, params: dict[str, Any] | None = None) -> str:
    ns = str(namespace or "").strip().upper()
    try:
        blob = json.dumps(params or {}, sort_keys=True, separators=(",", ":"))
    except Exception:
        blob = str(params)
    return f"{ns}:{hashlib.sha256(blob.encode('utf-8')).hexdigest()[:16]}"


class _CatalogCache:
    def __init__(self):
        ttl = max(1, min(3600, int(os.getenv("CACHE_TTL_SECONDS", "60") or "60")))
        max_items = max(100, min(100_000, int(os.getenv("CACHE_MAX_ITEMS", "5000") or "5000")))
        self._cache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._cache:
                self._hits += 1
                return self._cache[key]
            self._misses += 1
        # Computed outside the lock; a racing writer simply wins.
        value = factory()
        with self._lock:
            self._cache[key] = value
        return value

    def invalidate_prefix(self, prefix: str) -> int:
        pfx = str(prefix or "").upper()
        if not pfx:
            return 0
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if str(k).startswith(pfx)]
            for k in keys:
                self._cache.pop(k, None)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


_cache = _CatalogCache()


def cache_get_or_set(namespace: str, params: dict[str, Any] | None, factory: Callable[[], Any]) -> Any:
    """Cached read for catalog lists, e.g. `cache_get_or_set(ROLES_NS, {"activeOnly": True}, load)`."""
    return _cache.get_or_set(make_cache_key(namespace, params), factory)


def cache_invalidate(namespace: str) -> int:
    return _cache.invalidate_prefix(f"{str(namespace or '').upper()}:")


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
