# src/async_criteria/base/cache.py
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

log = logging.getLogger(__name__)

DEFAULT_CACHE_LIFETIME = 3600


@dataclass(frozen=True)
class CacheDirective:
    """Result caching requested on a builder via ``cache(lifetime, key)``."""

    lifetime: int = DEFAULT_CACHE_LIFETIME
    key: Optional[str] = None


class InMemoryResultCache:
    """
    Process-local result cache with per-entry TTL.

    Expired entries are dropped lazily on access. A lifetime of ``None`` or
    ``0`` keeps the entry until it is evicted.
    """

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        """Returns the cached value, or None when missing or expired."""
        entry = self._store.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and time.monotonic() > expires_at:
            del self._store[key]
            log.debug(f"Cache entry '{key}' expired")
            return None
        return value

    async def put(self, key: str, value: Any, lifetime: Optional[int] = None) -> None:
        expires_at = None
        if lifetime:
            expires_at = time.monotonic() + lifetime
        self._store[key] = (value, expires_at)
        log.debug(f"Cached '{key}' for {lifetime or 'unlimited'} second(s)")

    async def evict(self, key: str) -> bool:
        """Removes a key. Returns True if the key existed."""
        if key in self._store:
            del self._store[key]
            return True
        return False

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def clear(self, prefix: Optional[str] = None) -> None:
        """Removes all entries, or only those whose key starts with ``prefix``."""
        if prefix is None:
            self._store.clear()
            return
        for key in [k for k in self._store if k.startswith(prefix)]:
            del self._store[key]


def derive_cache_key(prefix: str, material: Any) -> str:
    """Builds ``<prefix>_<md5 of material>``; material must be JSON-serialisable."""
    payload = json.dumps(material, sort_keys=True, default=str)
    digest = hashlib.md5(payload.encode("utf-8")).hexdigest()
    return f"{prefix}_{digest}"
