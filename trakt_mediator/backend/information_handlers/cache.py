"""TTL key-value store backing the cache-aside client.

The store uses a two-tier approach:

* An in-memory LRU holding the hottest keys, each with its own expiry.
* A JSON-on-disk tier so cached responses survive process restarts.

Values are opaque bytes (serialized JSON in practice). Each ``set`` carries
its own TTL; the memory tier never outlives the disk entry it mirrors.
Disk failures degrade to cache misses rather than errors.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.config.settings import paths as path_settings

log = get_logger(__name__)

_MEMORY_CAPACITY = 512


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...


@dataclass
class _MemoryEntry:
    value: bytes
    expires_at: float


class _LRUCache:
    """Small LRU cache with per-entry expiry."""

    def __init__(self, capacity: int, clock: Callable[[], float]) -> None:
        self._capacity = max(capacity, 1)
        self._clock = clock
        self._store: "OrderedDict[str, _MemoryEntry]" = OrderedDict()

    def get(self, key: str) -> Optional[bytes]:
        entry = self._store.get(key)
        if entry is None:
            return None

        if entry.expires_at <= self._clock():
            self._store.pop(key, None)
            return None

        self._store.move_to_end(key)
        return entry.value

    def set(self, key: str, value: bytes, expires_at: float) -> None:
        self._store[key] = _MemoryEntry(value=value, expires_at=expires_at)
        self._store.move_to_end(key)
        while len(self._store) > self._capacity:
            self._store.popitem(last=False)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def prune(self) -> None:
        now = self._clock()
        for key in [k for k, entry in self._store.items() if entry.expires_at <= now]:
            self._store.pop(key, None)


def _key_to_filename(key: str) -> str:
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()

    return f"{digest}.json"


class ResponseCacheStore:
    """Memory + disk TTL store implementing :class:`CacheStore`."""

    def __init__(
        self,
        *,
        cache_dir: Optional[Path] = None,
        memory_capacity: int = _MEMORY_CAPACITY,
        persist: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._persist = persist
        self._cache_dir = Path(cache_dir or path_settings.get_info_providers_cache_dir())
        if self._persist:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._memory = _LRUCache(capacity=memory_capacity, clock=clock)
        self._lock = threading.RLock()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            value = self._memory.get(key)
            if value is not None:
                return value
            if not self._persist:
                return None

            loaded = self._load_from_disk(key)
            if loaded is None:
                return None

            value, expires_at = loaded
            self._memory.set(key, value, expires_at)
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return

        expires_at = self._clock() + ttl_seconds
        with self._lock:
            self._memory.set(key, value, expires_at)
            if self._persist:
                self._store_on_disk(key, value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._memory.delete(key)
            if self._persist:
                self._unlink(self._cache_dir / _key_to_filename(key))

    def clear_memory(self) -> None:
        with self._lock:
            self._memory.clear()

    def clear_disk(self) -> None:
        with self._lock:
            for file in self._cache_dir.glob("*.json"):
                self._unlink(file)

    def prune(self) -> int:
        """Remove expired entries from both tiers; return the disk files removed."""

        with self._lock:
            self._memory.prune()
            return self._prune_disk() if self._persist else 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _store_on_disk(self, key: str, value: bytes, expires_at: float) -> None:
        try:
            encoded = json.dumps({"key": key, "expires_at": expires_at, "value": value.decode("utf-8")})
        except UnicodeDecodeError:
            log.warning("Skipping disk cache for non UTF-8 value under %s", key)
            return

        filename = self._cache_dir / _key_to_filename(key)
        temp_file = filename.with_suffix(".tmp")
        try:
            temp_file.write_text(encoded, encoding="utf-8")
            temp_file.replace(filename)
        except OSError as exc:
            log.warning("Disk cache write failed for %s: %s", filename.name, exc)
            self._unlink(temp_file)

    def _load_from_disk(self, key: str) -> Optional[tuple[bytes, float]]:
        filename = self._cache_dir / _key_to_filename(key)
        if not filename.exists():
            return None
        try:
            data = json.loads(filename.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            self._unlink(filename)
            return None

        expires_at = data.get("expires_at") if isinstance(data, dict) else None
        value = data.get("value") if isinstance(data, dict) else None
        if expires_at is None or expires_at <= self._clock() or not isinstance(value, str):
            self._unlink(filename)
            return None

        return value.encode("utf-8"), float(expires_at)

    def _prune_disk(self) -> int:
        now = self._clock()
        removed = 0
        for file in self._cache_dir.glob("*.json"):
            try:
                data = json.loads(file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                removed += self._unlink(file)
                continue

            expires_at = data.get("expires_at") if isinstance(data, dict) else None
            if expires_at is None or expires_at <= now:
                removed += self._unlink(file)

        return removed

    @staticmethod
    def _unlink(path: Path) -> int:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            return 0
        return 1


__all__ = ["CacheStore", "ResponseCacheStore"]
