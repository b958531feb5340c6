"""TTL-bounded, content-addressed cache for stage results.

Two backends share one contract:

- :class:`MemoryCacheStore` keeps entries in process memory and sweeps expired
  keys on a background thread every ``check_period`` seconds.
- :class:`FileCacheStore` persists one JSON file per key under ``cache_dir`` so
  results survive restarts, and sweeps expired files on the same schedule.

Both check expiry on every ``get``. Storage failures never propagate: a broken
read is a miss and a broken write is a no-op.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def canonical_json(payload: Any) -> str:
    """Serialise ``payload`` so that key order never changes the output."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def make_cache_key(prefix: str, payload: Any) -> str:
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"


@dataclass
class CacheEntry:
    key: str
    value: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class _SweepingStore:
    """Runs ``purge_expired`` on a daemon thread every ``check_period`` seconds."""

    check_period: float = 0
    enabled: bool = True
    backend_label = "cache"

    def _init_sweeper(self) -> None:
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the background sweep. Safe to call more than once."""
        if not self.enabled or self.check_period <= 0 or self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="cache-sweeper", daemon=True)
        self._sweeper.start()
        logger.info("✅ %s initialized (sweep every %ss)", self.backend_label, self.check_period)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.check_period):
            removed = self.purge_expired()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    def _stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    def purge_expired(self) -> int:
        raise NotImplementedError


class MemoryCacheStore(_SweepingStore):
    """In-process cache with lazy expiry and an optional periodic sweep."""

    backend_label = "In-memory cache"

    def __init__(
        self,
        default_ttl: float = 86400,
        check_period: float = 600,
        enabled: bool = True,
        clock: Clock = time.time,
    ) -> None:
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.enabled = enabled
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._init_sweeper()

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    return None
                if entry.is_expired(self._clock()):
                    del self._entries[key]
                    return None
                raw = entry.value
            return json.loads(raw)
        except Exception as exc:
            logger.warning("Cache get error for %s: %s", key, exc)
            return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if not self.enabled:
            return
        try:
            raw = canonical_json(value)
            expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
            with self._lock:
                self._entries[key] = CacheEntry(key=key, value=raw, expires_at=expires_at)
        except Exception as exc:
            logger.warning("Cache set error for %s: %s", key, exc)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        self._stop_sweeper()
        with self._lock:
            self._entries.clear()
        logger.info("✅ Cache closed")


class FileCacheStore(_SweepingStore):
    """JSON-file cache persisted under ``cache_dir``."""

    backend_label = "File cache"

    def __init__(
        self,
        cache_dir: str = ".cache",
        default_ttl: float = 86400,
        check_period: float = 600,
        enabled: bool = True,
        clock: Clock = time.time,
    ) -> None:
        self.cache_dir = cache_dir
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()
        self._init_sweeper()
        if enabled:
            os.makedirs(cache_dir, exist_ok=True)

    def _path_for(self, key: str) -> str:
        name = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(self.cache_dir, f"{name}.json")

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        cache_file = self._path_for(key)
        if not os.path.exists(cache_file):
            return None
        try:
            with open(cache_file, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            if data.get("key") != key:
                return None
            if self._clock() >= float(data["expires_at"]):
                self._remove(cache_file)
                return None
            return json.loads(data["value"])
        except Exception as exc:
            logger.warning("Cache get error for %s: %s", key, exc)
            return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if not self.enabled:
            return
        cache_file = self._path_for(key)
        try:
            record = {
                "key": key,
                "value": canonical_json(value),
                "expires_at": self._clock() + (ttl if ttl is not None else self.default_ttl),
            }
            fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(record, handle, ensure_ascii=False)
                os.replace(tmp_path, cache_file)
            except BaseException:
                self._remove(tmp_path)
                raise
        except Exception as exc:
            logger.warning("Failed to write to cache: %s", exc)

    def delete(self, key: str) -> None:
        self._remove(self._path_for(key))

    def purge_expired(self) -> int:
        if not self.enabled or not os.path.isdir(self.cache_dir):
            return 0
        removed = 0
        now = self._clock()
        with self._lock:
            for filename in os.listdir(self.cache_dir):
                if not filename.endswith(".json"):
                    continue
                path = os.path.join(self.cache_dir, filename)
                try:
                    with open(path, "r", encoding="utf-8") as handle:
                        expires_at = float(json.load(handle)["expires_at"])
                except Exception as exc:
                    logger.warning("Dropping unreadable cache file %s: %s", filename, exc)
                    expires_at = now
                if now >= expires_at:
                    self._remove(path)
                    removed += 1
        return removed

    def close(self) -> None:
        self._stop_sweeper()

    @staticmethod
    def _remove(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to delete cache file %s: %s", path, exc)


def build_cache_store(settings) -> Union[MemoryCacheStore, FileCacheStore]:
    """Create the cache backend described by a :class:`CacheSettings`."""
    if settings.backend == "file":
        return FileCacheStore(
            cache_dir=settings.cache_dir,
            default_ttl=settings.ttl_seconds,
            check_period=settings.check_period_seconds,
            enabled=settings.enabled,
        )
    return MemoryCacheStore(
        default_ttl=settings.ttl_seconds,
        check_period=settings.check_period_seconds,
        enabled=settings.enabled,
    )
