"""
Result Cache

Bounded, TTL-based mapping from canonical transformation keys to output
storage keys. Two backends share one contract:

- MemoryResultCache: in-process, for a single API process and tests.
- RedisResultCache: shared between the API and every worker.

Eviction policy (both backends): when an insert pushes the entry count above
``max_entries``, the oldest-inserted entries are evicted first. Overwriting a
key re-inserts it as the newest entry.

Cache failures never reach callers: every public operation logs the problem
and degrades to a miss or a no-op.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, List

import redis

from src.core.exceptions import CacheError, CircuitBreaker
from src.core.logging import get_logger
from src.core.metrics import record_cache_lookup, record_cache_eviction
from src.pipeline.canonical import image_key_prefix, key_belongs_to_image

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_ENTRIES = 1000


@dataclass
class CacheEntry:
    key: str
    value: str
    inserted_at: float
    ttl: int

    def expired(self, now: float) -> bool:
        return now >= self.inserted_at + self.ttl


class IResultCache(ABC):
    """Interface for the result cache. Public methods never raise."""

    backend_name = "abstract"

    def __init__(self, ttl: int = DEFAULT_TTL_SECONDS, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._get(key)
        except Exception as e:
            logger.warning("cache_get_failed", backend=self.backend_name, key=key, error=str(e))
            record_cache_lookup(self.backend_name, "error")
            return None

        record_cache_lookup(self.backend_name, "hit" if value is not None else "miss")
        logger.debug("cache_hit" if value is not None else "cache_miss", key=key)
        return value

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        ttl = self.ttl if ttl is None else ttl
        try:
            if ttl <= 0:
                # Expires on arrival: drop any older value instead of storing
                self._delete(key)
            else:
                self._set(key, value, ttl)
        except Exception as e:
            logger.warning("cache_set_failed", backend=self.backend_name, key=key, error=str(e))
            return False
        logger.debug("cache_set", key=key)
        return True

    def delete(self, key: str) -> bool:
        try:
            return self._delete(key)
        except Exception as e:
            logger.warning("cache_delete_failed", backend=self.backend_name, key=key, error=str(e))
            return False

    def delete_by_image(self, image_id: str) -> int:
        """Drop every entry derived from one image. Returns the number removed."""
        try:
            removed = self._delete_by_image(image_id)
        except Exception as e:
            logger.warning(
                "cache_clear_image_failed",
                backend=self.backend_name,
                image_id=image_id,
                error=str(e)
            )
            return 0
        logger.info("cache_image_cleared", image_id=image_id, removed=removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        base = {
            "backend": self.backend_name,
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl,
        }
        try:
            base.update(self._stats())
            base["available"] = True
        except Exception as e:
            logger.warning("cache_stats_failed", backend=self.backend_name, error=str(e))
            base.update({"entries": 0, "available": False})
        return base

    def close(self):
        """Release backend resources."""

    @abstractmethod
    def _get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def _set(self, key: str, value: str, ttl: int):
        pass

    @abstractmethod
    def _delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def _delete_by_image(self, image_id: str) -> int:
        pass

    @abstractmethod
    def _stats(self) -> Dict[str, Any]:
        pass


# =============================================================================
# In-process backend
# =============================================================================

class MemoryResultCache(IResultCache):
    """Insertion-ordered dict guarded by a lock."""

    backend_name = "memory"

    def __init__(
        self,
        ttl: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(ttl, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _purge_expired(self, now: float) -> int:
        expired = [k for k, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        record_cache_eviction(self.backend_name, "expired", len(expired))
        return len(expired)

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(self._clock()):
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def _set(self, key: str, value: str, ttl: int):
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key=key, value=value, inserted_at=now, ttl=ttl)

            evicted = 0
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
            self._evictions += evicted
            record_cache_eviction(self.backend_name, "capacity", evicted)

    def _delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def _delete_by_image(self, image_id: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if key_belongs_to_image(k, image_id)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def _stats(self) -> Dict[str, Any]:
        with self._lock:
            self._purge_expired(self._clock())
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def keys(self) -> List[str]:
        """Live keys, oldest-inserted first."""
        with self._lock:
            now = self._clock()
            return [k for k, entry in self._entries.items() if not entry.expired(now)]


# =============================================================================
# Redis backend
# =============================================================================

def _escape_glob(value: str) -> str:
    for ch in "\\*?[]":
        value = value.replace(ch, "\\" + ch)
    return value


class RedisResultCache(IResultCache):
    """
    Values live under SETEX so Redis expires them; a sorted set scored by
    insertion time records the order used for capacity eviction. Expired keys
    keep their slot in the index until they are evicted, so the live count
    never exceeds ``max_entries``.
    """

    backend_name = "redis"

    def __init__(
        self,
        client: "redis.Redis",
        ttl: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        breaker: Optional[CircuitBreaker] = None,
        index_key: str = "result_cache:index"
    ):
        super().__init__(ttl, max_entries)
        self.redis = client
        self.index_key = index_key
        self.breaker = breaker or CircuitBreaker("result_cache", failure_threshold=3, recovery_timeout=30)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisResultCache":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        return cls(client, **kwargs)

    def _call(self, operation: Callable[[], Any]) -> Any:
        if not self.breaker.can_execute():
            raise CacheError("Result cache circuit is open")
        try:
            result = operation()
        except redis.RedisError as e:
            self.breaker.record_failure(e)
            raise CacheError(f"Redis error: {e}")
        self.breaker.record_success()
        return result

    def _get(self, key: str) -> Optional[str]:
        return self._call(lambda: self.redis.get(key))

    def _set(self, key: str, value: str, ttl: int):
        def write():
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(key, value, ex=ttl)
            pipe.zadd(self.index_key, {key: time.time()})
            pipe.execute()

            overflow = self.redis.zcard(self.index_key) - self.max_entries
            if overflow > 0:
                oldest = self.redis.zrange(self.index_key, 0, overflow - 1)
                if oldest:
                    pipe = self.redis.pipeline(transaction=True)
                    pipe.delete(*oldest)
                    pipe.zrem(self.index_key, *oldest)
                    pipe.execute()
                record_cache_eviction(self.backend_name, "capacity", len(oldest))

        self._call(write)

    def _delete(self, key: str) -> bool:
        def remove():
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(key)
            pipe.zrem(self.index_key, key)
            deleted, _ = pipe.execute()
            return bool(deleted)

        return self._call(remove)

    def _delete_by_image(self, image_id: str) -> int:
        def remove():
            pattern = _escape_glob(image_key_prefix(image_id)) + "*"
            keys = [
                k for k in self.redis.scan_iter(match=pattern, count=500)
                if key_belongs_to_image(k, image_id)
            ]
            if not keys:
                return 0
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(*keys)
            pipe.zrem(self.index_key, *keys)
            pipe.execute()
            return len(keys)

        return self._call(remove)

    def _stats(self) -> Dict[str, Any]:
        def read():
            members = self.redis.zrange(self.index_key, 0, -1)
            live = self.redis.exists(*members) if members else 0
            return {"entries": live, "tracked": len(members)}

        stats = self._call(read)
        stats["circuit"] = self.breaker.state
        return stats

    def close(self):
        self.redis.close()
