"""
Cache Manager

In-process TTL cache for successful provider responses.
Used by the rate-limited client as its fallback store.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from loguru import logger


DEFAULT_TTL_MS = 5 * 60 * 1000


@dataclass
class CacheConfig:
    """Cache configuration."""
    default_ttl_ms: int = DEFAULT_TTL_MS

    # Key prefix
    prefix: str = "api"

    # Key part used when a call has no endpoint
    default_endpoint: str = "default"


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload. Valid while ``now - timestamp <= ttl``."""
    data: Any
    timestamp: datetime
    ttl: int  # milliseconds

    def age_ms(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds() * 1000

    def is_valid(self, now: datetime) -> bool:
        return self.age_ms(now) <= self.ttl


class CacheManager:
    """
    In-memory cache keyed by ``(provider, endpoint)``.

    Entries are immutable and replaced whole, so a read racing a write
    sees either the old or the new entry. Stale entries are treated as
    absent and removed on lookup; ``sweep_expired`` removes the rest.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or CacheConfig()
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock or datetime.now
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
        }

    def _key(self, provider: str, endpoint: Optional[str] = None) -> str:
        """Build a cache key from provider and endpoint."""
        return f"{self.config.prefix}:{provider}:{endpoint or self.config.default_endpoint}"

    # ==================== Get / Set ====================

    def get(self, provider: str, endpoint: Optional[str] = None) -> Optional[CacheEntry]:
        """Get a valid entry, or None on miss or expiry."""
        key = self._key(provider, endpoint)
        entry = self._entries.get(key)

        if entry is None:
            self._stats["misses"] += 1
            return None

        if not entry.is_valid(self._clock()):
            # Only evict if the entry was not replaced meanwhile
            if self._entries.get(key) is entry:
                del self._entries[key]
                self._stats["deletes"] += 1
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        return entry

    def set(
        self,
        provider: str,
        endpoint: Optional[str],
        data: Any,
        ttl_ms: Optional[int] = None,
    ) -> CacheEntry:
        """Store a payload, replacing any previous entry."""
        ttl = self.config.default_ttl_ms if ttl_ms is None else ttl_ms
        entry = CacheEntry(data=data, timestamp=self._clock(), ttl=ttl)
        key = self._key(provider, endpoint)
        self._entries[key] = entry
        self._stats["sets"] += 1

        logger.debug(f"Cached result for {key} (TTL: {ttl / 60000:g}m)")
        return entry

    def invalidate(self, provider: str, endpoint: Optional[str] = None) -> bool:
        """Remove one entry."""
        removed = self._entries.pop(self._key(provider, endpoint), None)
        if removed is not None:
            self._stats["deletes"] += 1
        return removed is not None

    def clear_all(self) -> None:
        """Remove every entry."""
        count = len(self._entries)
        self._entries.clear()
        self._stats["deletes"] += count
        logger.info(f"Cleared {count} cache entries")

    def sweep_expired(self) -> int:
        """Remove stale entries. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        self._stats["deletes"] += len(expired)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    # ==================== Cache Stats ====================

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / total if total > 0 else 0

        return {
            **self._stats,
            "total_requests": total,
            "hit_rate": round(hit_rate * 100, 2),
            "total_entries": len(self._entries),
        }

    def get_entries_info(self) -> list[dict[str, Any]]:
        """Age (seconds) and approximate serialized size of each entry."""
        now = self._clock()
        entries = []
        for key, entry in list(self._entries.items()):
            size = len(json.dumps(entry.data, default=str))
            entries.append({
                "key": key,
                "age": round(entry.age_ms(now) / 1000),
                "size": f"{round(size / 1024)}KB",
            })
        return entries

    def reset_stats(self) -> None:
        """Reset cache statistics."""
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
        }
