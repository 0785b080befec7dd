"""In-memory caching layer with per-namespace TTLs.

Provides a cache-first pattern for expensive work: check cache, compute on
miss, store, and return. The cache is a pure performance layer and never a
source of truth: it is not persisted, so a process restart is equivalent to a
full flush, and every internal error degrades to a miss or a no-op.

The store is shared process-wide without a lock. That is safe under asyncio's
cooperative scheduling (no await between read and write); it is NOT safe to
share across OS threads.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Final

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------


class CacheKey:
    """Keys of the downstream response caches.

    Read-model keys carry their query arguments, so each namespace is
    flushed by pattern. Everything except the analysis batches is
    invalidated when a scan completes.
    """

    TODAY_PICKS_PREFIX: Final[str] = "picks:today:"
    TODAY_PICKS_PATTERN: Final[str] = "picks:today:*"
    PICK_STATS: Final[str] = "stats:picks"
    RECENT_SCANS_PREFIX: Final[str] = "scans:recent:"
    RECENT_SCANS_PATTERN: Final[str] = "scans:recent:*"
    HISTORY_PREFIX: Final[str] = "scans:history:"
    HISTORY_PATTERN: Final[str] = "scans:history:*"
    SCAN_DETAIL_PREFIX: Final[str] = "scan:detail:"
    SCAN_DETAIL_PATTERN: Final[str] = "scan:detail:*"
    BATCH_PREFIX: Final[str] = "analysis:batch:"

    @staticmethod
    def today_picks(topic: str) -> str:
        return f"{CacheKey.TODAY_PICKS_PREFIX}{topic}"

    @staticmethod
    def recent_scans(limit: int) -> str:
        return f"{CacheKey.RECENT_SCANS_PREFIX}{limit}"

    @staticmethod
    def history(topic: str, limit: int) -> str:
        # limit first: topics may contain ':'
        return f"{CacheKey.HISTORY_PREFIX}{limit}:{topic}"

    @staticmethod
    def scan_detail(scan_id: str) -> str:
        return f"{CacheKey.SCAN_DETAIL_PREFIX}{scan_id}"

    @staticmethod
    def batch(fingerprint: str) -> str:
        return f"{CacheKey.BATCH_PREFIX}{fingerprint}"


# ---------------------------------------------------------------------------
# Constants: TTL values in seconds
# ---------------------------------------------------------------------------

TTL_PERMANENT: Final[int] = 0  # 0 means never expires
TTL_TODAY_PICKS: Final[int] = 15 * 60
TTL_PICK_STATS: Final[int] = 30 * 60
TTL_RECENT_SCANS: Final[int] = 60 * 60
TTL_HISTORY: Final[int] = 60 * 60
TTL_SCAN_DETAIL: Final[int] = 60 * 60
TTL_ANALYSIS_BATCH: Final[int] = 6 * 60 * 60
TTL_DEFAULT: Final[int] = 15 * 60

# Lazy cleanup: run eviction at most every N accesses
LAZY_CLEANUP_INTERVAL: Final[int] = 100


class CacheEntry(BaseModel):
    """A single cached value with metadata for expiration checking."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str  # JSON-serialized payload
    created_at: datetime.datetime
    ttl_seconds: int

    def is_expired(self) -> bool:
        """Return True if this entry has exceeded its TTL.

        A ttl_seconds of 0 means the entry never expires.
        """
        if self.ttl_seconds == 0:
            return False
        now = datetime.datetime.now(datetime.UTC)
        age = (now - self.created_at).total_seconds()
        return age > self.ttl_seconds


class CacheStats(BaseModel):
    """Counters reported by ``ServiceCache.stats()``."""

    model_config = ConfigDict(frozen=True)

    key_count: int
    hits: int
    misses: int
    hit_rate: float  # percentage, 0.0-100.0


@dataclass(frozen=True)
class CacheWarmer:
    """A read-through loader run at startup to pre-populate one hot key."""

    key: str
    loader: Callable[[], Awaitable[str]]
    ttl_seconds: int | None = None


def get_ttl(key: str) -> int:
    """Return the default TTL in seconds for the namespace of *key*.

    Args:
        key: A full cache key, e.g. ``"scan:detail:scan_123"``.

    Returns:
        TTL in seconds. 0 means permanent (never expires).
    """
    match key:
        case CacheKey.PICK_STATS:
            return TTL_PICK_STATS
        case _ if key.startswith(CacheKey.TODAY_PICKS_PREFIX):
            return TTL_TODAY_PICKS
        case _ if key.startswith(CacheKey.RECENT_SCANS_PREFIX):
            return TTL_RECENT_SCANS
        case _ if key.startswith(CacheKey.HISTORY_PREFIX):
            return TTL_HISTORY
        case _ if key.startswith(CacheKey.SCAN_DETAIL_PREFIX):
            return TTL_SCAN_DETAIL
        case _ if key.startswith(CacheKey.BATCH_PREFIX):
            return TTL_ANALYSIS_BATCH
        case _:
            return TTL_DEFAULT


class ServiceCache:
    """Namespaced TTL key/value store held in a process-local dict.

    Usage::

        cache = ServiceCache()

        cached = await cache.get(CacheKey.PICK_STATS)
        if cached is None:
            stats = await repo.get_pick_stats()
            await cache.set(CacheKey.PICK_STATS, stats.model_dump_json())
    """

    def __init__(self) -> None:
        self._memory_cache: dict[str, CacheEntry] = {}
        self._access_count: int = 0
        self._hits: int = 0
        self._misses: int = 0

        logger.info("ServiceCache initialized (in-memory, not persisted)")

    async def get(self, key: str) -> str | None:
        """Retrieve a cached value by key.

        Returns None on miss, on expiry (the entry is removed), or if the
        lookup itself fails.
        """
        try:
            self._increment_access_count()

            entry = self._memory_cache.get(key)
            if entry is None:
                self._misses += 1
                logger.debug("Cache miss: %s", key)
                return None
            if entry.is_expired():
                del self._memory_cache[key]
                self._misses += 1
                logger.debug("Cache expired: %s", key)
                return None
            self._hits += 1
            logger.debug("Cache hit: %s", key)
            return entry.value
        except Exception as exc:  # noqa: BLE001
            logger.error("Cache GET error for %s: %s", key, exc)
            return None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Store a value in the cache.

        When *ttl_seconds* is None the namespace default from ``get_ttl`` is
        used. Returns False (and logs) instead of raising on failure.
        """
        try:
            ttl = get_ttl(key) if ttl_seconds is None else ttl_seconds
            self._memory_cache[key] = CacheEntry(
                key=key,
                value=value,
                created_at=datetime.datetime.now(datetime.UTC),
                ttl_seconds=ttl,
            )
            logger.debug("Cache set: %s (ttl=%ds)", key, ttl)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error("Cache SET error for %s: %s", key, exc)
            return False

    async def delete(self, key: str) -> int:
        """Remove a specific key. Returns the number of entries removed."""
        try:
            removed = 1 if self._memory_cache.pop(key, None) is not None else 0
        except Exception as exc:  # noqa: BLE001
            logger.error("Cache DELETE error for %s: %s", key, exc)
            return 0
        if removed:
            logger.debug("Cache delete: %s", key)
        return removed

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove all keys matching a pattern.

        Supports simple glob patterns with ``*`` as a wildcard suffix.
        For example, ``"scan:detail:*"`` removes every per-scan detail entry.
        """
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            keys_to_remove = [k for k in self._memory_cache if k.startswith(prefix)]
        else:
            keys_to_remove = [k for k in self._memory_cache if k == pattern]

        for key in keys_to_remove:
            del self._memory_cache[key]

        logger.debug(
            "Cache invalidated pattern '%s': %d entries removed",
            pattern,
            len(keys_to_remove),
        )
        return len(keys_to_remove)

    async def clear(self) -> None:
        """Drop every entry. Hit/miss counters are kept."""
        count = len(self._memory_cache)
        self._memory_cache.clear()
        logger.info("Cache cleared: %d entries removed", count)

    def stats(self) -> CacheStats:
        """Return key count, hits, misses and hit rate (percent)."""
        lookups = self._hits + self._misses
        hit_rate = round(self._hits / lookups * 100.0, 1) if lookups else 0.0
        return CacheStats(
            key_count=len(self._memory_cache),
            hits=self._hits,
            misses=self._misses,
            hit_rate=hit_rate,
        )

    async def warm(self, providers: Sequence[CacheWarmer]) -> int:
        """Run each read-through provider and store its result.

        A failing provider is logged and skipped; the others still run.
        Returns the number of keys successfully warmed.
        """
        warmed = 0
        for provider in providers:
            try:
                value = await provider.loader()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Cache warm failed for %s: %s", provider.key, exc)
                continue
            if await self.set(provider.key, value, provider.ttl_seconds):
                warmed += 1

        logger.info("Cache warmed: %d/%d keys", warmed, len(providers))
        return warmed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _increment_access_count(self) -> None:
        """Track accesses and trigger lazy cleanup when threshold is reached."""
        self._access_count += 1
        if self._access_count >= LAZY_CLEANUP_INTERVAL:
            self._access_count = 0
            self._evict_expired_entries()

    def _evict_expired_entries(self) -> None:
        """Remove expired entries. Called lazily rather than on every access."""
        expired_keys = [k for k, v in self._memory_cache.items() if v.is_expired()]
        for key in expired_keys:
            del self._memory_cache[key]

        if expired_keys:
            logger.debug("Lazy cleanup: evicted %d expired entries", len(expired_keys))
