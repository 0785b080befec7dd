"""Cache-first read paths over the repository.

These are the consumers of the response namespaces that ``ScanCoordinator``
invalidates after every successful run.  Each read checks the cache, falls
back to the repository on a miss, stores the JSON payload with the
namespace TTL, and returns typed models.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Final, TypeVar

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from Pick_Sync.data.repository import Repository
from Pick_Sync.models import Pick, PickStats, ScanRun
from Pick_Sync.services.cache import CacheKey, CacheWarmer, ServiceCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RECENT_LIMIT: Final[int] = 20
DEFAULT_HISTORY_LIMIT: Final[int] = 20

_PICKS: TypeAdapter[list[Pick]] = TypeAdapter(list[Pick])
_RUNS: TypeAdapter[list[ScanRun]] = TypeAdapter(list[ScanRun])
_STATS: TypeAdapter[PickStats] = TypeAdapter(PickStats)


class ScanDetail(BaseModel):
    """One scan run together with its picks."""

    model_config = ConfigDict(frozen=True)

    run: ScanRun
    picks: list[Pick]


class PickQueries:
    """Read-through accessors for picks and scan runs.

    Usage::

        queries = PickQueries(repo, cache)
        picks = await queries.today_picks("sportsbook:potd")
        await cache.warm(queries.warmers("sportsbook:potd"))
    """

    def __init__(self, repository: Repository, cache: ServiceCache) -> None:
        self._repository = repository
        self._cache = cache

    async def today_picks(self, topic: str) -> list[Pick]:
        """Picks of the current run for *topic*, best first."""
        return await self._read_through(
            CacheKey.today_picks(topic), _PICKS, self._load_today_picks(topic)
        )

    async def pick_stats(self) -> PickStats:
        return await self._read_through(CacheKey.PICK_STATS, _STATS, self._load_pick_stats)

    async def recent_scans(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[ScanRun]:
        """Most recent runs across all topics, newest first."""
        return await self._read_through(
            CacheKey.recent_scans(limit), _RUNS, self._load_recent_scans(limit)
        )

    async def history(self, topic: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[ScanRun]:
        """Demoted (non-current) runs for *topic*, newest first."""
        return await self._read_through(
            CacheKey.history(topic, limit), _RUNS, self._load_history(topic, limit)
        )

    async def scan_detail(self, scan_id: str) -> ScanDetail | None:
        """Return the run and its picks, or None when *scan_id* is unknown.

        Unknown ids are not cached.
        """
        key = CacheKey.scan_detail(scan_id)
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return ScanDetail.model_validate_json(cached)
            except ValidationError:
                logger.warning("Discarding unreadable cache entry %s", key)
                await self._cache.delete(key)

        run = await self._repository.get_scan_by_id(scan_id)
        if run is None:
            return None
        detail = ScanDetail(run=run, picks=await self._repository.get_picks_by_scan(scan_id))
        await self._cache.set(key, detail.model_dump_json())
        return detail

    def warmers(self, topic: str) -> list[CacheWarmer]:
        """Providers for ``ServiceCache.warm`` covering the hot keys at default limits."""
        return [
            CacheWarmer(key=CacheKey.today_picks(topic), loader=self._load_today_picks(topic)),
            CacheWarmer(key=CacheKey.PICK_STATS, loader=self._load_pick_stats),
            CacheWarmer(
                key=CacheKey.recent_scans(DEFAULT_RECENT_LIMIT),
                loader=self._load_recent_scans(DEFAULT_RECENT_LIMIT),
            ),
        ]

    # ------------------------------------------------------------------
    # Loaders: each returns the JSON payload stored under its key
    # ------------------------------------------------------------------

    def _load_today_picks(self, topic: str) -> Callable[[], Awaitable[str]]:
        async def _load() -> str:
            picks = await self._repository.get_current_picks(topic)
            return _PICKS.dump_json(picks).decode()

        return _load

    async def _load_pick_stats(self) -> str:
        stats = await self._repository.get_pick_stats()
        return stats.model_dump_json()

    def _load_recent_scans(self, limit: int) -> Callable[[], Awaitable[str]]:
        async def _load() -> str:
            runs = await self._repository.list_scan_runs(limit=limit)
            return _RUNS.dump_json(runs).decode()

        return _load

    def _load_history(self, topic: str, limit: int) -> Callable[[], Awaitable[str]]:
        async def _load() -> str:
            runs = await self._repository.get_history(topic, limit=limit)
            return _RUNS.dump_json(runs).decode()

        return _load

    async def _read_through(
        self,
        key: str,
        adapter: TypeAdapter[T],
        loader: Callable[[], Awaitable[str]],
    ) -> T:
        """Return the cached value under *key*, loading and storing it on a miss.

        An entry that no longer validates is dropped and reloaded.
        """
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return adapter.validate_json(cached)
            except ValidationError:
                logger.warning("Discarding unreadable cache entry %s", key)
                await self._cache.delete(key)
        value = await loader()
        await self._cache.set(key, value)
        return adapter.validate_json(value)
