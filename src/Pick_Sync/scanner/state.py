"""Live scan status and the incremental-fetch bookmark.

``ScanStateTracker`` holds the single in-memory status record that pollers
read while a scan runs.  It is process-local and lost on restart.

``IncrementalBookmark`` remembers the newest source item seen by the last
successful run (persisted in the ``scan_state`` table) so that a later run
can restrict itself to items that arrived since.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Sequence

from Pick_Sync.data.repository import Repository
from Pick_Sync.models import RawItem, ScanStateRecord, ScanStatusSnapshot, ScanStep

logger = logging.getLogger(__name__)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class ScanStateTracker:
    """Mutable, single-record scan status.

    Each ``update`` replaces the whole record except ``started_at``, which is
    stamped on the first update after a reset and then carried along.
    """

    def __init__(self) -> None:
        self._scanning = False
        self._step = ScanStep.IDLE
        self._progress = 0
        self._detail = ""
        self._error: str | None = None
        self._started_at: datetime.datetime | None = None
        self._last_update = _now()

    def update(self, step: ScanStep, progress: int, detail: str = "") -> None:
        """Record a new step; ``scanning`` stays true until progress reaches 100."""
        progress = max(0, min(100, progress))
        now = _now()
        self._scanning = progress < 100  # noqa: PLR2004
        self._step = step
        self._progress = progress
        self._detail = detail
        self._error = None
        self._started_at = self._started_at or now
        self._last_update = now
        logger.info("Scan status: [%d%%] %s - %s", progress, step, detail)

    def set_error(self, error: str | BaseException) -> None:
        """Mark the scan as stopped with *error*, keeping step and progress."""
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
        else:
            message = error
        self._scanning = False
        self._error = message or "Unknown error"
        self._last_update = _now()
        logger.error("Scan error: %s", self._error)

    def reset(self) -> None:
        """Return to the idle record."""
        self._scanning = False
        self._step = ScanStep.IDLE
        self._progress = 0
        self._detail = ""
        self._error = None
        self._started_at = None
        self._last_update = _now()

    def snapshot(self) -> ScanStatusSnapshot:
        """Return a copy of the record with whole seconds elapsed since start."""
        elapsed = 0
        if self._started_at is not None:
            elapsed = int((_now() - self._started_at).total_seconds())
        return ScanStatusSnapshot(
            scanning=self._scanning,
            step=self._step,
            progress=self._progress,
            detail=self._detail,
            error=self._error,
            started_at=self._started_at,
            last_update=self._last_update,
            elapsed_seconds=elapsed,
        )


class IncrementalBookmark:
    """Filter a listing down to the items that are newer than the last run's.

    Listings must be fetched newest first (``fetch_topic_items(newest_first=True)``),
    so the first item is the newest top-level comment and everything before
    the bookmarked item is new. Replies posted later under an older comment
    sit after the bookmark and are not picked up.
    """

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def load(self) -> ScanStateRecord:
        return await self._repository.get_scan_state()

    async def filter_new(self, items: Sequence[RawItem]) -> list[RawItem]:
        """Return only the items that precede the bookmarked item.

        With no bookmark (first run), or when the bookmarked item is no longer
        in the listing, every item is returned.
        """
        state = await self.load()
        if state.last_source_item_id is None:
            logger.info("No bookmark yet, processing all %d items", len(items))
            return list(items)

        for index, item in enumerate(items):
            if item.id == state.last_source_item_id:
                logger.info("Incremental update: %d new of %d items", index, len(items))
                return list(items[:index])

        logger.warning(
            "Bookmarked item %s not in listing, processing all %d items",
            state.last_source_item_id,
            len(items),
        )
        return list(items)

    async def advance(self, items: Sequence[RawItem]) -> ScanStateRecord | None:
        """Bookmark the first item of a newest-first listing (no-op when empty).

        Flattening is depth-first, so that item is always the newest top-level
        comment rather than one of its replies.
        """
        if not items:
            return None
        record = await self._repository.save_scan_state(items[0].id)
        logger.debug("Bookmark advanced to %s", items[0].id)
        return record
