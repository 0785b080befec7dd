"""Scan coordinator: the single entry point for running a scan.

Drives one harvest-analyze-persist cycle::

    fetching (20-40%) -> analyzing (50-80%) -> persisting (90%) -> complete (100%)

A process-wide guard (an ``asyncio.Lock`` owned by the coordinator) makes
scans single-flight: a request that arrives while a scan is running gets a
``busy`` result immediately and is not queued.  ``run_scan`` never raises;
every outcome is reported as a ``ScanResult``.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import re
import secrets
import time
from typing import Final

from Pick_Sync.agents.analyzer import BatchAnalyzer
from Pick_Sync.data.repository import Repository
from Pick_Sync.models import (
    Pick,
    RawItem,
    ScanResult,
    ScanRun,
    ScanStatus,
    ScanStatusSnapshot,
    ScanStep,
    ScanTrigger,
    TopicListing,
)
from Pick_Sync.scanner.state import IncrementalBookmark, ScanStateTracker
from Pick_Sync.services.cache import CacheKey, ServiceCache
from Pick_Sync.services.source import SourceAdapter
from Pick_Sync.utils.exceptions import PickSyncError, ScanInProgressError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCAN_EVENT: Final[str] = "scan"

# Downstream response caches that go stale when a scan completes.
INVALIDATED_KEYS: Final[tuple[str, ...]] = (CacheKey.PICK_STATS,)
INVALIDATED_PATTERNS: Final[tuple[str, ...]] = (
    CacheKey.TODAY_PICKS_PATTERN,
    CacheKey.RECENT_SCANS_PATTERN,
    CacheKey.HISTORY_PATTERN,
    CacheKey.SCAN_DETAIL_PATTERN,
)

_MONTHS = "Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec"
_DATE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"\d{1,2}-\d{1,2}-\d{2,4}"),
    re.compile(rf"(?:{_MONTHS})[a-z]*\.?\s+\d{{1,2}}", re.IGNORECASE),
    re.compile(rf"\d{{1,2}}\s+(?:{_MONTHS})", re.IGNORECASE),
)


def extract_grouping_key(title: str, *, today: datetime.date | None = None) -> str:
    """Derive the grouping key (a date string) from a thread title.

    ``"Pick of the Day - 3/14/25"`` gives ``"3/14/25"`` and ``"POTD Mar 14"``
    gives ``"Mar 14"``.  Titles without a recognisable date fall back to
    *today* (default: the current local date) formatted as ``M/D/YYYY``.
    """
    for pattern in _DATE_PATTERNS:
        match = pattern.search(title)
        if match:
            return match.group(0)
    day = today or datetime.date.today()  # noqa: DTZ011
    return f"{day.month}/{day.day}/{day.year}"


def new_scan_id() -> str:
    """Return a unique, time-ordered scan id like ``scan_1718000000000_a1b2c3``."""
    return f"scan_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class ScanCoordinator:
    """Run scans one at a time and report each outcome as a ``ScanResult``.

    Usage::

        coordinator = ScanCoordinator(source, analyzer, repo, cache, topic="sportsbook:potd")
        result = await coordinator.run_scan(ScanTrigger.MANUAL)
        if result.busy:
            ...  # another scan holds the guard
    """

    def __init__(
        self,
        source: SourceAdapter,
        analyzer: BatchAnalyzer,
        repository: Repository,
        cache: ServiceCache,
        *,
        topic: str,
        tracker: ScanStateTracker | None = None,
        incremental: bool = False,
    ) -> None:
        self._source = source
        self._analyzer = analyzer
        self._repository = repository
        self._cache = cache
        self._topic = topic
        self._tracker = tracker or ScanStateTracker()
        self._bookmark = IncrementalBookmark(repository)
        self._incremental = incremental
        self._guard = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    @property
    def tracker(self) -> ScanStateTracker:
        return self._tracker

    def status(self) -> ScanStatusSnapshot:
        """Return the live scan status (progress, step, elapsed time)."""
        return self._tracker.snapshot()

    async def run_scan(
        self,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
        *,
        incremental: bool | None = None,
    ) -> ScanResult:
        """Run one scan unless another is already in progress.

        Args:
            trigger: What requested the scan (timer or manual), for the log.
            incremental: Only analyze items newer than the last run's
                bookmark. Defaults to the coordinator's setting.

        Returns:
            A ``ScanResult``; ``busy=True`` if the guard was already held.
        """
        try:
            await self._claim_guard()
        except ScanInProgressError as exc:
            logger.warning("Scan requested by %s while another is running", trigger)
            return ScanResult(success=False, busy=True, message=str(exc))

        try:
            use_incremental = self._incremental if incremental is None else incremental
            return await self._run(trigger, incremental=use_incremental)
        finally:
            self._guard.release()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _claim_guard(self) -> None:
        """Take the guard, or raise if it is held.

        An uncontended ``Lock.acquire()`` returns without suspending, so no
        other task can run between the check and the claim.
        """
        if self._guard.locked():
            msg = "Scan already running"
            raise ScanInProgressError(msg)
        await self._guard.acquire()

    async def _run(self, trigger: ScanTrigger, *, incremental: bool) -> ScanResult:
        start = time.monotonic()
        run = ScanRun(
            id=new_scan_id(),
            topic=self._topic,
            grouping_key="",
            started_at=datetime.datetime.now(datetime.UTC),
        )
        stage = ScanStep.FETCHING
        logger.info("Scan %s started (trigger=%s, incremental=%s)", run.id, trigger, incremental)

        try:
            self._tracker.reset()

            # Fetch
            run = run.transition(ScanStatus.FETCHING)
            self._tracker.update(ScanStep.FETCHING, 20, "Fetching topic listing...")
            listing = await self._source.fetch_topic_items(newest_first=incremental)
            items = await self._select_items(listing, incremental=incremental)
            run = run.transition(
                ScanStatus.ANALYZING,
                title=listing.title,
                url=listing.url,
                grouping_key=extract_grouping_key(listing.title),
                source_item_count=len(items),
            )
            self._tracker.update(ScanStep.FETCHING, 40, f"Found {len(items)} items")

            if incremental and not items:
                return await self._finish_unchanged(run, trigger, start)

            # Analyze
            stage = ScanStep.ANALYZING
            self._tracker.update(ScanStep.ANALYZING, 50, "Analyzing items...")
            analysis = await self._analyzer.analyze(items, on_batch=self._on_batch)
            self._tracker.update(
                ScanStep.ANALYZING, 80, f"Extracted {len(analysis.picks)} picks"
            )
            if not analysis.picks:
                msg = f"No picks extracted from {len(items)} source items"
                raise PickSyncError(msg)

            # Persist
            stage = ScanStep.PERSISTING
            run = run.transition(
                ScanStatus.PERSISTING,
                extracted_item_count=len(analysis.picks),
                batch_count=analysis.batch_count,
                cost_units=analysis.cost_units,
            )
            self._tracker.update(ScanStep.PERSISTING, 90, "Saving picks...")
            duration_ms = _elapsed_ms(start)
            completed = run.transition(ScanStatus.COMPLETED, duration_ms=duration_ms)
            scan_id, saved = await self._persist(
                completed, analysis.picks, incremental=incremental
            )
            if incremental:
                await self._bookmark.advance(listing.items)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(run, exc, stage=stage, trigger=trigger, start=start)

        await self._invalidate_caches()
        message = f"Successfully analyzed {saved} picks in {duration_ms / 1000:.1f}s"
        await self._log_event(scan_id, success=True, message=message)
        self._tracker.update(ScanStep.COMPLETE, 100, f"Saved {saved} picks successfully")
        logger.info(
            "Scan %s completed: %d picks, %d items, %d batches (%d failed), cost=%d, %.1fs",
            scan_id,
            saved,
            run.source_item_count,
            analysis.batch_count,
            analysis.failed_batches,
            analysis.cost_units,
            duration_ms / 1000,
        )
        return ScanResult(
            success=True,
            scan_id=scan_id,
            status=ScanStatus.COMPLETED,
            grouping_key=run.grouping_key,
            pick_count=saved,
            source_item_count=run.source_item_count,
            batch_count=analysis.batch_count,
            failed_batches=analysis.failed_batches,
            cost_units=analysis.cost_units,
            duration_ms=duration_ms,
            message=message,
        )

    async def _select_items(self, listing: TopicListing, *, incremental: bool) -> list[RawItem]:
        if not incremental:
            return list(listing.items)
        return await self._bookmark.filter_new(listing.items)

    async def _persist(
        self, run: ScanRun, picks: list[Pick], *, incremental: bool
    ) -> tuple[str, int]:
        """Store the run's picks; returns ``(scan_id, saved_count)``.

        An incremental pass over the thread that is already current appends
        its picks to that run instead of replacing it, adding this pass's
        item, batch and cost counts to the stored run.
        """
        if incremental:
            current = await self._repository.get_current(run.topic)
            if current is not None and current.grouping_key == run.grouping_key:
                summary = await self._repository.append_picks(
                    current.id,
                    picks,
                    source_item_count=run.source_item_count,
                    batch_count=run.batch_count,
                    cost_units=run.cost_units,
                )
                logger.info("Appended %d picks to current scan %s", summary.saved, current.id)
                return current.id, summary.saved

        stored, summary = await self._repository.save_scan_with_picks(run, picks)
        return stored.id, summary.saved

    async def _finish_unchanged(
        self, run: ScanRun, trigger: ScanTrigger, start: float
    ) -> ScanResult:
        duration_ms = _elapsed_ms(start)
        message = "No new items since the last scan"
        logger.info("Scan %s (trigger=%s): %s", run.id, trigger, message)
        await self._log_event(run.id, success=True, message=message)
        self._tracker.update(ScanStep.COMPLETE, 100, message)
        return ScanResult(
            success=True,
            status=ScanStatus.COMPLETED,
            grouping_key=run.grouping_key,
            duration_ms=duration_ms,
            message=message,
        )

    async def _fail(
        self,
        run: ScanRun,
        exc: Exception,
        *,
        stage: ScanStep,
        trigger: ScanTrigger,
        start: float,
    ) -> ScanResult:
        duration_ms = _elapsed_ms(start)
        error = str(exc) or type(exc).__name__
        if isinstance(exc, PickSyncError):
            logger.error(
                "Scan %s failed during %s after %.1fs (trigger=%s): %s",
                run.id,
                stage,
                duration_ms / 1000,
                trigger,
                error,
            )
        else:
            logger.exception(
                "Scan %s crashed during %s after %.1fs (trigger=%s)",
                run.id,
                stage,
                duration_ms / 1000,
                trigger,
            )
        await self._log_event(run.id, success=False, message=f"Scan failed: {error}")
        self._tracker.set_error(error)
        return ScanResult(
            success=False,
            scan_id=run.id,
            status=ScanStatus.FAILED,
            grouping_key=run.grouping_key or None,
            source_item_count=run.source_item_count,
            duration_ms=duration_ms,
            message=f"Scan failed during {stage}",
            error=error,
        )

    # ------------------------------------------------------------------
    # Side effects that must not fail the scan
    # ------------------------------------------------------------------

    def _on_batch(self, batch_number: int, total: int) -> None:
        progress = 50 + (30 * batch_number) // total
        self._tracker.update(
            ScanStep.ANALYZING, min(progress, 79), f"Analyzed batch {batch_number}/{total}"
        )

    async def _invalidate_caches(self) -> None:
        removed = 0
        for key in INVALIDATED_KEYS:
            removed += await self._cache.delete(key)
        for pattern in INVALIDATED_PATTERNS:
            removed += await self._cache.invalidate_pattern(pattern)
        logger.debug("Invalidated %d downstream cache entries", removed)

    async def _log_event(self, scan_id: str | None, *, success: bool, message: str) -> None:
        try:
            await self._repository.log_scheduler_event(
                SCAN_EVENT, scan_id=scan_id, success=success, message=message
            )
        except Exception:
            logger.exception("Failed to write operational log entry for %s", scan_id)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
