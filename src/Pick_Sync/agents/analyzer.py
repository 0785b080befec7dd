"""Batch analyzer: chunk, memoize, analyze, enrich, rank.

Processes a topic's raw items in bounded, order-preserving batches.  Each
batch is fingerprinted by content; a cached fingerprint skips the analysis
service entirely.  A failing batch (timeout, HTTP error, malformed reply)
contributes zero picks and the run carries on with the remaining batches.

Batches run strictly one after another with a short pause in between, so a
run never has more than one request in flight against the analysis service.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from collections.abc import Callable, Sequence
from typing import Final, TypeVar

import httpx
import pydantic
from pydantic import TypeAdapter

from Pick_Sync.agents.analysis_client import AnalysisService
from Pick_Sync.config import Settings
from Pick_Sync.models import AnalysisResult, BatchAnalysis, ExtractedPick, Pick, RawItem
from Pick_Sync.services.cache import TTL_ANALYSIS_BATCH, CacheKey, ServiceCache
from Pick_Sync.utils.exceptions import AnalysisBatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE: Final[int] = 15
DEFAULT_BATCH_TIMEOUT: Final[float] = 60.0
DEFAULT_INTER_BATCH_DELAY: Final[float] = 1.0
DEFAULT_CONFIDENCE: Final[int] = 47

# A signed American line ("-110", "+150") or a parenthesised decimal price ("(1.91)").
_QUANTITY_RE: re.Pattern[str] = re.compile(r"([+-]\d+)|\((\d+\.\d+)\)")

_EXTRACTIONS_ADAPTER: TypeAdapter[list[ExtractedPick]] = TypeAdapter(list[ExtractedPick])

BatchProgressCallback = Callable[[int, int], None]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split *items* into contiguous batches of at most *size* elements.

    Order is preserved and the concatenation of the batches equals *items*.

    Raises:
        ValueError: If *size* is less than 1.
    """
    if size < 1:
        msg = f"Batch size must be >= 1, got {size}."
        raise ValueError(msg)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def batch_fingerprint(batch: Sequence[RawItem]) -> str:
    """Return the md5 hex digest of the batch's ``(author, text)`` pairs, in order."""
    payload = json.dumps(
        [{"author": item.author, "text": item.text} for item in batch],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.md5(payload.encode("utf-8")).hexdigest()  # noqa: S324


def derive_quantity(action: str) -> str | None:
    """Return the first odds-like token in *action*, e.g. ``"-110"``, or None."""
    match = _QUANTITY_RE.search(action)
    return match.group(0) if match else None


def _compose_reasoning(extraction: ExtractedPick) -> str:
    if not extraction.key_factors:
        return extraction.reasoning
    return f"{extraction.reasoning} | {', '.join(extraction.key_factors)}"


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class BatchAnalyzer:
    """Run raw items through the analysis service in memoized batches.

    Usage::

        analyzer = BatchAnalyzer(service, cache, batch_size=15)
        result = await analyzer.analyze(listing.items)
        result.picks  # enriched and ranked, rank 1 = most confident
    """

    def __init__(
        self,
        service: AnalysisService,
        cache: ServiceCache,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY,
        cache_ttl_seconds: int = TTL_ANALYSIS_BATCH,
        default_confidence: int = DEFAULT_CONFIDENCE,
    ) -> None:
        if batch_size < 1:
            msg = f"Batch size must be >= 1, got {batch_size}."
            raise ValueError(msg)
        self._service = service
        self._cache = cache
        self._batch_size = batch_size
        self._batch_timeout = batch_timeout
        self._inter_batch_delay = inter_batch_delay
        self._cache_ttl_seconds = cache_ttl_seconds
        self._default_confidence = default_confidence

    @classmethod
    def from_settings(
        cls, service: AnalysisService, cache: ServiceCache, settings: Settings
    ) -> BatchAnalyzer:
        return cls(
            service,
            cache,
            batch_size=settings.batch_size,
            batch_timeout=settings.analysis_timeout_seconds,
            inter_batch_delay=settings.inter_batch_delay_seconds,
            cache_ttl_seconds=settings.batch_cache_ttl_seconds,
            default_confidence=settings.default_confidence,
        )

    async def analyze(
        self,
        raw_items: Sequence[RawItem],
        *,
        on_batch: BatchProgressCallback | None = None,
    ) -> AnalysisResult:
        """Extract, enrich and rank picks from *raw_items*.

        Args:
            raw_items: Source items in source order.
            on_batch: Called with ``(batch_number, batch_count)`` after each
                batch, whether it succeeded, failed or came from cache.

        Returns:
            Ranked picks with aggregate cost, batch and failure counts.
        """
        if not raw_items:
            logger.info("No source items to analyze")
            return AnalysisResult(picks=[])

        batches = partition(raw_items, self._batch_size)
        total = len(batches)
        logger.info(
            "Analyzing %d items in %d batches of up to %d",
            len(raw_items),
            total,
            self._batch_size,
        )

        extractions: list[ExtractedPick] = []
        cost_units = 0
        failed = 0
        cached = 0

        for batch_number, batch in enumerate(batches, start=1):
            cache_key = CacheKey.batch(batch_fingerprint(batch))

            hit = await self._cached_extractions(cache_key)
            if hit is not None:
                logger.info("Batch %d/%d: using cached analysis", batch_number, total)
                extractions.extend(hit)
                cached += 1
            else:
                analysis = await self._analyze_one(batch, batch_number, total)
                if analysis is None:
                    failed += 1
                else:
                    extractions.extend(analysis.picks)
                    cost_units += analysis.cost_units
                    await self._cache.set(
                        cache_key,
                        _EXTRACTIONS_ADAPTER.dump_json(analysis.picks).decode("utf-8"),
                        self._cache_ttl_seconds,
                    )
                if batch_number < total and self._inter_batch_delay > 0:
                    await asyncio.sleep(self._inter_batch_delay)

            if on_batch is not None:
                on_batch(batch_number, total)

        picks = self._rank(self._enrich(extractions, raw_items))
        logger.info(
            "Analysis complete: %d picks, %d batches (%d cached, %d failed), cost=%d",
            len(picks),
            total,
            cached,
            failed,
            cost_units,
        )
        return AnalysisResult(
            picks=picks,
            cost_units=cost_units,
            batch_count=total,
            failed_batches=failed,
            cached_batches=cached,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _cached_extractions(self, cache_key: str) -> list[ExtractedPick] | None:
        raw = await self._cache.get(cache_key)
        if raw is None:
            return None
        try:
            return _EXTRACTIONS_ADAPTER.validate_json(raw)
        except pydantic.ValidationError as exc:
            logger.warning("Discarding corrupt batch cache entry %s: %s", cache_key, exc)
            await self._cache.delete(cache_key)
            return None

    async def _analyze_one(
        self, batch: list[RawItem], batch_number: int, total: int
    ) -> BatchAnalysis | None:
        """Call the analysis service for one batch; None means the batch failed."""
        try:
            return await asyncio.wait_for(
                self._service.analyze_batch(batch, batch_number=batch_number),
                timeout=self._batch_timeout,
            )
        except TimeoutError:
            logger.error(
                "Batch %d/%d timed out after %.0fs, continuing",
                batch_number,
                total,
                self._batch_timeout,
            )
        except (AnalysisBatchError, httpx.HTTPError, OSError) as exc:
            logger.error("Batch %d/%d failed, continuing: %s", batch_number, total, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Batch %d/%d crashed, continuing", batch_number, total)
        return None

    def _enrich(
        self, extractions: list[ExtractedPick], raw_items: Sequence[RawItem]
    ) -> list[Pick]:
        """Join each extraction to the first source item by the same author."""
        by_author: dict[str, RawItem] = {}
        for item in raw_items:
            by_author.setdefault(item.author, item)

        picks: list[Pick] = []
        for position, extraction in enumerate(extractions, start=1):
            origin = by_author.get(extraction.poster)
            confidence = (
                self._default_confidence
                if extraction.confidence is None
                else extraction.confidence
            )
            picks.append(
                Pick(
                    rank=position,
                    confidence=confidence,
                    category=extraction.category,
                    subject=extraction.subject,
                    action=extraction.action,
                    derived_quantity=derive_quantity(extraction.action),
                    source_item_id=origin.id if origin else "",
                    source_author=extraction.poster,
                    source_score=origin.score if origin else 0,
                    source_text=origin.text if origin else "",
                    source_record=(
                        extraction.poster_record or (origin.record if origin else None)
                    ),
                    reasoning=_compose_reasoning(extraction),
                    key_factors=list(extraction.key_factors),
                    risk_level=extraction.risk_level,
                    units=extraction.units,
                )
            )
        return picks

    @staticmethod
    def _rank(picks: list[Pick]) -> list[Pick]:
        """Stable sort by confidence descending and renumber ranks from 1."""
        ordered = sorted(picks, key=lambda p: p.confidence, reverse=True)
        return [p.model_copy(update={"rank": rank}) for rank, p in enumerate(ordered, start=1)]

