"""Tests for the batch analyzer: partitioning, memoization, enrichment, ranking.

The analysis service is replaced by a scripted fake so that each test
controls exactly which batches succeed, fail or time out.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import httpx
import pytest
from pydantic import TypeAdapter

from Pick_Sync.agents.analysis_client import LLMAnalysisService
from Pick_Sync.agents.analyzer import (
    BatchAnalyzer,
    batch_fingerprint,
    derive_quantity,
    partition,
)
from Pick_Sync.agents.llm_client import OpenRouterClient
from Pick_Sync.config import Settings
from Pick_Sync.models import BatchAnalysis, ExtractedPick, RawItem
from Pick_Sync.services.cache import CacheKey, ServiceCache
from Pick_Sync.utils.exceptions import AnalysisBatchError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

Outcome = BatchAnalysis | BaseException


class ScriptedService:
    """Fake AnalysisService: returns one extraction per item unless scripted."""

    def __init__(self, script: dict[int, Outcome] | None = None) -> None:
        self.script = script or {}
        self.calls: list[list[RawItem]] = []

    async def analyze_batch(
        self, items: Sequence[RawItem], *, batch_number: int | None = None
    ) -> BatchAnalysis:
        self.calls.append(list(items))
        outcome = self.script.get(len(self.calls))
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return BatchAnalysis(
            picks=[
                ExtractedPick(poster=item.author, action=item.text, confidence=50)
                for item in items
            ],
            cost_units=100,
        )


class SlowService(ScriptedService):
    async def analyze_batch(
        self, items: Sequence[RawItem], *, batch_number: int | None = None
    ) -> BatchAnalysis:
        await asyncio.sleep(1.0)
        return await super().analyze_batch(items, batch_number=batch_number)


def _analyzer(
    service: ScriptedService, cache: ServiceCache, *, batch_size: int = 15
) -> BatchAnalyzer:
    return BatchAnalyzer(service, cache, batch_size=batch_size, inter_batch_delay=0)


def _seeded_json(extractions: list[ExtractedPick]) -> str:
    return TypeAdapter(list[ExtractedPick]).dump_json(extractions).decode()


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestPartition:
    @pytest.mark.parametrize(
        ("count", "size", "sizes"),
        [
            (0, 15, []),
            (1, 15, [1]),
            (15, 15, [15]),
            (16, 15, [15, 1]),
            (32, 15, [15, 15, 2]),
            (7, 1, [1] * 7),
        ],
    )
    def test_batch_sizes(self, count: int, size: int, sizes: list[int]) -> None:
        assert [len(b) for b in partition(list(range(count)), size)] == sizes

    def test_order_preserved(self) -> None:
        items = list(range(40))
        batches = partition(items, 15)
        assert [x for batch in batches for x in batch] == items
        assert all(1 <= len(b) <= 15 for b in batches)

    def test_rejects_zero_size(self) -> None:
        with pytest.raises(ValueError, match=">= 1"):
            partition([1, 2], 0)


class TestFingerprint:
    def test_same_content_same_fingerprint(self, sample_items: list[RawItem]) -> None:
        renamed = [item.model_copy(update={"id": "other", "score": 999}) for item in sample_items]
        assert batch_fingerprint(sample_items) == batch_fingerprint(renamed)

    def test_order_matters(self, sample_items: list[RawItem]) -> None:
        assert batch_fingerprint(sample_items) != batch_fingerprint(sample_items[::-1])

    def test_md5_hex(self, sample_items: list[RawItem]) -> None:
        fingerprint = batch_fingerprint(sample_items)
        assert len(fingerprint) == 32
        int(fingerprint, 16)


class TestDeriveQuantity:
    @pytest.mark.parametrize(
        ("action", "expected"),
        [
            ("Lakers -3.5 (-110)", "-3"),
            ("Chiefs ML +150", "+150"),
            ("Over 210.5 (1.91)", "(1.91)"),
            ("Yankees ML", None),
        ],
    )
    def test_first_odds_token(self, action: str, expected: str | None) -> None:
        assert derive_quantity(action) == expected


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class TestAnalyze:
    @pytest.mark.asyncio()
    async def test_empty_input_makes_no_calls(self, cache: ServiceCache) -> None:
        service = ScriptedService()
        result = await _analyzer(service, cache).analyze([])

        assert result.picks == []
        assert result.batch_count == 0
        assert service.calls == []

    @pytest.mark.asyncio()
    async def test_thirty_two_items_make_three_batches(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        service = ScriptedService()
        progress: list[tuple[int, int]] = []

        result = await _analyzer(service, cache).analyze(
            make_items(32), on_batch=lambda n, total: progress.append((n, total))
        )

        assert [len(call) for call in service.calls] == [15, 15, 2]
        assert result.batch_count == 3
        assert result.failed_batches == 0
        assert result.cost_units == 300
        assert len(result.picks) == 32
        assert progress == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio()
    async def test_failed_batch_contributes_nothing(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        service = ScriptedService({2: AnalysisBatchError("HTTP 500", http_status=500)})

        result = await _analyzer(service, cache).analyze(make_items(32))

        assert len(service.calls) == 3
        assert result.failed_batches == 1
        assert len(result.picks) == 17
        assert result.cost_units == 200

    @pytest.mark.asyncio()
    async def test_cached_middle_batch_and_failed_last_batch(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        items = make_items(32)
        seeded = [ExtractedPick(poster=item.author, action=item.text) for item in items[15:30]]
        await cache.set(
            CacheKey.batch(batch_fingerprint(items[15:30])),
            _seeded_json(seeded),
        )
        service = ScriptedService({2: AnalysisBatchError("HTTP 502", http_status=502)})

        result = await _analyzer(service, cache).analyze(items)

        assert [len(call) for call in service.calls] == [15, 2]
        assert result.batch_count == 3
        assert result.cached_batches == 1
        assert result.failed_batches == 1
        assert result.cost_units == 100
        assert {p.source_author for p in result.picks} == {item.author for item in items[:30]}

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        "body",
        [
            {"choices": ["just text"]},
            {"choices": [{"message": {"content": {"picks": []}}}]},
            {"choices": [{"message": {"content": "[]"}}], "usage": {"total_tokens": "many"}},
        ],
    )
    async def test_malformed_service_reply_fails_only_its_batch(
        self,
        cache: ServiceCache,
        make_items: Callable[[int], list[RawItem]],
        body: object,
    ) -> None:
        client = OpenRouterClient(
            "sk-test",
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body))
            ),
        )
        analyzer = BatchAnalyzer(
            LLMAnalysisService(client), cache, batch_size=2, inter_batch_delay=0
        )

        result = await analyzer.analyze(make_items(4))
        await client.aclose()

        assert result.batch_count == 2
        assert result.failed_batches == 2
        assert result.picks == []

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("refused"),
            OSError("network unreachable"),
            AnalysisBatchError("Unparseable model output"),
            KeyError("choices"),
            TypeError("'NoneType' object is not subscriptable"),
        ],
    )
    async def test_batch_errors_are_absorbed(
        self,
        cache: ServiceCache,
        make_items: Callable[[int], list[RawItem]],
        error: BaseException,
    ) -> None:
        result = await _analyzer(ScriptedService({1: error}), cache).analyze(make_items(3))
        assert result.failed_batches == 1
        assert result.picks == []

    @pytest.mark.asyncio()
    async def test_timeout_fails_the_batch(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        analyzer = BatchAnalyzer(
            SlowService(), cache, batch_timeout=0.01, inter_batch_delay=0
        )
        result = await analyzer.analyze(make_items(2))
        assert result.failed_batches == 1
        assert result.picks == []

    @pytest.mark.asyncio()
    async def test_cached_batch_skips_service(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        items = make_items(20)
        first = ScriptedService()
        await _analyzer(first, cache).analyze(items)

        second = ScriptedService()
        result = await _analyzer(second, cache).analyze(items)

        assert second.calls == []
        assert result.cached_batches == 2
        assert result.cost_units == 0
        assert len(result.picks) == 20

    @pytest.mark.asyncio()
    async def test_failed_batch_is_not_cached(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        items = make_items(3)
        await _analyzer(ScriptedService({1: AnalysisBatchError("boom")}), cache).analyze(items)

        retry = ScriptedService()
        await _analyzer(retry, cache).analyze(items)
        assert len(retry.calls) == 1

    @pytest.mark.asyncio()
    async def test_corrupt_cache_entry_is_a_miss(
        self, cache: ServiceCache, make_items: Callable[[int], list[RawItem]]
    ) -> None:
        items = make_items(2)
        key = CacheKey.batch(batch_fingerprint(items))
        await cache.set(key, "{not json")

        service = ScriptedService()
        result = await _analyzer(service, cache).analyze(items)

        assert len(service.calls) == 1
        assert len(result.picks) == 2

    @pytest.mark.asyncio()
    async def test_inter_batch_delay_between_calls(
        self,
        cache: ServiceCache,
        make_items: Callable[[int], list[RawItem]],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        monkeypatch.setattr("Pick_Sync.agents.analyzer.asyncio.sleep", fake_sleep)
        analyzer = BatchAnalyzer(ScriptedService(), cache, batch_size=15, inter_batch_delay=1.0)
        await analyzer.analyze(make_items(32))

        assert sleeps == [1.0, 1.0]


class TestEnrichAndRank:
    @pytest.mark.asyncio()
    async def test_ranked_by_confidence_with_stable_ties(
        self, cache: ServiceCache, sample_items: list[RawItem]
    ) -> None:
        extractions = [
            ExtractedPick(poster="a", action="A", confidence=60),
            ExtractedPick(poster="b", action="B", confidence=90),
            ExtractedPick(poster="c", action="C", confidence=60),
            ExtractedPick(poster="d", action="D", confidence=75),
        ]
        service = ScriptedService({1: BatchAnalysis(picks=extractions)})

        result = await _analyzer(service, cache).analyze(sample_items)

        assert [p.action for p in result.picks] == ["B", "D", "A", "C"]
        assert [p.rank for p in result.picks] == [1, 2, 3, 4]
        confidences = [p.confidence for p in result.picks]
        assert confidences == sorted(confidences, reverse=True)

    @pytest.mark.asyncio()
    async def test_joins_source_item_by_author(
        self, cache: ServiceCache, sample_items: list[RawItem]
    ) -> None:
        extraction = ExtractedPick(
            poster="sharp_sam",
            action="Lakers -3.5 (-110)",
            confidence=88,
            reasoning="Davis back",
            key_factors=["rest", "home court"],
        )
        service = ScriptedService({1: BatchAnalysis(picks=[extraction])})

        (pick,) = (await _analyzer(service, cache).analyze(sample_items)).picks

        assert pick.source_item_id == "c3"
        assert pick.source_score == 42
        assert pick.source_record == "12-4"
        assert pick.source_text.startswith("Record: 12-4")
        assert pick.derived_quantity == "-3"
        assert pick.reasoning == "Davis back | rest, home court"

    @pytest.mark.asyncio()
    async def test_unmatched_author_keeps_pick_without_source(
        self, cache: ServiceCache, sample_items: list[RawItem]
    ) -> None:
        extraction = ExtractedPick(poster="ghost", action="Jets +7", confidence=41)
        service = ScriptedService({1: BatchAnalysis(picks=[extraction])})

        (pick,) = (await _analyzer(service, cache).analyze(sample_items)).picks

        assert pick.source_author == "ghost"
        assert pick.source_item_id == ""
        assert pick.source_score == 0
        assert pick.source_record is None

    @pytest.mark.asyncio()
    async def test_missing_confidence_gets_default(
        self, cache: ServiceCache, sample_items: list[RawItem]
    ) -> None:
        extraction = ExtractedPick(poster="unit_queen", action="Chiefs ML +150")
        service = ScriptedService({1: BatchAnalysis(picks=[extraction])})
        analyzer = BatchAnalyzer(service, cache, inter_batch_delay=0, default_confidence=47)

        (pick,) = (await analyzer.analyze(sample_items)).picks

        assert pick.confidence == 47


class TestConstruction:
    def test_rejects_zero_batch_size(self, cache: ServiceCache) -> None:
        with pytest.raises(ValueError, match=">= 1"):
            BatchAnalyzer(ScriptedService(), cache, batch_size=0)

    def test_from_settings(self, cache: ServiceCache) -> None:
        settings = Settings(batch_size=10, inter_batch_delay_seconds=0.5, default_confidence=50)
        analyzer = BatchAnalyzer.from_settings(ScriptedService(), cache, settings)
        assert analyzer._batch_size == 10
        assert analyzer._inter_batch_delay == 0.5
        assert analyzer._default_confidence == 50
