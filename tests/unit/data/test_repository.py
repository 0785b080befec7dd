"""Tests for Repository: all operations against an in-memory SQLite database.

Covers the persistence rules a scan relies on:
- at most one current run per topic
- same grouping key replaces the current run and its picks
- different grouping key demotes the current run to history
- idempotent pick inserts on the natural key
- a failed transactional write leaves the previous current run untouched
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import pytest

from Pick_Sync.data.database import Database
from Pick_Sync.data.repository import Repository
from Pick_Sync.models import Pick, PickOutcome, ScanRun
from Pick_Sync.utils.exceptions import PersistenceError

TOPIC = "sportsbook:potd"


def _picks(count: int) -> list[Pick]:
    return [
        Pick(
            rank=n + 1,
            confidence=90 - n,
            category="NBA",
            subject=f"Game {n}",
            action=f"Team {n} -110",
            source_author=f"capper{n}",
            key_factors=[f"factor {n}"],
        )
        for n in range(count)
    ]


async def _current_count(db: Database) -> int:
    cursor = await db.connection.execute(
        "SELECT COUNT(*) FROM scan_runs WHERE topic = ? AND is_current = 1", (TOPIC,)
    )
    row = await cursor.fetchone()
    assert row is not None
    return int(row[0])


class TestCurrentRun:
    @pytest.mark.asyncio()
    async def test_no_current_before_first_save(self, repo: Repository) -> None:
        assert await repo.get_current(TOPIC) is None
        assert await repo.get_current_picks(TOPIC) == []

    @pytest.mark.asyncio()
    async def test_saved_run_becomes_current(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        stored = await repo.save_scan_run(make_run("scan_1"))
        current = await repo.get_current(TOPIC)

        assert stored.is_current is True
        assert current is not None
        assert current.id == "scan_1"
        assert current.started_at == stored.started_at

    @pytest.mark.asyncio()
    async def test_different_key_demotes_previous(
        self, repo: Repository, db: Database, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_with_picks(make_run("scan_1", "10/18/2026"), _picks(2))
        await repo.save_scan_with_picks(make_run("scan_2", "10/19/2026"), _picks(3))

        current = await repo.get_current(TOPIC)
        history = await repo.get_history(TOPIC)

        assert current is not None
        assert current.id == "scan_2"
        assert [run.id for run in history] == ["scan_1"]
        assert history[0].is_current is False
        assert len(await repo.get_picks_by_scan("scan_1")) == 2
        assert await _current_count(db) == 1

    @pytest.mark.asyncio()
    async def test_same_key_replaces_current_and_its_picks(
        self, repo: Repository, db: Database, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_with_picks(make_run("scan_1", "10/19/2026"), _picks(2))
        await repo.save_scan_with_picks(make_run("scan_2", "10/19/2026"), _picks(1))

        assert await repo.get_scan_by_id("scan_1") is None
        assert await repo.get_picks_by_scan("scan_1") == []
        assert await repo.get_history(TOPIC) == []
        assert [p.subject for p in await repo.get_current_picks(TOPIC)] == ["Game 0"]
        assert await _current_count(db) == 1

    @pytest.mark.asyncio()
    async def test_topics_are_independent(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_run(make_run("scan_1"))
        await repo.save_scan_run(make_run("scan_2", topic="nba:potd"))

        current = await repo.get_current(TOPIC)
        assert current is not None
        assert current.id == "scan_1"

    @pytest.mark.asyncio()
    async def test_failed_write_keeps_previous_current(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_with_picks(make_run("scan_1", "10/18/2026"), _picks(2))

        with (
            patch(
                "Pick_Sync.data.repository._insert_picks",
                AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error")),
            ),
            pytest.raises(PersistenceError, match="disk I/O error"),
        ):
            await repo.save_scan_with_picks(make_run("scan_2", "10/19/2026"), _picks(3))

        current = await repo.get_current(TOPIC)
        assert current is not None
        assert current.id == "scan_1"
        assert await repo.get_scan_by_id("scan_2") is None
        assert len(await repo.get_picks_by_scan("scan_1")) == 2

    @pytest.mark.asyncio()
    async def test_list_scan_runs_paginates(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        for n in range(3):
            await repo.save_scan_run(make_run(f"scan_{n}", f"10/{10 + n}/2026"))

        assert len(await repo.list_scan_runs(limit=2)) == 2
        assert len(await repo.list_scan_runs(limit=2, offset=2)) == 1


class TestPicks:
    @pytest.mark.asyncio()
    async def test_round_trip_preserves_fields(
        self, repo: Repository, make_run: Callable[..., ScanRun], sample_pick: Pick
    ) -> None:
        await repo.save_scan_with_picks(make_run("scan_1"), [sample_pick])

        (stored,) = await repo.get_picks_by_scan("scan_1")

        assert stored.id is not None
        assert stored.scan_id == "scan_1"
        assert stored.key_factors == ["rest advantage"]
        assert stored.derived_quantity == "-110"
        assert stored.units == 2.0
        assert stored.outcome is PickOutcome.PENDING

    @pytest.mark.asyncio()
    async def test_insert_is_idempotent(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_run(make_run("scan_1"))
        picks = _picks(4)

        first = await repo.save_picks("scan_1", picks)
        second = await repo.save_picks("scan_1", picks)

        assert (first.saved, first.duplicates) == (4, 0)
        assert (second.saved, second.duplicates) == (0, 4)
        assert len(await repo.get_picks_by_scan("scan_1")) == 4

    @pytest.mark.asyncio()
    async def test_duplicates_within_one_batch(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        pick = _picks(1)[0]
        _, summary = await repo.save_scan_with_picks(make_run("scan_1"), [pick, pick])
        assert (summary.saved, summary.duplicates) == (1, 1)

    @pytest.mark.asyncio()
    async def test_save_no_picks(self, repo: Repository) -> None:
        summary = await repo.save_picks("scan_1", [])
        assert (summary.saved, summary.duplicates) == (0, 0)

    @pytest.mark.asyncio()
    async def test_picks_ordered_by_rank(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_with_picks(make_run("scan_1"), list(reversed(_picks(3))))
        assert [p.rank for p in await repo.get_picks_by_scan("scan_1")] == [1, 2, 3]

    @pytest.mark.asyncio()
    async def test_unknown_scan_violates_foreign_key(self, repo: Repository) -> None:
        with pytest.raises(PersistenceError):
            await repo.save_picks("missing", _picks(1))

    @pytest.mark.asyncio()
    async def test_outcome_annotation_and_delete(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        await repo.save_scan_with_picks(make_run("scan_1"), _picks(2))
        first, second = await repo.get_picks_by_scan("scan_1")
        assert first.id is not None
        assert second.id is not None

        assert await repo.update_pick_outcome(first.id, PickOutcome.WON, "covered") is True
        assert await repo.set_user_annotation(first.id, "tailed 1u") is True
        assert await repo.delete_pick(second.id) is True
        assert await repo.update_pick_outcome(9999, PickOutcome.LOST) is False
        assert await repo.delete_pick(9999) is False

        (updated,) = await repo.get_picks_by_scan("scan_1")
        assert updated.outcome is PickOutcome.WON
        assert updated.outcome_notes == "covered"
        assert updated.user_annotation == "tailed 1u"

    @pytest.mark.asyncio()
    async def test_pick_stats(self, repo: Repository, make_run: Callable[..., ScanRun]) -> None:
        await repo.save_scan_with_picks(make_run("scan_1"), _picks(4))
        picks = await repo.get_picks_by_scan("scan_1")
        await repo.update_pick_outcome(picks[0].id or 0, PickOutcome.WON)
        await repo.update_pick_outcome(picks[1].id or 0, PickOutcome.LOST)
        await repo.update_pick_outcome(picks[2].id or 0, PickOutcome.PUSH)

        stats = await repo.get_pick_stats()

        assert (stats.total, stats.won, stats.lost, stats.push, stats.pending) == (4, 1, 1, 1, 1)

    @pytest.mark.asyncio()
    async def test_pick_stats_empty(self, repo: Repository) -> None:
        stats = await repo.get_pick_stats()
        assert stats.total == 0
        assert stats.won == 0


class TestAppendPicks:
    @pytest.mark.asyncio()
    async def test_appends_after_last_rank_and_bumps_counters(
        self, repo: Repository, make_run: Callable[..., ScanRun]
    ) -> None:
        existing = _picks(2)
        await repo.save_scan_with_picks(make_run("scan_1", extracted_item_count=2), existing)
        newcomer = _picks(3)[2].model_copy(update={"rank": 1})

        summary = await repo.append_picks(
            "scan_1",
            [newcomer, existing[0]],
            source_item_count=2,
            batch_count=1,
            cost_units=300,
        )

        assert (summary.saved, summary.duplicates) == (1, 1)
        picks = await repo.get_picks_by_scan("scan_1")
        assert [(p.rank, p.subject) for p in picks] == [
            (1, "Game 0"),
            (2, "Game 1"),
            (3, "Game 2"),
        ]
        run = await repo.get_scan_by_id("scan_1")
        assert run is not None
        assert run.source_item_count == 5
        assert run.extracted_item_count == 3
        assert run.batch_count == 2
        assert run.cost_units == 1500

    @pytest.mark.asyncio()
    async def test_unknown_scan_writes_nothing(self, repo: Repository) -> None:
        with pytest.raises(PersistenceError, match="append"):
            await repo.append_picks(
                "missing", _picks(1), source_item_count=1, batch_count=1, cost_units=10
            )
        assert await repo.get_picks_by_scan("missing") == []


class TestOperationalLog:
    @pytest.mark.asyncio()
    async def test_newest_first(self, repo: Repository) -> None:
        await repo.log_scheduler_event("scheduler", scan_id=None, success=True, message="start")
        await repo.log_scheduler_event(
            "scan", scan_id="scan_1", success=False, message="Scan failed: boom"
        )

        events = await repo.get_scheduler_logs()

        assert [e.message for e in events] == ["Scan failed: boom", "start"]
        assert events[0].success is False
        assert events[0].scan_id == "scan_1"

    @pytest.mark.asyncio()
    async def test_limit(self, repo: Repository) -> None:
        for n in range(5):
            await repo.log_scheduler_event("scan", scan_id=None, success=True, message=str(n))
        assert len(await repo.get_scheduler_logs(limit=3)) == 3


class TestScanState:
    @pytest.mark.asyncio()
    async def test_empty_before_first_save(self, repo: Repository) -> None:
        state = await repo.get_scan_state()
        assert state.last_source_item_id is None
        assert state.last_scan_at is None

    @pytest.mark.asyncio()
    async def test_save_overwrites(self, repo: Repository) -> None:
        await repo.save_scan_state("c1")
        await repo.save_scan_state("c7")

        state = await repo.get_scan_state()

        assert state.last_source_item_id == "c7"
        assert state.last_scan_at is not None
