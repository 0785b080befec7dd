"""Repository layer for all database query operations.

Provides typed operations backed by a Database instance. All queries use
parameterized SQL (no string interpolation). JSON columns are serialized with
json.dumps() and deserialized with json.loads().

Write paths that make up a scan (promoting a run, saving its picks) run inside
``Database.transaction()`` and surface storage failures as
``PersistenceError``.
"""

import datetime
import json
import logging
import sqlite3

import aiosqlite

from Pick_Sync.data.database import Database
from Pick_Sync.models import (
    Pick,
    PickOutcome,
    PickStats,
    SaveSummary,
    ScanRun,
    ScanStateRecord,
    ScanStatus,
    SchedulerEvent,
)
from Pick_Sync.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

_SCAN_COLUMNS = (
    "id, topic, grouping_key, title, url, status, source_item_count, "
    "extracted_item_count, batch_count, cost_units, started_at, duration_ms, "
    "error_message, is_current"
)

_PICK_COLUMNS = (
    "id, scan_id, rank, confidence, category, subject, action, derived_quantity, "
    "source_item_id, source_author, source_score, source_text, source_record, "
    "reasoning, key_factors, risk_level, units, outcome, outcome_notes, user_annotation"
)


def _utcnow() -> str:
    return datetime.datetime.now(datetime.UTC).isoformat()


class Repository:
    """Query interface for the Pick Sync persistence layer.

    All methods operate through the provided Database instance's connection.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Scan runs
    # ------------------------------------------------------------------

    async def save_scan_run(self, run: ScanRun) -> ScanRun:
        """Store *run* as the current run of its topic.

        The topic's existing current run is either deleted together with its
        picks (same grouping key, i.e. a rerun over the same thread) or
        demoted to history (different grouping key). Both branches and the
        insert happen in one transaction.

        Returns:
            The run as stored, with ``is_current`` set.

        Raises:
            PersistenceError: If the storage engine rejects the write.
        """
        try:
            async with self._db.transaction() as conn:
                promoted = await _promote(conn, run)
        except sqlite3.Error as exc:
            msg = f"Failed to save scan run {run.id}: {exc}"
            raise PersistenceError(msg) from exc

        logger.info("Scan run %s is now current for %s", run.id, run.topic)
        return promoted

    async def save_scan_with_picks(
        self, run: ScanRun, picks: list[Pick]
    ) -> tuple[ScanRun, SaveSummary]:
        """Promote *run* and insert its picks in a single transaction.

        If anything fails, nothing is written and the previous current run
        stays current.

        Raises:
            PersistenceError: If the storage engine rejects the write.
        """
        try:
            async with self._db.transaction() as conn:
                promoted = await _promote(conn, run)
                saved = await _insert_picks(conn, run.id, picks)
        except sqlite3.Error as exc:
            msg = f"Failed to persist scan {run.id}: {exc}"
            raise PersistenceError(msg) from exc

        summary = SaveSummary(saved=saved, duplicates=len(picks) - saved)
        logger.info(
            "Scan run %s is now current for %s with %d picks (%d duplicates skipped)",
            run.id,
            run.topic,
            summary.saved,
            summary.duplicates,
        )
        return promoted, summary

    async def get_current(self, topic: str) -> ScanRun | None:
        """Return the current run of *topic*, or None before the first save."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_COLUMNS} FROM scan_runs "  # noqa: S608
            "WHERE topic = ? AND is_current = 1",
            (topic,),
        )
        row = await cursor.fetchone()
        return _row_to_scan_run(row) if row is not None else None

    async def get_history(self, topic: str, *, limit: int = 20) -> list[ScanRun]:
        """Return superseded runs of *topic*, most recent first."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_COLUMNS} FROM scan_runs "  # noqa: S608
            "WHERE topic = ? AND is_current = 0 ORDER BY started_at DESC LIMIT ?",
            (topic, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_scan_run(row) for row in rows]

    async def get_scan_by_id(self, scan_id: str) -> ScanRun | None:
        """Return a ScanRun by its ID, or None if not found."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_COLUMNS} FROM scan_runs WHERE id = ?",  # noqa: S608
            (scan_id,),
        )
        row = await cursor.fetchone()
        return _row_to_scan_run(row) if row is not None else None

    async def list_scan_runs(self, *, limit: int = 20, offset: int = 0) -> list[ScanRun]:
        """Return scan runs across all topics ordered by most recent, with pagination."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_COLUMNS} FROM scan_runs "  # noqa: S608
            "ORDER BY started_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        rows = await cursor.fetchall()
        return [_row_to_scan_run(row) for row in rows]

    # ------------------------------------------------------------------
    # Picks
    # ------------------------------------------------------------------

    async def save_picks(self, scan_id: str, picks: list[Pick]) -> SaveSummary:
        """Insert *picks* for *scan_id*, skipping natural-key duplicates.

        Calling this twice with the same picks leaves the row count unchanged;
        the second call reports every pick as a duplicate.

        Raises:
            PersistenceError: If the storage engine rejects the write.
        """
        if not picks:
            return SaveSummary(saved=0, duplicates=0)

        try:
            async with self._db.transaction() as conn:
                saved = await _insert_picks(conn, scan_id, picks)
        except sqlite3.Error as exc:
            msg = f"Failed to save picks for scan {scan_id}: {exc}"
            raise PersistenceError(msg) from exc

        summary = SaveSummary(saved=saved, duplicates=len(picks) - saved)
        logger.info(
            "Saved %d picks for %s (%d duplicates skipped)",
            summary.saved,
            scan_id,
            summary.duplicates,
        )
        return summary

    async def append_picks(
        self,
        scan_id: str,
        picks: list[Pick],
        *,
        source_item_count: int,
        batch_count: int,
        cost_units: int,
    ) -> SaveSummary:
        """Append *picks* to an existing run and bump its counters atomically.

        Appended picks are ranked after the run's current lowest-ranked pick.
        ``extracted_item_count`` grows by the number of rows actually inserted;
        the other counters grow by the given amounts.

        Raises:
            PersistenceError: If the storage engine rejects the write.
        """
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    "SELECT COALESCE(MAX(rank), 0) AS last_rank FROM picks WHERE scan_id = ?",
                    (scan_id,),
                )
                row = await cursor.fetchone()
                offset = row["last_rank"] if row is not None else 0
                ranked = [p.model_copy(update={"rank": p.rank + offset}) for p in picks]
                saved = await _insert_picks(conn, scan_id, ranked)
                await conn.execute(
                    "UPDATE scan_runs SET "
                    "source_item_count = source_item_count + ?, "
                    "extracted_item_count = extracted_item_count + ?, "
                    "batch_count = batch_count + ?, "
                    "cost_units = cost_units + ? "
                    "WHERE id = ?",
                    (source_item_count, saved, batch_count, cost_units, scan_id),
                )
        except sqlite3.Error as exc:
            msg = f"Failed to append picks to scan {scan_id}: {exc}"
            raise PersistenceError(msg) from exc

        summary = SaveSummary(saved=saved, duplicates=len(picks) - saved)
        logger.info(
            "Appended %d picks to %s (%d duplicates skipped)",
            summary.saved,
            scan_id,
            summary.duplicates,
        )
        return summary

    async def get_picks_by_scan(self, scan_id: str) -> list[Pick]:
        """Return all picks of a scan ordered by rank."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_PICK_COLUMNS} FROM picks WHERE scan_id = ? ORDER BY rank, id",  # noqa: S608
            (scan_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_pick(row) for row in rows]

    async def get_current_picks(self, topic: str) -> list[Pick]:
        """Return the picks of the topic's current run ordered by rank."""
        current = await self.get_current(topic)
        if current is None:
            return []
        return await self.get_picks_by_scan(current.id)

    async def update_pick_outcome(
        self, pick_id: int, outcome: PickOutcome, notes: str | None = None
    ) -> bool:
        """Record how a pick settled. Returns False if the pick does not exist."""
        conn = self._db.connection
        cursor = await conn.execute(
            "UPDATE picks SET outcome = ?, outcome_notes = ?, updated_at = ? WHERE id = ?",
            (outcome, notes, _utcnow(), pick_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def set_user_annotation(self, pick_id: int, annotation: str | None) -> bool:
        """Attach a free-form user note to a pick. Returns False if not found."""
        conn = self._db.connection
        cursor = await conn.execute(
            "UPDATE picks SET user_annotation = ?, updated_at = ? WHERE id = ?",
            (annotation, _utcnow(), pick_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def delete_pick(self, pick_id: int) -> bool:
        """Delete one pick. Returns False if it did not exist."""
        conn = self._db.connection
        cursor = await conn.execute("DELETE FROM picks WHERE id = ?", (pick_id,))
        await conn.commit()
        return cursor.rowcount > 0

    async def get_pick_stats(self) -> PickStats:
        """Return settlement counts across every stored pick."""
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(outcome = 'won'), 0) AS won, "
            "COALESCE(SUM(outcome = 'lost'), 0) AS lost, "
            "COALESCE(SUM(outcome = 'push'), 0) AS push, "
            "COALESCE(SUM(outcome = 'pending'), 0) AS pending "
            "FROM picks"
        )
        row = await cursor.fetchone()
        if row is None:
            return PickStats()
        return PickStats(
            total=row["total"],
            won=row["won"],
            lost=row["lost"],
            push=row["push"],
            pending=row["pending"],
        )

    # ------------------------------------------------------------------
    # Operational log
    # ------------------------------------------------------------------

    async def log_scheduler_event(
        self,
        event_type: str,
        *,
        scan_id: str | None,
        success: bool,
        message: str,
    ) -> None:
        """Append one entry to the operational log."""
        conn = self._db.connection
        await conn.execute(
            "INSERT INTO scheduler_logs (event_type, scan_id, success, message, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (event_type, scan_id, int(success), message, _utcnow()),
        )
        await conn.commit()

    async def get_scheduler_logs(self, *, limit: int = 50) -> list[SchedulerEvent]:
        """Return the most recent operational log entries, newest first."""
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT id, event_type, scan_id, success, message, created_at "
            "FROM scheduler_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            SchedulerEvent(
                id=row["id"],
                event_type=row["event_type"],
                scan_id=row["scan_id"],
                success=bool(row["success"]),
                message=row["message"],
                created_at=datetime.datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Incremental bookmark
    # ------------------------------------------------------------------

    async def get_scan_state(self) -> ScanStateRecord:
        """Return the bookmark left by the last successful run (empty if none)."""
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT last_source_item_id, last_scan_at FROM scan_state WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return ScanStateRecord()
        last_scan_at = row["last_scan_at"]
        return ScanStateRecord(
            last_source_item_id=row["last_source_item_id"],
            last_scan_at=datetime.datetime.fromisoformat(last_scan_at) if last_scan_at else None,
        )

    async def save_scan_state(self, last_source_item_id: str | None) -> ScanStateRecord:
        """Overwrite the bookmark with *last_source_item_id* and the current time."""
        scanned_at = datetime.datetime.now(datetime.UTC)
        conn = self._db.connection
        await conn.execute(
            "INSERT INTO scan_state (id, last_source_item_id, last_scan_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "last_source_item_id = excluded.last_source_item_id, "
            "last_scan_at = excluded.last_scan_at",
            (last_source_item_id, scanned_at.isoformat()),
        )
        await conn.commit()
        return ScanStateRecord(last_source_item_id=last_source_item_id, last_scan_at=scanned_at)


# ------------------------------------------------------------------
# Transaction-scoped helpers
# ------------------------------------------------------------------


async def _promote(conn: aiosqlite.Connection, run: ScanRun) -> ScanRun:
    """Replace or demote the topic's current run, then insert *run* as current."""
    cursor = await conn.execute(
        "SELECT id, grouping_key FROM scan_runs WHERE topic = ? AND is_current = 1",
        (run.topic,),
    )
    existing = await cursor.fetchone()

    if existing is not None and existing["grouping_key"] == run.grouping_key:
        await conn.execute("DELETE FROM picks WHERE scan_id = ?", (existing["id"],))
        await conn.execute("DELETE FROM scan_runs WHERE id = ?", (existing["id"],))
        logger.info(
            "Replaced current run %s (same grouping key %s)",
            existing["id"],
            run.grouping_key,
        )
    elif existing is not None:
        await conn.execute("UPDATE scan_runs SET is_current = 0 WHERE id = ?", (existing["id"],))
        logger.info("Demoted run %s to history", existing["id"])

    promoted = run.model_copy(update={"is_current": True})
    await conn.execute(
        f"INSERT INTO scan_runs ({_SCAN_COLUMNS}) "  # noqa: S608
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)",
        (
            promoted.id,
            promoted.topic,
            promoted.grouping_key,
            promoted.title,
            promoted.url,
            promoted.status,
            promoted.source_item_count,
            promoted.extracted_item_count,
            promoted.batch_count,
            promoted.cost_units,
            promoted.started_at.isoformat(),
            promoted.duration_ms,
            promoted.error_message,
        ),
    )
    return promoted


async def _insert_picks(conn: aiosqlite.Connection, scan_id: str, picks: list[Pick]) -> int:
    """Insert *picks* with ``INSERT OR IGNORE``; returns how many rows were new."""
    if not picks:
        return 0
    now = _utcnow()
    rows = [
        (
            scan_id,
            pick.rank,
            pick.confidence,
            pick.category,
            pick.subject,
            pick.action,
            pick.derived_quantity,
            pick.source_item_id,
            pick.source_author,
            pick.source_score,
            pick.source_text,
            pick.source_record,
            pick.reasoning,
            json.dumps(pick.key_factors),
            pick.risk_level,
            pick.units,
            pick.outcome,
            pick.outcome_notes,
            pick.user_annotation,
            now,
            now,
        )
        for pick in picks
    ]
    before = conn.total_changes
    await conn.executemany(
        "INSERT OR IGNORE INTO picks "
        "(scan_id, rank, confidence, category, subject, action, derived_quantity, "
        "source_item_id, source_author, source_score, source_text, source_record, "
        "reasoning, key_factors, risk_level, units, outcome, outcome_notes, "
        "user_annotation, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        rows,
    )
    return conn.total_changes - before


# ------------------------------------------------------------------
# Row mappers
# ------------------------------------------------------------------


def _row_to_scan_run(row: sqlite3.Row) -> ScanRun:
    return ScanRun(
        id=row["id"],
        topic=row["topic"],
        grouping_key=row["grouping_key"],
        title=row["title"],
        url=row["url"],
        status=ScanStatus(row["status"]),
        source_item_count=row["source_item_count"],
        extracted_item_count=row["extracted_item_count"],
        batch_count=row["batch_count"],
        cost_units=row["cost_units"],
        started_at=datetime.datetime.fromisoformat(row["started_at"]),
        duration_ms=row["duration_ms"],
        error_message=row["error_message"],
        is_current=bool(row["is_current"]),
    )


def _row_to_pick(row: sqlite3.Row) -> Pick:
    return Pick(
        id=row["id"],
        scan_id=row["scan_id"],
        rank=row["rank"],
        confidence=row["confidence"],
        category=row["category"],
        subject=row["subject"],
        action=row["action"],
        derived_quantity=row["derived_quantity"],
        source_item_id=row["source_item_id"],
        source_author=row["source_author"],
        source_score=row["source_score"],
        source_text=row["source_text"],
        source_record=row["source_record"],
        reasoning=row["reasoning"],
        key_factors=json.loads(row["key_factors"]),
        risk_level=row["risk_level"],
        units=row["units"],
        outcome=PickOutcome(row["outcome"]),
        outcome_notes=row["outcome_notes"],
        user_annotation=row["user_annotation"],
    )
