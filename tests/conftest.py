"""Shared test fixtures for the Pick Sync test suite.

Provides realistic sample instances of the core models and a connected
in-memory database so tests don't need to inline large construction blocks.
"""

import datetime
from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from Pick_Sync.data.database import Database
from Pick_Sync.data.repository import Repository
from Pick_Sync.models import Pick, RawItem, ScanRun, ScanStatus
from Pick_Sync.services.cache import ServiceCache

TOPIC = "sportsbook:potd"


@pytest.fixture()
def sample_items() -> list[RawItem]:
    """Three comments from a pick-of-the-day thread, newest first."""
    return [
        RawItem(
            id="c3",
            author="sharp_sam",
            text="Record: 12-4. Lakers -3.5 (-110) tonight, Davis is back.",
            score=42,
            record="12-4",
        ),
        RawItem(
            id="c2",
            author="unit_queen",
            text="Chiefs ML +150, 2u. Defense travels.",
            score=17,
        ),
        RawItem(id="c1", author="lurker", text="Good luck everyone!", score=3),
    ]


@pytest.fixture()
def make_items() -> Callable[[int], list[RawItem]]:
    """Factory for *n* distinct RawItems with ids ``i0``..``i{n-1}``."""

    def _make(count: int) -> list[RawItem]:
        return [
            RawItem(id=f"i{n}", author=f"capper{n}", text=f"Team {n} -110", score=n)
            for n in range(count)
        ]

    return _make


@pytest.fixture()
def sample_pick() -> Pick:
    """A ranked pick as produced by the batch analyzer."""
    return Pick(
        rank=1,
        confidence=88,
        category="NBA",
        subject="Lakers vs Celtics",
        action="Lakers -3.5 (-110)",
        derived_quantity="-110",
        source_item_id="c3",
        source_author="sharp_sam",
        source_score=42,
        source_text="Record: 12-4. Lakers -3.5 (-110) tonight, Davis is back.",
        source_record="12-4",
        reasoning="Davis returns | rest advantage",
        key_factors=["rest advantage"],
        risk_level="low",
        units=2.0,
    )


@pytest.fixture()
def make_run() -> Callable[..., ScanRun]:
    """Factory for completed ScanRuns; keyword arguments override defaults."""

    def _make(
        run_id: str = "scan_1",
        grouping_key: str = "10/19/2026",
        **overrides: object,
    ) -> ScanRun:
        fields: dict[str, object] = {
            "id": run_id,
            "topic": TOPIC,
            "grouping_key": grouping_key,
            "title": f"Pick of the Day - {grouping_key}",
            "url": "https://www.reddit.com/r/sportsbook/comments/abc/potd/",
            "status": ScanStatus.COMPLETED,
            "source_item_count": 3,
            "extracted_item_count": 1,
            "batch_count": 1,
            "cost_units": 1200,
            "started_at": datetime.datetime(2026, 10, 19, 16, 0, tzinfo=datetime.UTC),
            "duration_ms": 4200,
        }
        fields.update(overrides)
        return ScanRun.model_validate(fields)

    return _make


@pytest.fixture()
def cache() -> ServiceCache:
    """A fresh in-memory ServiceCache."""
    return ServiceCache()


@pytest_asyncio.fixture()
async def db() -> AsyncGenerator[Database]:
    """Provide a connected in-memory Database for each test, with cleanup."""
    database = Database(db_path=":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture()
async def repo(db: Database) -> Repository:
    """Provide a Repository backed by the in-memory Database."""
    return Repository(db)
