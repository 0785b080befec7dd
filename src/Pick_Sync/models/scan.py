"""Scan models: scan runs, persisted picks, run results, and scan bookkeeping."""

from __future__ import annotations

import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from Pick_Sync.models.enums import PickOutcome, ScanStatus, ScanStep


class ScanRun(BaseModel):
    """One harvest-analyze-persist cycle.

    ``topic`` is the grouping space inside which at most one run is current;
    ``grouping_key`` identifies the source thread (usually a date taken from
    its title). Runs are immutable once they reach a terminal status.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    topic: str
    grouping_key: str
    title: str = ""
    url: str = ""
    status: ScanStatus = ScanStatus.PENDING
    source_item_count: int = 0
    extracted_item_count: int = 0
    batch_count: int = 0
    cost_units: int = 0
    started_at: datetime.datetime
    duration_ms: int = 0
    error_message: str | None = None
    is_current: bool = False

    def transition(self, status: ScanStatus, **updates: Any) -> ScanRun:
        """Return a copy of this run moved to *status* with *updates* applied.

        Raises:
            ValueError: If this run is already completed or failed.
        """
        if self.status.is_terminal:
            msg = f"Scan run {self.id} is {self.status} and can no longer change."
            raise ValueError(msg)
        return self.model_copy(update={"status": status, **updates})


class Pick(BaseModel):
    """A structured pick extracted from one source item, enriched and ranked.

    The natural key is ``(source_author, subject, action, scan_id)``.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    scan_id: str | None = None
    rank: int = Field(ge=1)
    confidence: int = Field(ge=0, le=100)
    category: str
    subject: str
    action: str
    derived_quantity: str | None = None
    source_item_id: str = ""
    source_author: str
    source_score: int = 0
    source_text: str = ""
    source_record: str | None = None
    reasoning: str = ""
    key_factors: list[str] = Field(default_factory=list)
    risk_level: str = "medium"
    units: float = 1.0
    outcome: PickOutcome = PickOutcome.PENDING
    outcome_notes: str | None = None
    user_annotation: str | None = None


class ScanStateRecord(BaseModel):
    """Incremental-fetch bookmark shared across runs."""

    model_config = ConfigDict(frozen=True)

    last_source_item_id: str | None = None
    last_scan_at: datetime.datetime | None = None


class SchedulerEvent(BaseModel):
    """One entry in the append-only operational log."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    event_type: str
    scan_id: str | None = None
    success: bool
    message: str
    created_at: datetime.datetime


class SaveSummary(BaseModel):
    """Outcome of an idempotent bulk pick insert."""

    model_config = ConfigDict(frozen=True)

    saved: int
    duplicates: int


class PickStats(BaseModel):
    """Aggregate settlement counts across all stored picks."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    won: int = 0
    lost: int = 0
    push: int = 0
    pending: int = 0


class ScanResult(BaseModel):
    """Structured result returned by the coordinator for every scan request.

    The coordinator never raises; callers check ``success`` and ``busy``.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    busy: bool = False
    scan_id: str | None = None
    status: ScanStatus | None = None
    grouping_key: str | None = None
    pick_count: int = 0
    source_item_count: int = 0
    batch_count: int = 0
    failed_batches: int = 0
    cost_units: int = 0
    duration_ms: int = 0
    message: str = ""
    error: str | None = None


class ScanStatusSnapshot(BaseModel):
    """Read-only copy of the live scan status with elapsed time attached."""

    model_config = ConfigDict(frozen=True)

    scanning: bool
    step: ScanStep
    progress: int
    detail: str
    error: str | None
    started_at: datetime.datetime | None
    last_update: datetime.datetime
    elapsed_seconds: int


class SchedulerStatus(BaseModel):
    """Timer-trigger state as reported by ``ScanScheduler.status()``."""

    model_config = ConfigDict(frozen=True)

    active: bool
    scan_running: bool
    schedule: str
    timezone: str
    next_run_at: datetime.datetime | None = None
