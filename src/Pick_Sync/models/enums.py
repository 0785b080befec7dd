"""StrEnum types for the scan pipeline.

Values are lowercase strings and are stored verbatim in SQLite.
Use enum members in business logic, never raw strings.
"""

from enum import StrEnum


class ScanStatus(StrEnum):
    """Lifecycle status of a ScanRun."""

    PENDING = "pending"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return True for statuses after which a run can no longer change."""
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED)


class ScanStep(StrEnum):
    """Step reported by the live scan status tracker."""

    IDLE = "idle"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"
    COMPLETE = "complete"


class PickOutcome(StrEnum):
    """Settlement of a pick, set after the event by external tooling."""

    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    PUSH = "push"


class ScanTrigger(StrEnum):
    """What started a scan run."""

    SCHEDULE = "schedule"
    MANUAL = "manual"
