"""Scan orchestration: coordinator, live status, bookmark, and timer trigger."""

from Pick_Sync.scanner.coordinator import ScanCoordinator, extract_grouping_key
from Pick_Sync.scanner.scheduler import ScanScheduler
from Pick_Sync.scanner.state import IncrementalBookmark, ScanStateTracker

__all__ = [
    "IncrementalBookmark",
    "ScanCoordinator",
    "ScanScheduler",
    "ScanStateTracker",
    "extract_grouping_key",
]
