"""Pydantic v2 models and enums.

Re-exports all public models so consumers can import directly:
    from Pick_Sync.models import Pick, ScanRun, RawItem
"""

from Pick_Sync.models.enums import PickOutcome, ScanStatus, ScanStep, ScanTrigger
from Pick_Sync.models.extraction import AnalysisResult, BatchAnalysis, ExtractedPick
from Pick_Sync.models.scan import (
    Pick,
    PickStats,
    SaveSummary,
    ScanResult,
    ScanRun,
    ScanStateRecord,
    ScanStatusSnapshot,
    SchedulerEvent,
    SchedulerStatus,
)
from Pick_Sync.models.source import RawItem, TopicListing

__all__ = [
    # Enums
    "PickOutcome",
    "ScanStatus",
    "ScanStep",
    "ScanTrigger",
    # Source
    "RawItem",
    "TopicListing",
    # Extraction
    "AnalysisResult",
    "BatchAnalysis",
    "ExtractedPick",
    # Scan
    "Pick",
    "PickStats",
    "SaveSummary",
    "ScanResult",
    "ScanRun",
    "ScanStateRecord",
    "ScanStatusSnapshot",
    "SchedulerEvent",
    "SchedulerStatus",
]
