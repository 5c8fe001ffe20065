"""Data models for cache entries, work items and diagnostics."""

from tracksync.models._base import EventTimestamp, TrackBaseModel, parse_event_timestamp
from tracksync.models.backfill import BackfillConsumer
from tracksync.models.cache import CacheEntry, CacheKey, EventRecord, filter_records_for_day
from tracksync.models.diagnostics import (
    SEVERITY_ORDER,
    DiagnosticIssue,
    DiagnosticReport,
    FixOutcome,
    FixStatus,
    HealthReport,
    HealthStatus,
    IssueKind,
    Remedy,
    RepairReport,
    Severity,
    Suggestion,
    classify_health,
)
from tracksync.models.tasks import SyncPriority, SyncTask
from tracksync.models.tracking import TrackingPointSet

__all__ = [
    "SEVERITY_ORDER",
    "BackfillConsumer",
    "CacheEntry",
    "CacheKey",
    "DiagnosticIssue",
    "DiagnosticReport",
    "EventRecord",
    "EventTimestamp",
    "FixOutcome",
    "FixStatus",
    "HealthReport",
    "HealthStatus",
    "IssueKind",
    "Remedy",
    "RepairReport",
    "Severity",
    "Suggestion",
    "SyncPriority",
    "SyncTask",
    "TrackBaseModel",
    "TrackingPointSet",
    "classify_health",
    "filter_records_for_day",
    "parse_event_timestamp",
]
