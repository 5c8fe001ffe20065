"""Diagnostic issues, repair outcomes and reports.

These are produced and consumed within one diagnostic run and never
persisted.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import Field

from tracksync.models._base import TrackBaseModel


class Severity(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


SEVERITY_ORDER: tuple[Severity, ...] = (Severity.HIGH, Severity.MEDIUM, Severity.LOW)


class IssueKind(StrEnum):
    CACHE_MISSING = "CACHE_MISSING"
    DATA_COUNT_MISMATCH = "DATA_COUNT_MISMATCH"
    DATA_FRESHNESS = "DATA_FRESHNESS"
    CACHE_EXPIRED = "CACHE_EXPIRED"
    CACHE_STALE = "CACHE_STALE"
    CONFIG_MISMATCH = "CONFIG_MISMATCH"
    CONFIG_ERROR = "CONFIG_ERROR"
    RECENT_CACHE_MISSING = "RECENT_CACHE_MISSING"


class Remedy(StrEnum):
    REFRESH_CACHE = "REFRESH_CACHE"
    REFRESH_SPECIFIC_CACHE = "REFRESH_SPECIFIC_CACHE"
    CLEAN_AND_REFRESH = "CLEAN_AND_REFRESH"
    SYNC_CONFIG = "SYNC_CONFIG"


class FixStatus(StrEnum):
    FIXED = "FIXED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class DiagnosticIssue(TrackBaseModel):
    kind: IssueKind
    severity: Severity
    point_id: int | None = None
    dates: tuple[str, ...] = ()
    remedy: Remedy | None = None
    description: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class FixOutcome(TrackBaseModel):
    action: str
    status: FixStatus
    detail: str = ""
    issue: DiagnosticIssue | None = None


class Suggestion(TrackBaseModel):
    priority: Severity
    action: str
    description: str


class DiagnosticReport(TrackBaseModel):
    success: bool
    issues: tuple[DiagnosticIssue, ...] = ()
    suggestions: tuple[Suggestion, ...] = ()
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def issue_count(self) -> int:
        return len(self.issues)


class HealthReport(TrackBaseModel):
    status: HealthStatus
    issues: tuple[DiagnosticIssue, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


def classify_health(issues: tuple[DiagnosticIssue, ...] | list[DiagnosticIssue]) -> HealthStatus:
    """Worst severity wins; LOW-only findings still count as a warning."""
    if not issues:
        return HealthStatus.HEALTHY
    if any(issue.severity == Severity.HIGH for issue in issues):
        return HealthStatus.CRITICAL
    return HealthStatus.WARNING


class RepairReport(TrackBaseModel):
    """A diagnostic run followed by auto-fix."""

    diagnostic: DiagnosticReport
    fixes: tuple[FixOutcome, ...] = ()

    @property
    def fixed(self) -> int:
        return sum(1 for fix in self.fixes if fix.status == FixStatus.FIXED)

    @property
    def failed(self) -> int:
        return sum(1 for fix in self.fixes if fix.status == FixStatus.FAILED)
