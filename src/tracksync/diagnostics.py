"""Consistency diagnostics and repair.

The engine audits the cache tiers against the source and the tracking-point
configuration, turns what it finds into :class:`DiagnosticIssue` values and
can repair them through the accessor. It never writes to a tier directly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date, timedelta
from typing import Any

from tracksync._timing import Clock, Wait, asyncio_wait, local_today, utcnow
from tracksync.config import SyncConfig
from tracksync.exceptions import TrackSyncError
from tracksync.models.cache import CacheKey
from tracksync.models.diagnostics import (
    SEVERITY_ORDER,
    DiagnosticIssue,
    DiagnosticReport,
    FixOutcome,
    FixStatus,
    HealthReport,
    IssueKind,
    Remedy,
    RepairReport,
    Severity,
    Suggestion,
    classify_health,
)
from tracksync.source import SourceClient
from tracksync.tiers.accessor import EnsureStatus, TieredCacheAccessor
from tracksync.tiers.policy import RefreshReason
from tracksync.tracking import TrackingPointRegistry

_logger = logging.getLogger(__name__)

DateRange = tuple[date | str, date | str]

# Allowed cached-vs-source count difference, in percent.
_HISTORICAL_TOLERANCE = 1.0
_TODAY_TOLERANCE = 5.0
_CROSS_DAY_TOLERANCE = 15.0
_HIGH_MISMATCH = 10.0

_REFRESH_REMEDIES = frozenset({Remedy.REFRESH_CACHE, Remedy.REFRESH_SPECIFIC_CACHE, Remedy.CLEAN_AND_REFRESH})


def expand_dates(date_range: DateRange) -> list[str]:
    """Every date from start to end inclusive, as ``YYYY-MM-DD``."""
    start = CacheKey.of(0, date_range[0]).day
    end = CacheKey.of(0, date_range[1]).day
    days = []
    while start <= end:
        days.append(start.isoformat())
        start += timedelta(days=1)
    return days


def sample_dates(dates: Sequence[str], per_end: int) -> list[str]:
    """First and last *per_end* dates, de-duplicated, in order."""
    count = min(per_end, len(dates))
    picked = list(dates[:count]) + list(dates[len(dates) - count :])
    return list(dict.fromkeys(picked))


def mismatch_tolerance(*, is_today: bool, cross_day: bool) -> float:
    if is_today and cross_day:
        return _CROSS_DAY_TOLERANCE
    if is_today:
        return _TODAY_TOLERANCE
    return _HISTORICAL_TOLERANCE


class ConsistencyDiagnosticEngine:
    """Audit and repair the cache.

    Parameters
    ----------
    accessor : TieredCacheAccessor
        Used to read the tiers and, for repairs, to re-fetch keys.
    source : SourceClient
        Used for sample comparisons.
    registry : TrackingPointRegistry
        Local tracking-point mirror and its authoritative source.
    config : SyncConfig
        Sample sizes, tolerances and delays.
    clock : Clock
        Time source.
    wait : Wait
        Delay strategy between sample comparisons.
    """

    def __init__(
        self,
        accessor: TieredCacheAccessor,
        source: SourceClient,
        registry: TrackingPointRegistry,
        *,
        config: SyncConfig,
        clock: Clock = utcnow,
        wait: Wait = asyncio_wait,
    ) -> None:
        self._accessor = accessor
        self._source = source
        self._registry = registry
        self._config = config
        self._clock = clock
        self._wait = wait
        self.is_checking = False
        self.is_repairing = False
        self.last_report: DiagnosticReport | None = None
        self.last_fixes: list[FixOutcome] = []

    def today(self) -> date:
        return local_today(self._clock, self._config.zone)

    def default_range(self) -> DateRange:
        today = self.today()
        return (today - timedelta(days=self._config.preload_window_days - 1), today)

    # ------------------------------------------------------------------
    # Diagnosis
    # ------------------------------------------------------------------

    async def run_full_diagnostic(
        self,
        date_range: DateRange | None = None,
        point_ids: Iterable[int] | None = None,
    ) -> DiagnosticReport | None:
        """Run every check over *date_range* and *point_ids*.

        Parameters
        ----------
        date_range : tuple, optional
            Inclusive ``(start, end)``; defaults to the preload window.
        point_ids : iterable of int, optional
            Defaults to the registry's current points.

        Returns
        -------
        DiagnosticReport or None
            ``None`` when a diagnostic is already running.
        """
        if self.is_checking:
            _logger.info("Diagnostic already running, skipping request")
            return None
        self.is_checking = True
        started_at = self._clock()
        try:
            dates = expand_dates(date_range or self.default_range())
            points = tuple(point_ids) if point_ids is not None else self._registry.point_ids
            issues: list[DiagnosticIssue] = []
            issues.extend(await self.check_completeness(dates, points))
            issues.extend(await self.check_consistency(dates, points))
            issues.extend(await self.check_expiration(dates, points))
            issues.extend(await self.check_config())
        except (TrackSyncError, ValueError) as exc:
            _logger.error("Diagnostic run failed", exc_info=True)
            report = DiagnosticReport(success=False, error=str(exc), started_at=started_at, finished_at=self._clock())
        else:
            report = DiagnosticReport(
                success=True,
                issues=tuple(issues),
                suggestions=tuple(self.generate_suggestions(issues)),
                started_at=started_at,
                finished_at=self._clock(),
            )
            _logger.info("Diagnostic found %d issue(s) over %d date(s)", len(issues), len(dates))
            for issue in issues:
                _logger.debug("  %s %s: %s", issue.severity, issue.kind, issue.description)
        finally:
            self.is_checking = False
        self.last_report = report
        return report

    async def check_completeness(self, dates: Sequence[str], point_ids: Iterable[int]) -> list[DiagnosticIssue]:
        issues = []
        for point_id in point_ids:
            missing = [day for day in dates if await self._accessor.get(CacheKey.of(point_id, day)) is None]
            if missing:
                issues.append(
                    DiagnosticIssue(
                        kind=IssueKind.CACHE_MISSING,
                        severity=Severity.HIGH,
                        point_id=point_id,
                        dates=tuple(missing),
                        remedy=Remedy.REFRESH_CACHE,
                        description=f"Point {point_id} is missing {len(missing)} cached day(s)",
                    )
                )
        return issues

    async def check_consistency(self, dates: Sequence[str], point_ids: Iterable[int]) -> list[DiagnosticIssue]:
        """Compare a sample of cached days with the source's first page."""
        issues = []
        samples = sample_dates(dates, self._config.diagnostic_sample_days)
        _logger.debug("Sampling dates %s", samples)
        first = True
        for point_id in point_ids:
            for day in samples:
                if not first:
                    await self._wait(self._config.diagnostic_sample_delay)
                first = False
                try:
                    issues.extend(await self._compare_sample(CacheKey.of(point_id, day)))
                except TrackSyncError:
                    _logger.warning("Sample comparison for %s/%s failed", point_id, day, exc_info=True)
        return issues

    async def _compare_sample(self, key: CacheKey) -> list[DiagnosticIssue]:
        cached = await self._accessor.get(key)
        if cached is None:
            return []
        page = await self._source.fetch_page(key, 1, self._config.page_size)
        zone = self._config.zone
        is_today = key.day == self.today()
        issues = []

        if cached.actual_count != page.total:
            difference = abs(cached.actual_count - page.total)
            percent = difference / page.total * 100 if page.total else 100.0
            cross_day = is_today and any(
                r.created_at is not None and r.local_date(zone) != key.day for r in page.records
            )
            if percent > mismatch_tolerance(is_today=is_today, cross_day=cross_day):
                issues.append(
                    DiagnosticIssue(
                        kind=IssueKind.DATA_COUNT_MISMATCH,
                        severity=Severity.HIGH if percent > _HIGH_MISMATCH else Severity.MEDIUM,
                        point_id=key.point_id,
                        dates=(key.date,),
                        remedy=Remedy.REFRESH_SPECIFIC_CACHE,
                        description=(
                            f"Point {key.point_id} on {key.date}: cached {cached.actual_count}, "
                            f"source {page.total} ({percent:.2f}%)"
                        ),
                        details={
                            "cachedCount": cached.actual_count,
                            "sourceCount": page.total,
                            "differencePercent": round(percent, 2),
                            "isToday": is_today,
                            "hasCrossDayData": cross_day,
                        },
                    )
                )
            else:
                _logger.debug("%s count difference %.2f%% within tolerance", key, percent)

        cached_latest = cached.latest_record_at
        source_stamps = [
            r.created_at for r in page.records if r.created_at is not None and r.local_date(zone) == key.day
        ]
        if cached_latest is not None and source_stamps:
            source_latest = max(source_stamps)
            if source_latest - cached_latest > self._config.freshness_tolerance:
                issues.append(
                    DiagnosticIssue(
                        kind=IssueKind.DATA_FRESHNESS,
                        severity=Severity.MEDIUM,
                        point_id=key.point_id,
                        dates=(key.date,),
                        remedy=Remedy.REFRESH_SPECIFIC_CACHE,
                        description=f"Point {key.point_id} on {key.date}: cache is behind the source",
                        details={
                            "cacheLatest": cached_latest.isoformat(),
                            "sourceLatest": source_latest.isoformat(),
                        },
                    )
                )
        return issues

    async def check_expiration(self, dates: Sequence[str], point_ids: Iterable[int]) -> list[DiagnosticIssue]:
        """Shallow staleness verdict for every cached key."""
        issues = []
        policy = self._accessor.policy
        now = self._clock()
        for point_id in point_ids:
            for day in dates:
                entry = await self._accessor.get(CacheKey.of(point_id, day))
                if entry is None:
                    continue
                reason = policy.refresh_reason(entry, now)
                if reason is None:
                    continue
                age_hours = round(entry.age(now) / 3600, 1)
                details: dict[str, Any] = {
                    "fetchedAt": entry.fetched_at.isoformat(),
                    "ageHours": age_hours,
                    "reason": str(reason),
                }
                if reason is RefreshReason.HARD_EXPIRY:
                    issues.append(
                        DiagnosticIssue(
                            kind=IssueKind.CACHE_EXPIRED,
                            severity=Severity.HIGH,
                            point_id=point_id,
                            dates=(day,),
                            remedy=Remedy.CLEAN_AND_REFRESH,
                            description=f"Point {point_id} on {day}: cache expired ({age_hours}h old)",
                            details=details,
                        )
                    )
                else:
                    issues.append(
                        DiagnosticIssue(
                            kind=IssueKind.CACHE_STALE,
                            severity=Severity.MEDIUM,
                            point_id=point_id,
                            dates=(day,),
                            remedy=Remedy.REFRESH_SPECIFIC_CACHE,
                            description=f"Point {point_id} on {day}: cache is stale ({reason})",
                            details=details,
                        )
                    )
        return issues

    async def check_config(self) -> list[DiagnosticIssue]:
        local = self._registry.current
        try:
            authoritative = await self._registry.authoritative()
        except TrackSyncError as exc:
            _logger.warning("Cannot read authoritative tracking-point config", exc_info=True)
            return [
                DiagnosticIssue(
                    kind=IssueKind.CONFIG_ERROR,
                    severity=Severity.LOW,
                    description="Authoritative tracking-point config is unreadable",
                    details={"error": str(exc)},
                )
            ]
        if local.same_points(authoritative):
            return []
        return [
            DiagnosticIssue(
                kind=IssueKind.CONFIG_MISMATCH,
                severity=Severity.MEDIUM,
                remedy=Remedy.SYNC_CONFIG,
                description="Local tracking points differ from the authoritative config",
                details={
                    "localIds": list(local.point_ids),
                    "authoritativeIds": list(authoritative.point_ids),
                },
            )
        ]

    @staticmethod
    def generate_suggestions(issues: Sequence[DiagnosticIssue]) -> list[Suggestion]:
        counts = {severity: sum(1 for i in issues if i.severity == severity) for severity in SEVERITY_ORDER}
        kinds = {issue.kind for issue in issues}
        suggestions = []
        if counts[Severity.HIGH]:
            suggestions.append(
                Suggestion(
                    priority=Severity.HIGH,
                    action="IMMEDIATE_CACHE_REFRESH",
                    description=f"{counts[Severity.HIGH]} severe issue(s) found, refresh the cache now",
                )
            )
        if IssueKind.CACHE_MISSING in kinds:
            suggestions.append(
                Suggestion(
                    priority=Severity.HIGH,
                    action="PRELOAD_MISSING_DATA",
                    description="Some cached days are missing, run a preload",
                )
            )
        if IssueKind.DATA_COUNT_MISMATCH in kinds:
            suggestions.append(
                Suggestion(
                    priority=Severity.MEDIUM,
                    action="VALIDATE_DATA_SOURCE",
                    description="Cached and source counts disagree; an earlier preload may have failed",
                )
            )
        minor = counts[Severity.MEDIUM] + counts[Severity.LOW]
        if minor:
            suggestions.append(
                Suggestion(
                    priority=Severity.LOW,
                    action="ROUTINE_MAINTENANCE",
                    description=f"{minor} minor issue(s) found",
                )
            )
        return suggestions

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def auto_fix_issues(
        self,
        issues: Sequence[DiagnosticIssue],
        *,
        date_range: DateRange | None = None,
        point_ids: Iterable[int] | None = None,
    ) -> list[FixOutcome]:
        """Apply remedies in severity order; one outcome per issue.

        More than ``escalation_threshold`` HIGH issues add a full-range
        refresh, reported as its own outcome.
        """
        outcomes: list[FixOutcome] = []
        for severity in SEVERITY_ORDER:
            for issue in issues:
                if issue.severity == severity:
                    outcomes.append(await self._fix(issue))

        high_count = sum(1 for issue in issues if issue.severity == Severity.HIGH)
        if high_count > self._config.escalation_threshold:
            _logger.warning("%d severe issues, escalating to a full refresh", high_count)
            outcomes.append(await self._full_refresh(date_range, point_ids))

        for status in FixStatus:
            count = sum(1 for outcome in outcomes if outcome.status == status)
            if count:
                _logger.info("Auto-fix %s: %d", status, count)
        self.last_fixes = outcomes
        return outcomes

    async def _fix(self, issue: DiagnosticIssue) -> FixOutcome:
        remedy = issue.remedy
        if remedy is None:
            return FixOutcome(action="NONE", status=FixStatus.SKIPPED, detail="no remedy", issue=issue)
        try:
            if remedy in _REFRESH_REMEDIES:
                return await self._refresh_issue(issue, remedy)
            if remedy is Remedy.SYNC_CONFIG:
                authoritative = await self._registry.authoritative()
                self._registry.replace(authoritative)
                return FixOutcome(
                    action=remedy.value,
                    status=FixStatus.FIXED,
                    detail=f"local points set to {list(authoritative.point_ids)}",
                    issue=issue,
                )
        except (TrackSyncError, ValueError) as exc:
            _logger.warning("Fix %s for %s failed", remedy, issue.kind, exc_info=True)
            return FixOutcome(action=remedy.value, status=FixStatus.FAILED, detail=str(exc), issue=issue)
        return FixOutcome(action=remedy.value, status=FixStatus.SKIPPED, detail="unsupported remedy", issue=issue)

    async def _refresh_issue(self, issue: DiagnosticIssue, remedy: Remedy) -> FixOutcome:
        if issue.point_id is None or not issue.dates:
            return FixOutcome(
                action=remedy.value, status=FixStatus.FAILED, detail="missing point or dates", issue=issue
            )
        failed = []
        not_found = []
        for day in issue.dates:
            key = CacheKey.of(issue.point_id, day)
            if remedy is Remedy.CLEAN_AND_REFRESH:
                self._accessor.local.invalidate(key)
            result = await self._accessor.ensure(key, force=True)
            if result.status is EnsureStatus.NOT_FOUND:
                not_found.append(day)
            elif not result.ok:
                failed.append(f"{day}: {result.error or result.status}")
        if failed:
            return FixOutcome(action=remedy.value, status=FixStatus.FAILED, detail="; ".join(failed), issue=issue)
        if not_found:
            # Nothing to cache yet, so the key is still absent.
            return FixOutcome(
                action=remedy.value,
                status=FixStatus.SKIPPED,
                detail=f"source has no records yet for {', '.join(not_found)}",
                issue=issue,
            )
        return FixOutcome(
            action=remedy.value,
            status=FixStatus.FIXED,
            detail=f"refreshed {len(issue.dates)} day(s)",
            issue=issue,
        )

    async def _full_refresh(self, date_range: DateRange | None, point_ids: Iterable[int] | None) -> FixOutcome:
        dates = expand_dates(date_range or self.default_range())
        points = tuple(point_ids) if point_ids is not None else self._registry.point_ids
        failed = 0
        for point_id in points:
            for day in dates:
                result = await self._accessor.ensure(CacheKey.of(point_id, day), force=True)
                if not (result.ok or result.status is EnsureStatus.NOT_FOUND):
                    failed += 1
        total = len(points) * len(dates)
        return FixOutcome(
            action="FULL_REFRESH",
            status=FixStatus.FAILED if failed else FixStatus.FIXED,
            detail=f"{total - failed} of {total} key(s) refreshed",
        )

    async def diagnose_and_repair(
        self,
        date_range: DateRange | None = None,
        point_ids: Iterable[int] | None = None,
    ) -> RepairReport | None:
        """Full diagnostic followed by auto-fix; ``None`` if one is active."""
        if self.is_repairing or self.is_checking:
            _logger.info("Diagnostic repair already running, skipping request")
            return None
        self.is_repairing = True
        try:
            points = tuple(point_ids) if point_ids is not None else None
            report = await self.run_full_diagnostic(date_range, points)
            if report is None:
                return None
            fixes = await self.auto_fix_issues(report.issues, date_range=date_range, point_ids=points)
            return RepairReport(diagnostic=report, fixes=tuple(fixes))
        finally:
            self.is_repairing = False

    async def quick_health_check(self, point_ids: Iterable[int] | None = None) -> HealthReport:
        """Presence check for today and yesterday only."""
        today = self.today()
        recent = ((today - timedelta(days=1)).isoformat(), today.isoformat())
        points = tuple(point_ids) if point_ids is not None else self._registry.point_ids
        issues = []
        for point_id in points:
            missing = tuple(day for day in recent if await self._accessor.get(CacheKey.of(point_id, day)) is None)
            if missing:
                issues.append(
                    DiagnosticIssue(
                        kind=IssueKind.RECENT_CACHE_MISSING,
                        severity=Severity.HIGH,
                        point_id=point_id,
                        dates=missing,
                        remedy=Remedy.REFRESH_CACHE,
                        description=f"Point {point_id} has no recent cache for {', '.join(missing)}",
                    )
                )
        return HealthReport(status=classify_health(issues), issues=tuple(issues))

    def status(self) -> dict[str, Any]:
        report = self.last_report
        return {
            "isChecking": self.is_checking,
            "isRepairing": self.is_repairing,
            "lastRun": report.finished_at.isoformat() if report and report.finished_at else None,
            "issueCount": report.issue_count if report else 0,
            "health": classify_health(report.issues) if report and report.success else "unknown",
            "lastFixes": [{"action": str(f.action), "status": str(f.status)} for f in self.last_fixes],
        }
