"""Preload scheduler.

Keeps a rolling window of recent days warm for every active tracking point.
Passes never overlap: a pass requested while another is running is logged
and dropped.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date, datetime, timedelta
from typing import Any

from tracksync._periodic import PeriodicRunner
from tracksync._timing import Clock, Wait, asyncio_wait, local_today, utcnow
from tracksync.config import SyncConfig
from tracksync.models.cache import CacheKey
from tracksync.models.tasks import SyncPriority, SyncTask
from tracksync.tiers.accessor import EnsureStatus, TieredCacheAccessor
from tracksync.tracking import TrackingPointRegistry

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(slots=True)
class PreloadReport:
    started_at: datetime
    window_days: int
    deep: bool
    point_ids: tuple[int, ...] = ()
    planned: int = 0
    refreshed: int = 0
    empty: int = 0
    failed: int = 0
    failures: list[str] = dataclasses.field(default_factory=list)
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "windowDays": self.window_days,
            "deep": self.deep,
            "pointIds": list(self.point_ids),
            "planned": self.planned,
            "refreshed": self.refreshed,
            "empty": self.empty,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class PreloadScheduler:
    """Periodic warm-up of the cache.

    Parameters
    ----------
    accessor : TieredCacheAccessor
        Cache front door; every refresh goes through ``ensure``.
    registry : TrackingPointRegistry
        Source of the active tracking points, re-read on every pass.
    config : SyncConfig
        Windows, intervals and task delays.
    clock : Clock
        Time source; defines "today" in ``config.zone``.
    wait : Wait
        Delay strategy between tasks.
    """

    def __init__(
        self,
        accessor: TieredCacheAccessor,
        registry: TrackingPointRegistry,
        *,
        config: SyncConfig,
        clock: Clock = utcnow,
        wait: Wait = asyncio_wait,
    ) -> None:
        self._accessor = accessor
        self._registry = registry
        self._config = config
        self._clock = clock
        self._wait = wait
        self.is_task_running = False
        self.last_run_date: date | None = None
        self.last_report: PreloadReport | None = None
        self._progress: dict[str, Any] = {}
        self._preload_runner = PeriodicRunner("preload", config.preload_interval, self._scheduled_pass)
        self._full_sync_runner = PeriodicRunner(
            "full-sync",
            config.full_sync_interval,
            self.run_full_sync,
            run_immediately=False,
        )

    def today(self) -> date:
        return local_today(self._clock, self._config.zone)

    def window(self, days: int) -> list[str]:
        """The last *days* dates ending today, oldest first."""
        today = self.today()
        return [(today - timedelta(days=offset)).isoformat() for offset in range(days - 1, -1, -1)]

    async def plan(self, dates: list[str], point_ids: tuple[int, ...] | list[int], *, probe: bool) -> list[SyncTask]:
        """A HIGH task for every key that is not present and fresh.

        With ``probe=False`` entries that would only need a source probe
        count as fresh.
        """
        tasks: list[SyncTask] = []
        for day in dates:
            for point_id in point_ids:
                key = CacheKey.of(point_id, day)
                if not await self._accessor.is_fresh(key, deep=probe):
                    tasks.append(SyncTask(key=key, priority=SyncPriority.HIGH))
        return tasks

    async def run_pass(
        self,
        *,
        window_days: int | None = None,
        task_delay: float | None = None,
        deep: bool | None = None,
    ) -> PreloadReport | None:
        """Run one preload pass.

        Parameters
        ----------
        window_days : int, optional
            Days to cover; defaults to ``config.preload_window_days``.
        task_delay : float, optional
            Seconds between tasks; defaults to ``config.preload_task_delay``.
        deep : bool, optional
            Resolve source probes while planning. Defaults to ``True`` for
            the first pass of the day and ``False`` afterwards.

        Returns
        -------
        PreloadReport or None
            ``None`` when another pass is already running.
        """
        if self.is_task_running:
            _logger.info("Preload pass already running, skipping request")
            return None
        self.is_task_running = True
        try:
            return await self._run_pass(
                window_days or self._config.preload_window_days,
                self._config.preload_task_delay if task_delay is None else task_delay,
                deep,
            )
        finally:
            self.is_task_running = False
            self._progress = {}

    async def _run_pass(self, window_days: int, task_delay: float, deep: bool | None) -> PreloadReport:
        today = self.today()
        if deep is None:
            deep = self.last_run_date != today
        point_ids = self._registry.point_ids
        report = PreloadReport(started_at=self._clock(), window_days=window_days, deep=deep, point_ids=point_ids)
        if not point_ids:
            _logger.warning("No tracking points configured, nothing to preload")
        else:
            tasks = await self.plan(self.window(window_days), point_ids, probe=deep)
            report.planned = len(tasks)
            _logger.info(
                "Preload pass: %d of %d keys need refresh (window=%d, deep=%s)",
                len(tasks),
                window_days * len(point_ids),
                window_days,
                deep,
            )
            for index, task in enumerate(tasks):
                if index:
                    await self._wait(task_delay)
                self._progress = {"current": index + 1, "total": len(tasks), "key": str(task.key)}
                result = await self._accessor.ensure(task.key, force=True)
                if result.status in (EnsureStatus.REFRESHED, EnsureStatus.CACHED):
                    report.refreshed += 1
                elif result.status in (EnsureStatus.EMPTY, EnsureStatus.NOT_FOUND):
                    report.empty += 1
                else:
                    report.failed += 1
                    report.failures.append(str(task.key))
                    _logger.warning("Preload of %s failed: %s", task.key, result.error)
        if deep:
            self.last_run_date = today
        report.finished_at = self._clock()
        self.last_report = report
        _logger.info(
            "Preload pass done: refreshed=%d empty=%d failed=%d",
            report.refreshed,
            report.empty,
            report.failed,
        )
        return report

    async def _scheduled_pass(self) -> None:
        await self.run_pass()

    async def trigger_now(self) -> PreloadReport | None:
        """Manual trigger: forget today's marker and run a deep pass."""
        if self.is_task_running:
            _logger.info("Preload pass already running, manual trigger ignored")
            return None
        self.last_run_date = None
        return await self.run_pass(deep=True)

    async def run_full_sync(self) -> PreloadReport | None:
        """The wide, slow nightly pass."""
        return await self.run_pass(
            window_days=self._config.full_sync_window_days,
            task_delay=self._config.full_sync_task_delay,
            deep=True,
        )

    @property
    def is_running(self) -> bool:
        return self._preload_runner.running

    async def start(self) -> None:
        await self._preload_runner.start()
        await self._full_sync_runner.start()

    async def stop(self) -> None:
        await self._preload_runner.stop()
        await self._full_sync_runner.stop()

    def status(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "isTaskRunning": self.is_task_running,
            "pointIds": list(self._registry.point_ids),
            "lastRunDate": self.last_run_date.isoformat() if self.last_run_date else None,
            "progress": dict(self._progress),
            "lastReport": self.last_report.to_dict() if self.last_report else None,
        }
