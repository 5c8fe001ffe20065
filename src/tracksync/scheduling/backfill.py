"""Historical backfill for downstream consumers.

Each consumer wants ``history_days`` of data for one tracking point and
tracks how many of those days are still pending. A tick extends every
consumer's coverage backwards by up to ``batch_size`` days, fetching each
``(point, date)`` once even when several consumers need it.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import date, timedelta
from typing import Any, Protocol

from tracksync._periodic import PeriodicRunner
from tracksync._timing import Clock, Wait, asyncio_wait, local_today, utcnow
from tracksync.config import SyncConfig
from tracksync.models.backfill import BackfillConsumer
from tracksync.models.cache import CacheKey, EventRecord
from tracksync.tiers.accessor import TieredCacheAccessor

_logger = logging.getLogger(__name__)

Deliver = Callable[[BackfillConsumer, CacheKey, tuple[EventRecord, ...]], Awaitable[None]]


class ConsumerRegistry(Protocol):
    async def list_consumers(self) -> list[BackfillConsumer]:
        ...

    async def update(self, consumer: BackfillConsumer) -> None:
        ...


class MemoryConsumerRegistry:
    """Consumers held in process memory, keyed by ``consumer_id``."""

    def __init__(self, consumers: Iterable[BackfillConsumer] = ()) -> None:
        self._consumers: dict[str, BackfillConsumer] = {c.consumer_id: c for c in consumers}

    def add(self, consumer: BackfillConsumer) -> None:
        self._consumers[consumer.consumer_id] = consumer

    def get(self, consumer_id: str) -> BackfillConsumer | None:
        return self._consumers.get(consumer_id)

    async def list_consumers(self) -> list[BackfillConsumer]:
        return list(self._consumers.values())

    async def update(self, consumer: BackfillConsumer) -> None:
        self._consumers[consumer.consumer_id] = consumer


@dataclasses.dataclass(slots=True)
class BackfillReport:
    consumers: int = 0
    keys_fetched: int = 0
    delivered: int = 0
    failed_keys: list[str] = dataclasses.field(default_factory=list)
    blocked_consumers: list[str] = dataclasses.field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "consumers": self.consumers,
            "keysFetched": self.keys_fetched,
            "delivered": self.delivered,
            "failedKeys": list(self.failed_keys),
            "blockedConsumers": list(self.blocked_consumers),
        }


class BackfillCoordinator:
    """Batch historical fetches across consumers.

    Parameters
    ----------
    accessor : TieredCacheAccessor
        Every day is fetched through ``ensure``.
    consumers : ConsumerRegistry
        Where consumer progress is read and written.
    deliver : Deliver
        Hands one day of records to one consumer.
    config : SyncConfig
        Interval and delays.
    clock : Clock
        Time source.
    wait : Wait
        Delay strategy between fetched keys.
    """

    def __init__(
        self,
        accessor: TieredCacheAccessor,
        consumers: ConsumerRegistry,
        *,
        deliver: Deliver,
        config: SyncConfig,
        clock: Clock = utcnow,
        wait: Wait = asyncio_wait,
    ) -> None:
        self._accessor = accessor
        self._consumers = consumers
        self._deliver = deliver
        self._config = config
        self._clock = clock
        self._wait = wait
        self._ticking = False
        self.last_report: BackfillReport | None = None
        self._runner = PeriodicRunner("backfill", config.backfill_interval, self._scheduled_tick)

    @staticmethod
    def pending_dates(consumer: BackfillConsumer, today: date) -> list[str]:
        """Next dates to backfill for *consumer*, nearest first."""
        start = consumer.covered_days + 1
        count = min(consumer.batch_size, consumer.pending_days)
        return [(today - timedelta(days=start + offset)).isoformat() for offset in range(count)]

    async def tick(self) -> BackfillReport | None:
        """Advance every consumer by one batch.

        Returns ``None`` if a tick is already running.
        """
        if self._ticking:
            _logger.info("Backfill tick already running, skipping")
            return None
        self._ticking = True
        try:
            report = await self._tick()
        finally:
            self._ticking = False
        self.last_report = report
        return report

    async def _tick(self) -> BackfillReport:
        report = BackfillReport()
        today = local_today(self._clock, self._config.zone)
        active = {
            c.consumer_id: c for c in await self._consumers.list_consumers() if c.enabled and c.pending_days > 0
        }
        report.consumers = len(active)
        if not active:
            return report

        # project -> key -> waiting consumer ids
        plan: dict[str, dict[CacheKey, list[str]]] = {}
        for consumer in active.values():
            for day in self.pending_dates(consumer, today):
                key = CacheKey.of(consumer.point_id, day)
                plan.setdefault(consumer.project_id, {}).setdefault(key, []).append(consumer.consumer_id)

        blocked: set[str] = set()
        first = True
        for project_id, keys in plan.items():
            ordered = sorted(keys, key=lambda k: (k.date, -k.point_id), reverse=True)
            _logger.debug("Backfill project %s: %d keys", project_id, len(ordered))
            for key in ordered:
                waiting = [cid for cid in keys[key] if cid not in blocked]
                if not waiting:
                    continue
                if not first:
                    await self._wait(self._config.preload_task_delay)
                first = False
                result = await self._accessor.ensure(key)
                report.keys_fetched += 1
                if not result.ok:
                    _logger.warning("Backfill fetch of %s failed: %s", key, result.error or result.status)
                    report.failed_keys.append(str(key))
                    blocked.update(waiting)
                    continue
                for consumer_id in waiting:
                    consumer = active[consumer_id]
                    try:
                        await self._deliver(consumer, key, result.records)
                    except Exception:
                        _logger.warning("Delivery of %s to %s failed", key, consumer_id, exc_info=True)
                        blocked.add(consumer_id)
                        continue
                    consumer = consumer.model_copy(
                        update={"pending_days": consumer.pending_days - 1, "last_updated": self._clock()}
                    )
                    active[consumer_id] = consumer
                    await self._consumers.update(consumer)
                    report.delivered += 1

        report.blocked_consumers = sorted(blocked)
        _logger.info(
            "Backfill tick: consumers=%d keys=%d delivered=%d failed=%d",
            report.consumers,
            report.keys_fetched,
            report.delivered,
            len(report.failed_keys),
        )
        return report

    async def _scheduled_tick(self) -> None:
        await self.tick()

    @property
    def is_running(self) -> bool:
        return self._runner.running

    async def start(self) -> None:
        await self._runner.start()

    async def stop(self) -> None:
        await self._runner.stop()

    def status(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "isTicking": self._ticking,
            "lastReport": self.last_report.to_dict() if self.last_report else None,
        }
