"""Service facade wiring the tiers, source and schedulers together."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date
from typing import Any

import aiohttp

from tracksync._timing import Clock, Wait, asyncio_wait, utcnow
from tracksync._transport import JsonTransport, Transport
from tracksync.config import SyncConfig
from tracksync.diagnostics import ConsistencyDiagnosticEngine, DateRange
from tracksync.exceptions import PersistentTierUnavailableError, TrackSyncError
from tracksync.models.cache import EventRecord
from tracksync.models.diagnostics import RepairReport
from tracksync.scheduling.backfill import BackfillCoordinator, ConsumerRegistry, Deliver
from tracksync.scheduling.preload import PreloadReport, PreloadScheduler
from tracksync.source import SourceClient
from tracksync.tiers.accessor import TieredCacheAccessor
from tracksync.tiers.persistent import HttpPersistentTier, PersistentTier
from tracksync.tiers.policy import StalenessPolicy
from tracksync.tracking import ConfigSource, HttpConfigSource, TrackingPointRegistry

_logger = logging.getLogger(__name__)


class TrackSyncService:
    """Cache synchronization engine.

    Usage::

        async with TrackSyncService(config) as service:
            await service.start()
            records = await service.get_range(7, "2025-10-01", "2025-10-07")

    Parameters
    ----------
    config : SyncConfig
        Engine configuration.
    session : aiohttp.ClientSession, optional
        Shared HTTP session; one is created (and closed) when omitted.
    transport : Transport, optional
        Overrides the JSON transport built on the session.
    persistent : PersistentTier, optional
        Durable tier; defaults to the HTTP backend.
    config_source : ConfigSource, optional
        Authoritative tracking points; defaults to the backend's project config.
    consumers : ConsumerRegistry, optional
        Enables historical backfill when given together with *deliver*.
    deliver : Deliver, optional
        Backfill delivery callback.
    clock : Clock
        Time source for every component.
    wait : Wait
        Delay strategy for every component.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        persistent: PersistentTier | None = None,
        config_source: ConfigSource | None = None,
        consumers: ConsumerRegistry | None = None,
        deliver: Deliver | None = None,
        clock: Clock = utcnow,
        wait: Wait = asyncio_wait,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._persistent = persistent
        self._config_source = config_source
        self._consumers = consumers
        self._deliver = deliver
        self._clock = clock
        self._wait = wait
        self.startup_error: str | None = None
        self._accessor: TieredCacheAccessor | None = None
        self._registry: TrackingPointRegistry | None = None
        self._scheduler: PreloadScheduler | None = None
        self._diagnostics: ConsistencyDiagnosticEngine | None = None
        self._backfill: BackfillCoordinator | None = None
        self._started = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TrackSyncService:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = JsonTransport(
                self._http_session,
                timeout=self._config.request_timeout,
                trace=self._config.api_trace_enabled,
            )
        if self._persistent is None:
            self._persistent = HttpPersistentTier(self._config, self._transport)
        if self._config_source is None:
            self._config_source = HttpConfigSource(self._config, self._transport)
        self._build(self._transport, self._persistent, self._config_source)
        await self.check_persistent_tier()
        await self.registry.refresh()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
        if self._accessor is not None:
            await self._accessor.aclose()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _build(self, transport: Transport, persistent: PersistentTier, config_source: ConfigSource) -> None:
        config = self._config
        source = SourceClient(config, transport, wait=self._wait)
        policy = StalenessPolicy(config.staleness, zone=config.zone)
        self._accessor = TieredCacheAccessor(persistent, source, policy, clock=self._clock)
        self._registry = TrackingPointRegistry(config_source, refresh_interval=config.config_refresh_interval)
        self._scheduler = PreloadScheduler(
            self._accessor,
            self._registry,
            config=config,
            clock=self._clock,
            wait=self._wait,
        )
        self._diagnostics = ConsistencyDiagnosticEngine(
            self._accessor,
            source,
            self._registry,
            config=config,
            clock=self._clock,
            wait=self._wait,
        )
        if self._consumers is not None and self._deliver is not None:
            self._backfill = BackfillCoordinator(
                self._accessor,
                self._consumers,
                deliver=self._deliver,
                config=config,
                clock=self._clock,
                wait=self._wait,
            )

    async def check_persistent_tier(self) -> bool:
        """Probe the durable tier; switch to degraded reads if it is down.

        This is the one failure surfaced to operators: it is logged at ERROR
        and reported by :meth:`status`, but does not raise.
        """
        persistent = self._persistent
        assert persistent is not None
        try:
            reachable = await persistent.ping()
            reason = None if reachable else "health check returned an error status"
        except PersistentTierUnavailableError as exc:
            reachable = False
            reason = str(exc)
        if reachable:
            self.startup_error = None
            self.accessor.set_degraded(False)
            return True
        self.startup_error = f"Persistent tier unavailable: {reason}"
        _logger.error("%s; serving directly from the source without caching", self.startup_error)
        self.accessor.set_degraded(True)
        return False

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _require(self, component: Any, name: str) -> Any:
        if component is None:
            raise TrackSyncError(f"{name} is not available; use 'async with TrackSyncService(...)'")
        return component

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def accessor(self) -> TieredCacheAccessor:
        return self._require(self._accessor, "accessor")

    @property
    def registry(self) -> TrackingPointRegistry:
        return self._require(self._registry, "registry")

    @property
    def scheduler(self) -> PreloadScheduler:
        return self._require(self._scheduler, "scheduler")

    @property
    def diagnostics(self) -> ConsistencyDiagnosticEngine:
        return self._require(self._diagnostics, "diagnostics")

    @property
    def backfill(self) -> BackfillCoordinator | None:
        return self._backfill

    @property
    def degraded(self) -> bool:
        return self._accessor is not None and self._accessor.degraded

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start config refresh, preload and (if configured) backfill loops."""
        if self._started:
            return
        await self.registry.start()
        await self.scheduler.start()
        if self._backfill is not None:
            await self._backfill.start()
        self._started = True
        _logger.info("tracksync started for points %s", list(self.registry.point_ids))

    async def stop(self) -> None:
        if not self._started:
            return
        if self._backfill is not None:
            await self._backfill.stop()
        await self.scheduler.stop()
        await self.registry.stop()
        self._started = False
        _logger.info("tracksync stopped")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_range(self, point_id: int, start_date: date | str, end_date: date | str) -> list[EventRecord]:
        return await self.accessor.get_range(point_id, start_date, end_date)

    async def trigger_preload(self) -> PreloadReport | None:
        """Force a preload pass now; ``None`` if one is already running."""
        return await self.scheduler.trigger_now()

    async def diagnose_and_repair(
        self,
        date_range: DateRange | None = None,
        point_ids: Iterable[int] | None = None,
    ) -> RepairReport | None:
        """Force a full diagnostic plus repair; ``None`` if one is already running."""
        return await self.diagnostics.diagnose_and_repair(date_range, point_ids)

    async def reload_config(self) -> list[int]:
        points = await self.registry.refresh()
        return list(points.point_ids)

    def status(self) -> dict[str, Any]:
        return {
            "degraded": self.degraded,
            "startupError": self.startup_error,
            "trackingPoints": list(self.registry.point_ids),
            "configError": self.registry.last_error,
            "preload": self.scheduler.status(),
            "diagnostics": self.diagnostics.status(),
            "backfill": self._backfill.status() if self._backfill is not None else None,
        }
