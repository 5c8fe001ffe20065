"""Tiered cache accessor.

Reads go local tier, then persistent tier; misses and stale entries are
filled from the source and written back to both tiers. Concurrent
``ensure`` calls for one key share a single source fetch.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import date, datetime, timedelta
from enum import StrEnum

from pydantic import ValidationError

from tracksync._timing import Clock, local_today, utcnow
from tracksync.exceptions import PersistentTierUnavailableError, TrackSyncError
from tracksync.models.cache import CacheEntry, CacheKey, EventRecord
from tracksync.source import SourceClient
from tracksync.tiers.local import LocalTier
from tracksync.tiers.persistent import PersistentTier
from tracksync.tiers.policy import StalenessPolicy, Verdict

_logger = logging.getLogger(__name__)


class EnsureStatus(StrEnum):
    CACHED = "cached"
    REFRESHED = "refreshed"
    EMPTY = "empty"
    NOT_FOUND = "not_found"
    STALE = "stale"
    FAILED = "failed"


_OK_STATUSES = frozenset({EnsureStatus.CACHED, EnsureStatus.REFRESHED, EnsureStatus.EMPTY})


@dataclasses.dataclass(slots=True)
class EnsureResult:
    """Outcome of :meth:`TieredCacheAccessor.ensure`.

    ``STALE`` means the refresh failed and the previous entry is returned;
    ``FAILED`` means there was nothing to fall back on. ``NOT_FOUND`` is an
    empty answer for today, which is not cached.
    """

    key: CacheKey
    status: EnsureStatus
    entry: CacheEntry | None = None
    error: BaseException | None = None
    persisted: bool = True

    @property
    def ok(self) -> bool:
        return self.status in _OK_STATUSES

    @property
    def records(self) -> tuple[EventRecord, ...]:
        return self.entry.records if self.entry is not None else ()


class TieredCacheAccessor:
    """Single entry point for cached day data.

    Parameters
    ----------
    persistent : PersistentTier
        Durable tier.
    source : SourceClient
        Upstream client used on miss or refresh.
    policy : StalenessPolicy
        Decides when a cached entry must be re-fetched.
    local : LocalTier, optional
        In-process tier; a fresh one is created when omitted.
    clock : Clock
        Time source.
    degraded : bool
        Start with the persistent tier bypassed.
    """

    def __init__(
        self,
        persistent: PersistentTier,
        source: SourceClient,
        policy: StalenessPolicy,
        *,
        local: LocalTier | None = None,
        clock: Clock = utcnow,
        degraded: bool = False,
    ) -> None:
        self._persistent = persistent
        self._source = source
        self._policy = policy
        self._local = local if local is not None else LocalTier()
        self._clock = clock
        self._degraded = degraded
        self._inflight: dict[CacheKey, asyncio.Task[EnsureResult]] = {}
        self._background: set[asyncio.Task[EnsureResult]] = set()
        self.source_fetches = 0

    @property
    def source(self) -> SourceClient:
        return self._source

    @property
    def policy(self) -> StalenessPolicy:
        return self._policy

    @property
    def local(self) -> LocalTier:
        return self._local

    @property
    def persistent(self) -> PersistentTier:
        return self._persistent

    @property
    def degraded(self) -> bool:
        return self._degraded

    def set_degraded(self, degraded: bool) -> None:
        if degraded != self._degraded:
            _logger.warning("Persistent tier %s", "bypassed (degraded mode)" if degraded else "re-enabled")
        self._degraded = degraded

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return local_today(self._clock, self._source.config.zone)

    def inflight(self) -> int:
        return len(self._inflight)

    async def get(self, key: CacheKey) -> CacheEntry | None:
        """Cached entry for *key*, never touching the source."""
        entry = self._local.get(key)
        if entry is not None or self._degraded:
            return entry
        try:
            entry = await self._persistent.get(key)
        except PersistentTierUnavailableError:
            _logger.warning("Persistent read failed for %s, treating as miss", key, exc_info=True)
            return None
        if entry is not None:
            self._local.put(entry)
        return entry

    async def is_fresh(self, key: CacheKey, *, deep: bool = False) -> bool:
        """Whether *key* is cached and needs no refresh.

        With ``deep=False`` probe verdicts count as fresh.
        """
        entry = await self.get(key)
        if entry is None:
            return False
        probe = self._source.probe_latest if deep else None
        return not await self._policy.should_refresh(entry, self._clock(), probe=probe)

    async def ensure(self, key: CacheKey, *, force: bool = False) -> EnsureResult:
        """Return a present-and-fresh entry for *key*, fetching if needed.

        Parameters
        ----------
        key : CacheKey
            Day to ensure.
        force : bool
            Re-fetch even if the cached entry is fresh.

        Returns
        -------
        EnsureResult
            Never raises for per-key failures; see :class:`EnsureStatus`.
        """
        prior = await self.get(key)
        if prior is not None and not force:
            refresh = await self._policy.should_refresh(prior, self._clock(), probe=self._source.probe_latest)
            if not refresh:
                return EnsureResult(key, EnsureStatus.CACHED, prior)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh(key, prior))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            _logger.debug("Joining in-flight fetch for %s", key)
        # Shielded so a cancelled caller does not abort the shared fetch.
        return await asyncio.shield(task)

    async def _refresh(self, key: CacheKey, prior: CacheEntry | None) -> EnsureResult:
        self.source_fetches += 1
        try:
            fetched = await self._source.fetch_all(key)
            entry = CacheEntry.build(
                key,
                fetched.records,
                fetched_at=self._clock(),
                reported_total=fetched.reported_total,
            )
        except (TrackSyncError, ValidationError) as exc:
            if prior is not None:
                _logger.warning("Refresh of %s failed, serving previous entry", key, exc_info=True)
                return EnsureResult(key, EnsureStatus.STALE, prior, error=exc)
            _logger.warning("Fetch of %s failed", key, exc_info=True)
            return EnsureResult(key, EnsureStatus.FAILED, error=exc)

        if entry.is_empty and key.day == self.today():
            _logger.debug("No records yet for %s, not caching", key)
            return EnsureResult(key, EnsureStatus.NOT_FOUND, entry)

        status = EnsureStatus.EMPTY if entry.is_empty else EnsureStatus.REFRESHED
        if self._degraded:
            return EnsureResult(key, status, entry, persisted=False)

        persisted = True
        try:
            await self._persistent.put(entry)
        except PersistentTierUnavailableError:
            _logger.error("Persistent write failed for %s, keeping entry locally only", key, exc_info=True)
            persisted = False
        self._local.put(entry)
        _logger.debug("Cached %s: %d records (reported %d)", key, entry.actual_count, fetched.reported_total)
        return EnsureResult(key, status, entry, persisted=persisted)

    async def serve(self, key: CacheKey) -> CacheEntry | None:
        """Whatever is cached for *key*, scheduling a refresh when needed.

        Stale entries are returned as-is; the refresh runs in the background
        and is awaited by :meth:`aclose`.
        """
        entry = await self.get(key)
        if entry is None or self._policy.verdict(entry, self._clock()) is not Verdict.FRESH:
            self._schedule(key)
        return entry

    def _schedule(self, key: CacheKey) -> None:
        if key in self._inflight:
            return
        task = asyncio.get_running_loop().create_task(self.ensure(key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def get_range(self, point_id: int, start_date: date | str, end_date: date | str) -> list[EventRecord]:
        """Records of *point_id* between two dates (inclusive), in date order.

        Days that cannot be ensured are logged and skipped.
        """
        start = CacheKey.of(point_id, start_date).day
        end = CacheKey.of(point_id, end_date).day
        records: list[EventRecord] = []
        day = start
        while day <= end:
            result = await self.ensure(CacheKey.of(point_id, day))
            if result.entry is None or result.status is EnsureStatus.FAILED:
                _logger.warning("Skipping %s/%s: %s", point_id, day, result.error or result.status)
            else:
                records.extend(result.records)
            day += timedelta(days=1)
        return records

    async def clear(self, key: CacheKey) -> None:
        """Remove *key* from both tiers."""
        self._local.invalidate(key)
        if self._degraded:
            return
        await self._persistent.delete(key)

    async def aclose(self) -> None:
        """Wait for background refreshes and in-flight fetches to finish."""
        pending = list(self._background) + list(self._inflight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

