"""Staleness policy.

Decides whether a cached day should be re-fetched from the source. The
policy is split into a pure :meth:`StalenessPolicy.verdict` and an async
:meth:`StalenessPolicy.should_refresh` that resolves source probes.

Rules, first match wins:

1. Older than ``hard_expiry``: refresh.
2. Recent date and older than ``recent_probe_after``: probe the source and
   refresh if it holds a record newer than the cached newest by more than
   ``newer_data_grace``.
3. Today's entry whose newest record is older than
   ``today_latest_max_age`` (or has no dated record), once the entry itself
   is older than ``today_recheck_after``: refresh.
4. Historical entry with fewer than ``sparse_day_threshold`` records, older
   than ``sparse_recheck_after``: refresh.
5. Otherwise keep.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo
from enum import StrEnum

from tracksync.config import StalenessThresholds
from tracksync.exceptions import TrackSyncError
from tracksync.models.cache import CacheEntry, CacheKey

_logger = logging.getLogger(__name__)

Probe = Callable[[CacheKey], Awaitable[datetime | None]]


class Verdict(StrEnum):
    FRESH = "fresh"
    REFRESH = "refresh"
    PROBE = "probe"


class RefreshReason(StrEnum):
    HARD_EXPIRY = "hard_expiry"
    NEWER_DATA = "newer_data"
    TODAY_STALE = "today_stale"
    SPARSE_DAY = "sparse_day"


class StalenessPolicy:
    """Evaluate cache entries against the staleness rules."""

    def __init__(self, thresholds: StalenessThresholds | None = None, *, zone: tzinfo) -> None:
        self._t = thresholds or StalenessThresholds()
        self._zone = zone

    @property
    def thresholds(self) -> StalenessThresholds:
        return self._t

    def is_hard_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.fetched_at > self._t.hard_expiry

    def is_recent(self, key: CacheKey, now: datetime) -> bool:
        today = now.astimezone(self._zone).date()
        delta = (today - key.day).days
        return 0 <= delta < self._t.recent_window_days

    def is_today(self, key: CacheKey, now: datetime) -> bool:
        return key.day == now.astimezone(self._zone).date()

    def refresh_reason(self, entry: CacheEntry, now: datetime) -> RefreshReason | None:
        """Reason for a refresh that needs no source probe, if any."""
        if self.is_hard_expired(entry, now):
            return RefreshReason.HARD_EXPIRY
        age = now - entry.fetched_at
        if self.is_today(entry.key, now):
            latest = entry.latest_record_at
            quiet = latest is None or now - latest > self._t.today_latest_max_age
            if quiet and age > self._t.today_recheck_after:
                return RefreshReason.TODAY_STALE
        elif entry.actual_count < self._t.sparse_day_threshold and age > self._t.sparse_recheck_after:
            return RefreshReason.SPARSE_DAY
        return None

    def needs_probe(self, entry: CacheEntry, now: datetime) -> bool:
        return self.is_recent(entry.key, now) and now - entry.fetched_at > self._t.recent_probe_after

    def verdict(self, entry: CacheEntry | None, now: datetime) -> Verdict:
        """Pure part of the policy.

        Rules that need no source round-trip are evaluated first; ``PROBE``
        is returned only when the probe is the sole open question, so a
        negative probe means the entry is fresh.
        """
        if entry is None:
            return Verdict.REFRESH
        if self.refresh_reason(entry, now) is not None:
            return Verdict.REFRESH
        if self.needs_probe(entry, now):
            return Verdict.PROBE
        return Verdict.FRESH

    def has_newer(self, entry: CacheEntry, source_latest: datetime | None) -> bool:
        if source_latest is None:
            return False
        cached_latest = entry.latest_record_at
        if cached_latest is None:
            return True
        return source_latest - cached_latest > self._t.newer_data_grace

    async def should_refresh(
        self,
        entry: CacheEntry | None,
        now: datetime,
        probe: Probe | None = None,
    ) -> bool:
        """Full policy decision.

        Parameters
        ----------
        entry : CacheEntry or None
            Cached entry; ``None`` always refreshes.
        now : datetime
            Evaluation time.
        probe : Probe, optional
            Returns the newest source record time for a key. Without a probe,
            ``PROBE`` verdicts are treated as fresh.

        Returns
        -------
        bool
            Whether the entry should be re-fetched.
        """
        result = self.verdict(entry, now)
        if result is Verdict.REFRESH:
            return True
        if result is Verdict.FRESH or probe is None or entry is None:
            return False
        try:
            source_latest = await probe(entry.key)
        except TrackSyncError:
            _logger.warning("Freshness probe failed for %s, keeping cached entry", entry.key, exc_info=True)
            return False
        newer = self.has_newer(entry, source_latest)
        if newer:
            _logger.debug("Source holds newer data for %s (%s)", entry.key, source_latest)
        return newer
