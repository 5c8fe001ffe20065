"""Synchronization work items."""

from __future__ import annotations

from enum import StrEnum

from tracksync.models._base import TrackBaseModel
from tracksync.models.cache import CacheKey


class SyncPriority(StrEnum):
    HIGH = "high"  # recent (today/yesterday) and missing or stale
    LOW = "low"  # historical backfill gap


class SyncTask(TrackBaseModel):
    key: CacheKey
    priority: SyncPriority = SyncPriority.HIGH
