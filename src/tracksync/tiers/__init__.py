"""Cache tiers: local, persistent, the accessor over both, and the staleness policy."""

from tracksync.tiers.accessor import EnsureResult, EnsureStatus, TieredCacheAccessor
from tracksync.tiers.local import LocalTier
from tracksync.tiers.persistent import (
    HttpPersistentTier,
    MemoryPersistentTier,
    PersistentTier,
    SqlitePersistentTier,
)
from tracksync.tiers.policy import RefreshReason, StalenessPolicy, Verdict

__all__ = [
    "EnsureResult",
    "EnsureStatus",
    "HttpPersistentTier",
    "LocalTier",
    "MemoryPersistentTier",
    "PersistentTier",
    "RefreshReason",
    "SqlitePersistentTier",
    "StalenessPolicy",
    "TieredCacheAccessor",
    "Verdict",
]
