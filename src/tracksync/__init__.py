"""tracksync - Multi-tier cache synchronization for day-bucketed tracking events."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tracksync")
except PackageNotFoundError:
    __version__ = "0+local"
from tracksync.config import StalenessThresholds, SyncConfig
from tracksync.diagnostics import ConsistencyDiagnosticEngine
from tracksync.exceptions import (
    FetchFailedError,
    IncompleteFetchError,
    PersistentTierUnavailableError,
    StaleConfigError,
    TrackSyncConfigError,
    TrackSyncError,
    TransportError,
)
from tracksync.models import (
    BackfillConsumer,
    CacheEntry,
    CacheKey,
    DiagnosticIssue,
    DiagnosticReport,
    EventRecord,
    FixOutcome,
    FixStatus,
    HealthReport,
    HealthStatus,
    IssueKind,
    Remedy,
    RepairReport,
    Severity,
    SyncPriority,
    SyncTask,
    TrackingPointSet,
)
from tracksync.scheduling import BackfillCoordinator, MemoryConsumerRegistry, PreloadScheduler
from tracksync.service import TrackSyncService
from tracksync.source import FetchResult, SourceClient
from tracksync.tiers import (
    EnsureResult,
    EnsureStatus,
    HttpPersistentTier,
    LocalTier,
    MemoryPersistentTier,
    SqlitePersistentTier,
    StalenessPolicy,
    TieredCacheAccessor,
)
from tracksync.tracking import HttpConfigSource, StaticConfigSource, StoredConfigSource, TrackingPointRegistry

__all__ = [
    "__version__",
    "BackfillConsumer",
    "BackfillCoordinator",
    "CacheEntry",
    "CacheKey",
    "ConsistencyDiagnosticEngine",
    "DiagnosticIssue",
    "DiagnosticReport",
    "EnsureResult",
    "EnsureStatus",
    "EventRecord",
    "FetchFailedError",
    "FetchResult",
    "FixOutcome",
    "FixStatus",
    "HealthReport",
    "HealthStatus",
    "HttpConfigSource",
    "HttpPersistentTier",
    "IncompleteFetchError",
    "IssueKind",
    "LocalTier",
    "MemoryConsumerRegistry",
    "MemoryPersistentTier",
    "PersistentTierUnavailableError",
    "PreloadScheduler",
    "Remedy",
    "RepairReport",
    "Severity",
    "SourceClient",
    "SqlitePersistentTier",
    "StaleConfigError",
    "StalenessPolicy",
    "StalenessThresholds",
    "StaticConfigSource",
    "StoredConfigSource",
    "SyncConfig",
    "SyncPriority",
    "SyncTask",
    "TieredCacheAccessor",
    "TrackSyncConfigError",
    "TrackSyncError",
    "TrackSyncService",
    "TrackingPointRegistry",
    "TrackingPointSet",
    "TransportError",
]
