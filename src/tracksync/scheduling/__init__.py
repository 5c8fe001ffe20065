"""Background synchronization: preload passes and historical backfill."""

from tracksync.scheduling.backfill import (
    BackfillCoordinator,
    BackfillReport,
    ConsumerRegistry,
    MemoryConsumerRegistry,
)
from tracksync.scheduling.preload import PreloadReport, PreloadScheduler

__all__ = [
    "BackfillCoordinator",
    "BackfillReport",
    "ConsumerRegistry",
    "MemoryConsumerRegistry",
    "PreloadReport",
    "PreloadScheduler",
]
