"""Application-local cache tier (process memory, non-durable)."""

from __future__ import annotations

from collections.abc import Iterator

from tracksync.models.cache import CacheEntry, CacheKey


class LocalTier:
    """Dict-backed mirror of the persistent tier.

    Entries are frozen, so a reader always sees either the old or the new
    entry for a key, never a mix.
    """

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> Iterator[CacheKey]:
        return iter(list(self._entries))

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
