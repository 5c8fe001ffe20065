"""Durable cache tier.

Three implementations share the :class:`PersistentTier` protocol:

- :class:`MemoryPersistentTier` for tests and one-shot tools,
- :class:`SqlitePersistentTier` backing the HTTP surface in
  :mod:`tracksync.server`,
- :class:`HttpPersistentTier` talking to that surface from another process.

Every write is insert-or-replace keyed by ``(point_id, date)``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, tzinfo
from typing import Any, Protocol

import aiosqlite

from tracksync._api import backend
from tracksync._transport import Transport
from tracksync.config import SyncConfig
from tracksync.exceptions import PersistentTierUnavailableError
from tracksync.models.cache import CacheEntry, CacheKey, EventRecord

_logger = logging.getLogger(__name__)

# Entries read from a backend that does not record fetch times are treated as
# fetched at the epoch, i.e. already expired.
_UNKNOWN_FETCH_TIME = datetime(1970, 1, 1, tzinfo=UTC)


class PersistentTier(Protocol):
    """Structural interface of the durable tier.

    Implementations raise :class:`PersistentTierUnavailableError` when the
    store cannot be reached.
    """

    async def get(self, key: CacheKey) -> CacheEntry | None:
        ...

    async def put(self, entry: CacheEntry) -> None:
        ...

    async def exists(self, key: CacheKey) -> bool:
        ...

    async def delete(self, key: CacheKey) -> None:
        ...

    async def ping(self) -> bool:
        ...


def entry_from_stored(
    key: CacheKey,
    records: list[dict[str, Any]] | tuple[dict[str, Any], ...],
    *,
    fetched_at: datetime | None,
    reported_total: int | None,
    zone: tzinfo = UTC,
) -> CacheEntry:
    return CacheEntry.build(
        key,
        (EventRecord.from_payload(item, zone) for item in records),
        fetched_at=fetched_at or _UNKNOWN_FETCH_TIME,
        reported_total=reported_total,
    )


class MemoryPersistentTier:
    """In-process stand-in for the durable tier."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}

    async def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    async def put(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    async def exists(self, key: CacheKey) -> bool:
        return key in self._entries

    async def delete(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._entries)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_data_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tracking_point_id INTEGER NOT NULL,
    date TEXT NOT NULL,
    data TEXT NOT NULL,
    fetched_at TEXT NOT NULL,
    reported_total INTEGER,
    actual_count INTEGER NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(tracking_point_id, date)
)
"""

_CONFIG_SCHEMA = """
CREATE TABLE IF NOT EXISTS system_config (
    config_key TEXT PRIMARY KEY,
    config_value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""


class SqlitePersistentTier:
    """SQLite-backed durable tier using :mod:`aiosqlite`.

    Call :meth:`connect` before use and :meth:`close` when done; the object
    is also an async context manager. Stored naive record timestamps are
    read in *zone*.
    """

    def __init__(self, path: str, *, zone: tzinfo = UTC) -> None:
        self._path = path or ":memory:"
        self._zone = zone
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = await aiosqlite.connect(self._path)
            await self._conn.execute(_SCHEMA)
            await self._conn.execute(_CONFIG_SCHEMA)
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(f"Cannot open {self._path}: {exc}", endpoint=self._path) from exc
        _logger.debug("Opened SQLite cache at %s", self._path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SqlitePersistentTier:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistentTierUnavailableError("SQLite tier is not connected", endpoint=self._path)
        return self._conn

    async def get(self, key: CacheKey) -> CacheEntry | None:
        conn = self._require()
        try:
            async with conn.execute(
                "SELECT data, fetched_at, reported_total FROM raw_data_cache WHERE tracking_point_id=? AND date=?",
                (key.point_id, key.date),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(f"SQLite read failed for {key}: {exc}", endpoint=self._path) from exc
        if row is None:
            return None
        data, fetched_at, reported_total = row
        return entry_from_stored(
            key,
            json.loads(data),
            fetched_at=datetime.fromisoformat(fetched_at),
            reported_total=reported_total,
            zone=self._zone,
        )

    async def put(self, entry: CacheEntry) -> None:
        conn = self._require()
        try:
            await conn.execute(
                "INSERT OR REPLACE INTO raw_data_cache"
                "(tracking_point_id, date, data, fetched_at, reported_total, actual_count, updated_at)"
                " VALUES(?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)",
                (
                    entry.key.point_id,
                    entry.key.date,
                    json.dumps(entry.to_payload(), default=str),
                    entry.fetched_at.isoformat(),
                    entry.reported_total,
                    entry.actual_count,
                ),
            )
            await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(
                f"SQLite write failed for {entry.key}: {exc}", endpoint=self._path
            ) from exc

    async def exists(self, key: CacheKey) -> bool:
        conn = self._require()
        try:
            async with conn.execute(
                "SELECT 1 FROM raw_data_cache WHERE tracking_point_id=? AND date=?",
                (key.point_id, key.date),
            ) as cursor:
                return await cursor.fetchone() is not None
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(f"SQLite read failed for {key}: {exc}", endpoint=self._path) from exc

    async def delete(self, key: CacheKey) -> None:
        conn = self._require()
        try:
            await conn.execute(
                "DELETE FROM raw_data_cache WHERE tracking_point_id=? AND date=?",
                (key.point_id, key.date),
            )
            await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(f"SQLite delete failed for {key}: {exc}", endpoint=self._path) from exc

    async def ping(self) -> bool:
        if self._conn is None:
            return False
        try:
            await self._conn.execute("SELECT 1")
        except aiosqlite.Error:
            return False
        return True

    async def summary(self) -> dict[str, Any]:
        """Row counts per tracking point, for status endpoints."""
        conn = self._require()
        try:
            async with conn.execute(
                "SELECT tracking_point_id, COUNT(*), MIN(date), MAX(date)"
                " FROM raw_data_cache GROUP BY tracking_point_id"
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(f"SQLite summary failed: {exc}", endpoint=self._path) from exc
        return {
            str(point_id): {"days": days, "firstDate": first, "lastDate": last}
            for point_id, days, first, last in rows
        }

    async def get_config(self, config_key: str) -> Any:
        """Stored system configuration value, JSON-decoded, or ``None``."""
        conn = self._require()
        try:
            async with conn.execute(
                "SELECT config_value FROM system_config WHERE config_key=?",
                (config_key,),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(
                f"SQLite config read failed for {config_key}: {exc}", endpoint=self._path
            ) from exc
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            return row[0]

    async def set_config(self, config_key: str, value: Any) -> None:
        conn = self._require()
        try:
            await conn.execute(
                "INSERT OR REPLACE INTO system_config(config_key, config_value, updated_at)"
                " VALUES(?, ?, CURRENT_TIMESTAMP)",
                (config_key, json.dumps(value, default=str)),
            )
            await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistentTierUnavailableError(
                f"SQLite config write failed for {config_key}: {exc}", endpoint=self._path
            ) from exc


class HttpPersistentTier:
    """Durable tier reached over the backend HTTP surface."""

    def __init__(self, config: SyncConfig, transport: Transport) -> None:
        self._config = config
        self._transport = transport

    async def get(self, key: CacheKey) -> CacheEntry | None:
        stored = await backend.fetch_stored_day(self._config, self._transport, key)
        if stored is None:
            return None
        return entry_from_stored(
            key,
            stored.records,
            fetched_at=stored.fetched_at,
            reported_total=stored.reported_total,
            zone=self._config.zone,
        )

    async def put(self, entry: CacheEntry) -> None:
        await backend.store_day(self._config, self._transport, entry)

    async def exists(self, key: CacheKey) -> bool:
        return await backend.fetch_stored_day(self._config, self._transport, key) is not None

    async def delete(self, key: CacheKey) -> None:
        await backend.delete_stored_day(self._config, self._transport, key)

    async def ping(self) -> bool:
        return await backend.ping(self._config, self._transport)

    async def trigger_preload(self) -> dict[str, Any]:
        return await backend.trigger_preload(self._config, self._transport)

    async def preload_status(self) -> dict[str, Any]:
        return await backend.preload_status(self._config, self._transport)
