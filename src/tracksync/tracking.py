"""Tracking-point configuration.

The registry keeps a local mirror of the active tracking points and
refreshes it from an authoritative :class:`ConfigSource`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from tracksync._api import backend
from tracksync._periodic import PeriodicRunner
from tracksync._transport import Transport
from tracksync.config import SyncConfig
from tracksync.exceptions import StaleConfigError, TrackSyncError
from tracksync.models.tracking import TrackingPointSet
from tracksync.tiers.persistent import SqlitePersistentTier

_logger = logging.getLogger(__name__)

PROJECT_CONFIG_KEY = "projectConfig"


class ConfigSource(Protocol):
    """Where the authoritative tracking-point list comes from."""

    async def load(self) -> TrackingPointSet:
        ...


class StaticConfigSource:
    """Fixed tracking-point list, replaceable at runtime."""

    def __init__(self, points: TrackingPointSet | Iterable[int] = (), *, project_id: str | None = None) -> None:
        self._points = self._coerce(points, project_id)

    @staticmethod
    def _coerce(points: TrackingPointSet | Iterable[int], project_id: str | None) -> TrackingPointSet:
        if isinstance(points, TrackingPointSet):
            return points
        return TrackingPointSet(project_id=project_id, point_ids=tuple(points))

    def set(self, points: TrackingPointSet | Iterable[int]) -> None:
        self._points = self._coerce(points, self._points.project_id)

    async def load(self) -> TrackingPointSet:
        return self._points


class HttpConfigSource:
    """Reads ``GET /config/projectConfig`` from the backend."""

    def __init__(self, config: SyncConfig, transport: Transport) -> None:
        self._config = config
        self._transport = transport

    async def load(self) -> TrackingPointSet:
        document = await backend.fetch_project_config(self._config, self._transport)
        return TrackingPointSet.from_project_config(document, project_id=self._config.project_id)


class StoredConfigSource:
    """Reads the ``projectConfig`` document kept in the SQLite tier."""

    def __init__(self, store: SqlitePersistentTier, *, project_id: str | None = None) -> None:
        self._store = store
        self._project_id = project_id

    async def load(self) -> TrackingPointSet:
        document = await self._store.get_config(PROJECT_CONFIG_KEY)
        if not isinstance(document, dict):
            _logger.warning("No project config stored, tracking-point list is empty")
            return TrackingPointSet(project_id=self._project_id)
        return TrackingPointSet.from_project_config(document, project_id=self._project_id)


class TrackingPointRegistry:
    """Local mirror of the active tracking points.

    Parameters
    ----------
    source : ConfigSource
        Authoritative configuration.
    initial : TrackingPointSet, optional
        Mirror contents before the first refresh.
    refresh_interval : float
        Seconds between background refreshes.
    """

    def __init__(
        self,
        source: ConfigSource,
        *,
        initial: TrackingPointSet | None = None,
        refresh_interval: float = 300.0,
    ) -> None:
        self._source = source
        self._current = initial or TrackingPointSet()
        self._runner = PeriodicRunner("tracking-config-refresh", refresh_interval, self.refresh)
        self.last_error: str | None = None

    @property
    def current(self) -> TrackingPointSet:
        return self._current

    @property
    def point_ids(self) -> tuple[int, ...]:
        return self._current.point_ids

    def replace(self, points: TrackingPointSet) -> None:
        """Overwrite the local mirror."""
        if points.point_ids != self._current.point_ids:
            _logger.info("Tracking points changed: %s -> %s", list(self._current.point_ids), list(points.point_ids))
        self._current = points

    async def authoritative(self) -> TrackingPointSet:
        """Load the authoritative set without touching the mirror."""
        return await self._source.load()

    async def refresh(self) -> TrackingPointSet:
        """Reload the mirror; on failure the previous mirror is kept."""
        try:
            points = await self._source.load()
        except TrackSyncError as exc:
            self.last_error = str(exc)
            _logger.warning("Tracking-point config refresh failed, keeping %s", list(self.point_ids), exc_info=True)
            return self._current
        self.last_error = None
        self.replace(points)
        return self._current

    async def assert_in_sync(self) -> None:
        """Raise :class:`StaleConfigError` if the mirror has drifted."""
        authoritative = await self._source.load()
        if not self._current.same_points(authoritative):
            raise StaleConfigError(
                f"Local tracking points {list(self.point_ids)} differ from {list(authoritative.point_ids)}",
                local_ids=self.point_ids,
                authoritative_ids=authoritative.point_ids,
            )

    @property
    def refreshing(self) -> bool:
        return self._runner.running

    async def start(self) -> None:
        await self._runner.start()

    async def stop(self) -> None:
        await self._runner.stop()
