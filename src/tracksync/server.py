"""Backend HTTP surface (aiohttp.web).

Serves the persistent tier over HTTP for other processes and exposes the
operational triggers. All routes live under ``/api``:

  - GET    /api/health
  - GET    /api/cache/raw-data/{trackingPointId}/{date}
  - POST   /api/cache/raw-data
  - DELETE /api/cache/raw-data/{trackingPointId}/{date}
  - POST   /api/preload/trigger
  - GET    /api/preload/status
  - POST   /api/preload/reload-config
  - POST   /api/diagnostics/run
  - GET    /api/config/projectConfig
  - POST   /api/config/projectConfig

Trigger endpoints schedule the work and answer ``202`` immediately.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator, Awaitable
from datetime import UTC, datetime
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from tracksync._api.backend import StoredDay
from tracksync._constants import (
    HEALTH_ROUTE,
    PRELOAD_STATUS_ROUTE,
    PRELOAD_TRIGGER_ROUTE,
    PROJECT_CONFIG_ROUTE,
    RAW_DATA_ROUTE,
)
from tracksync.config import SyncConfig
from tracksync.exceptions import PersistentTierUnavailableError
from tracksync.models.cache import CacheKey
from tracksync.service import TrackSyncService
from tracksync.tiers.persistent import SqlitePersistentTier, entry_from_stored
from tracksync.tracking import PROJECT_CONFIG_KEY, StoredConfigSource

_logger = logging.getLogger(__name__)

API_PREFIX = "/api"


@dataclasses.dataclass
class ServerRuntime:
    """Objects the handlers need, filled in at startup."""

    config: SyncConfig
    service: TrackSyncService | None = None
    store: SqlitePersistentTier | None = None
    tasks: set[asyncio.Task[Any]] = dataclasses.field(default_factory=set)

    def spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)


RUNTIME_KEY = web.AppKey("tracksync_runtime", ServerRuntime)


def _runtime(request: web.Request) -> ServerRuntime:
    return request.app[RUNTIME_KEY]


def _service(request: web.Request) -> TrackSyncService:
    service = _runtime(request).service
    if service is None:
        raise web.HTTPServiceUnavailable(reason="service not started")
    return service


def _store(request: web.Request) -> SqlitePersistentTier:
    store = _runtime(request).store
    if store is None:
        raise web.HTTPServiceUnavailable(reason="store not open")
    return store


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def _key_from_path(request: web.Request) -> CacheKey:
    try:
        return CacheKey.of(int(request.match_info["point_id"]), request.match_info["date"])
    except (ValueError, ValidationError) as exc:
        raise web.HTTPBadRequest(reason=f"invalid cache key: {exc}") from exc


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(reason="body is not valid JSON") from exc


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


async def health(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    service = runtime.service
    store_ok = runtime.store is not None and await runtime.store.ping()
    return web.json_response(
        {
            "status": "ok" if store_ok else "degraded",
            "degraded": service.degraded if service is not None else True,
            "startupError": service.startup_error if service is not None else None,
            "timestamp": _timestamp(),
        }
    )


async def get_raw_data(request: web.Request) -> web.Response:
    key = _key_from_path(request)
    try:
        entry = await _store(request).get(key)
    except PersistentTierUnavailableError as exc:
        return web.json_response({"error": str(exc)}, status=500)
    if entry is None:
        return web.json_response({"error": f"{key} not cached"}, status=404)
    return web.json_response(
        {
            "records": entry.to_payload(),
            "fetchedAt": entry.fetched_at.isoformat(),
            "reportedTotal": entry.reported_total,
            "actualCount": entry.actual_count,
        }
    )


async def put_raw_data(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(reason="body must be an object")
    try:
        key = CacheKey.model_validate(body)
        stored = StoredDay.model_validate({**body, "records": body.get("data") or []})
        entry = entry_from_stored(
            key,
            stored.records,
            fetched_at=stored.fetched_at or datetime.now(UTC),
            reported_total=stored.reported_total,
            zone=_runtime(request).config.zone,
        )
    except ValidationError as exc:
        raise web.HTTPBadRequest(reason=f"invalid raw-data payload: {exc.error_count()} error(s)") from exc
    try:
        await _store(request).put(entry)
    except PersistentTierUnavailableError as exc:
        return web.json_response({"error": str(exc)}, status=500)
    return web.json_response({"success": True, "key": str(key), "actualCount": entry.actual_count})


async def delete_raw_data(request: web.Request) -> web.Response:
    key = _key_from_path(request)
    try:
        await _store(request).delete(key)
    except PersistentTierUnavailableError as exc:
        return web.json_response({"error": str(exc)}, status=500)
    service = _runtime(request).service
    if service is not None:
        service.accessor.local.invalidate(key)
    return web.json_response({"success": True, "key": str(key)})


async def trigger_preload(request: web.Request) -> web.Response:
    service = _service(request)
    running = service.scheduler.is_task_running
    if not running:
        _runtime(request).spawn(service.trigger_preload(), "preload-trigger")
    return web.json_response(
        {"success": True, "accepted": not running, "timestamp": _timestamp()},
        status=202,
    )


async def preload_status(request: web.Request) -> web.Response:
    service = _service(request)
    data = service.scheduler.status()
    data["degraded"] = service.degraded
    return web.json_response({"success": True, "data": data, "timestamp": _timestamp()})


async def reload_config(request: web.Request) -> web.Response:
    point_ids = await _service(request).reload_config()
    return web.json_response({"success": True, "pointIds": point_ids, "timestamp": _timestamp()})


async def run_diagnostics(request: web.Request) -> web.Response:
    service = _service(request)
    engine = service.diagnostics
    running = engine.is_checking or engine.is_repairing
    if not running:
        _runtime(request).spawn(service.diagnose_and_repair(), "diagnose-and-repair")
    return web.json_response(
        {"success": True, "accepted": not running, "timestamp": _timestamp()},
        status=202,
    )


async def get_project_config(request: web.Request) -> web.Response:
    try:
        document = await _store(request).get_config(PROJECT_CONFIG_KEY)
    except PersistentTierUnavailableError as exc:
        return web.json_response({"error": str(exc)}, status=500)
    if document is None:
        return web.json_response({"error": "project config not set"}, status=404)
    return web.json_response({"data": document})


async def put_project_config(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(reason="body must be an object")
    try:
        await _store(request).set_config(PROJECT_CONFIG_KEY, body)
    except PersistentTierUnavailableError as exc:
        return web.json_response({"error": str(exc)}, status=500)
    service = _runtime(request).service
    point_ids = await service.reload_config() if service is not None else []
    return web.json_response({"success": True, "pointIds": point_ids})


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


def _routes(prefix: str) -> list[web.RouteDef]:
    raw_item = f"{prefix}{RAW_DATA_ROUTE}/{{point_id}}/{{date}}"
    return [
        web.get(f"{prefix}{HEALTH_ROUTE}", health),
        web.get(raw_item, get_raw_data),
        web.delete(raw_item, delete_raw_data),
        web.post(f"{prefix}{RAW_DATA_ROUTE}", put_raw_data),
        web.post(f"{prefix}{PRELOAD_TRIGGER_ROUTE}", trigger_preload),
        web.get(f"{prefix}{PRELOAD_STATUS_ROUTE}", preload_status),
        web.post(f"{prefix}/preload/reload-config", reload_config),
        web.post(f"{prefix}/diagnostics/run", run_diagnostics),
        web.get(f"{prefix}{PROJECT_CONFIG_ROUTE}", get_project_config),
        web.post(f"{prefix}{PROJECT_CONFIG_ROUTE}", put_project_config),
    ]


async def _cancel_tasks(runtime: ServerRuntime) -> None:
    for task in list(runtime.tasks):
        task.cancel()
    if runtime.tasks:
        await asyncio.gather(*runtime.tasks, return_exceptions=True)


def create_app(
    config: SyncConfig,
    *,
    service: TrackSyncService | None = None,
    store: SqlitePersistentTier | None = None,
    start_background: bool = True,
    prefix: str = API_PREFIX,
) -> web.Application:
    """Build the backend application.

    When *service* and *store* are given they are used as-is and their
    lifecycle stays with the caller. Otherwise the store is opened at
    ``config.database_path`` and a service is started on top of it when the
    application starts.
    """
    runtime = ServerRuntime(config=config, service=service, store=store)
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app.add_routes(_routes(prefix))

    if service is None or store is None:

        async def lifecycle(_app: web.Application) -> AsyncIterator[None]:
            owned_store = runtime.store or SqlitePersistentTier(config.database_path, zone=config.zone)
            await owned_store.connect()
            runtime.store = owned_store
            owned_service = TrackSyncService(
                config,
                persistent=owned_store,
                config_source=StoredConfigSource(owned_store, project_id=config.project_id),
            )
            await owned_service.__aenter__()
            runtime.service = owned_service
            if start_background:
                await owned_service.start()
            _logger.info("Backend ready (database=%s)", config.database_path)
            try:
                yield
            finally:
                await _cancel_tasks(runtime)
                await owned_service.__aexit__(None, None, None)
                await owned_store.close()
                runtime.service = None
                runtime.store = None

        app.cleanup_ctx.append(lifecycle)
    else:

        async def on_cleanup(_app: web.Application) -> None:
            await _cancel_tasks(runtime)

        app.on_cleanup.append(on_cleanup)
    return app
