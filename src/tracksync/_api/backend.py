"""Persistent-tier backend endpoints.

Endpoints (relative to ``backend_base_url``):
  - GET    /cache/raw-data/{trackingPointId}/{date}
  - POST   /cache/raw-data                 (insert-or-replace)
  - DELETE /cache/raw-data/{trackingPointId}/{date}
  - POST   /preload/trigger
  - GET    /preload/status
  - GET    /config/projectConfig
  - GET    /health
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from tracksync._constants import (
    HEALTH_ROUTE,
    PRELOAD_STATUS_ROUTE,
    PRELOAD_TRIGGER_ROUTE,
    PROJECT_CONFIG_ROUTE,
    RAW_DATA_ROUTE,
)
from tracksync._transport import Transport
from tracksync.config import SyncConfig
from tracksync.exceptions import PersistentTierUnavailableError, TransportError
from tracksync.models._base import TrackBaseModel, parse_event_timestamp
from tracksync.models.cache import CacheEntry, CacheKey


class StoredDay(TrackBaseModel):
    """A cached day as the backend returns it.

    Older backends return a bare record array with no fetch timestamp;
    ``fetched_at`` is then ``None``.
    """

    records: tuple[dict[str, Any], ...] = ()
    fetched_at: datetime | None = None
    reported_total: int | None = None


def _url(config: SyncConfig, route: str) -> str:
    return f"{config.backend_base_url.rstrip('/')}{route}"


def raw_data_url(config: SyncConfig, key: CacheKey) -> str:
    return _url(config, f"{RAW_DATA_ROUTE}/{key.point_id}/{key.date}")


def parse_stored_day(body: Any) -> StoredDay:
    if isinstance(body, list):
        return StoredDay(records=tuple(item for item in body if isinstance(item, dict)))
    if isinstance(body, dict):
        raw_records = body.get("records", body.get("data")) or []
        total = body.get("reportedTotal")
        return StoredDay(
            records=tuple(item for item in raw_records if isinstance(item, dict)),
            fetched_at=parse_event_timestamp(body.get("fetchedAt")),
            reported_total=int(total) if isinstance(total, (int, float)) else None,
        )
    raise PersistentTierUnavailableError("Malformed raw-data body from backend", endpoint=RAW_DATA_ROUTE)


def build_store_payload(entry: CacheEntry) -> dict[str, Any]:
    return {
        "trackingPointId": entry.key.point_id,
        "date": entry.key.date,
        "data": entry.to_payload(),
        "fetchedAt": entry.fetched_at.isoformat(),
        "reportedTotal": entry.reported_total,
    }


async def _call(
    transport: Transport,
    method: str,
    url: str,
    *,
    payload: Any = None,
) -> tuple[int, Any]:
    try:
        status, body = await transport.request_json(method, url, payload=payload)
    except TransportError as exc:
        raise PersistentTierUnavailableError(
            f"Backend unreachable: {exc}",
            status_code=exc.status_code,
            endpoint=url,
        ) from exc
    if status >= 500:
        raise PersistentTierUnavailableError(
            f"Backend {method} {url} returned HTTP {status}",
            status_code=status,
            endpoint=url,
        )
    return status, body


async def fetch_stored_day(config: SyncConfig, transport: Transport, key: CacheKey) -> StoredDay | None:
    """Return the cached day, or ``None`` when the backend answers 404."""
    url = raw_data_url(config, key)
    status, body = await _call(transport, "GET", url)
    if status == 404:
        return None
    if status != 200:
        raise PersistentTierUnavailableError(
            f"Backend GET {url} returned HTTP {status}",
            status_code=status,
            endpoint=url,
        )
    return parse_stored_day(body)


async def store_day(config: SyncConfig, transport: Transport, entry: CacheEntry) -> None:
    url = _url(config, RAW_DATA_ROUTE)
    status, _body = await _call(transport, "POST", url, payload=build_store_payload(entry))
    if status not in (200, 201, 204):
        raise PersistentTierUnavailableError(
            f"Backend POST {url} returned HTTP {status}",
            status_code=status,
            endpoint=url,
        )


async def delete_stored_day(config: SyncConfig, transport: Transport, key: CacheKey) -> None:
    url = raw_data_url(config, key)
    status, _body = await _call(transport, "DELETE", url)
    if status not in (200, 204, 404):
        raise PersistentTierUnavailableError(
            f"Backend DELETE {url} returned HTTP {status}",
            status_code=status,
            endpoint=url,
        )


async def ping(config: SyncConfig, transport: Transport) -> bool:
    status, _body = await _call(transport, "GET", _url(config, HEALTH_ROUTE))
    return status == 200


async def trigger_preload(config: SyncConfig, transport: Transport) -> dict[str, Any]:
    _status, body = await _call(transport, "POST", _url(config, PRELOAD_TRIGGER_ROUTE), payload={})
    return body if isinstance(body, dict) else {}


async def preload_status(config: SyncConfig, transport: Transport) -> dict[str, Any]:
    _status, body = await _call(transport, "GET", _url(config, PRELOAD_STATUS_ROUTE))
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return dict(body["data"])
    return body if isinstance(body, dict) else {}


async def fetch_project_config(config: SyncConfig, transport: Transport) -> dict[str, Any]:
    url = _url(config, PROJECT_CONFIG_ROUTE)
    status, body = await _call(transport, "GET", url)
    if status != 200 or not isinstance(body, dict):
        raise PersistentTierUnavailableError(
            f"Backend GET {url} returned HTTP {status}",
            status_code=status,
            endpoint=url,
        )
    value = body.get("data", body)
    return value if isinstance(value, dict) else {}
