"""Upstream search endpoint.

Endpoint:
  - POST {source_base_url}/tracker/buryPointTest/search (paginated)

The response carries ``data.total`` (the source's own count for the unit)
and ``data.dataList`` (one page of records, newest first).
"""

from __future__ import annotations

import logging
from datetime import UTC, tzinfo
from typing import Any

from pydantic import ValidationError

from tracksync._transport import Transport
from tracksync.config import SyncConfig
from tracksync.exceptions import FetchFailedError, TransportError
from tracksync.models._base import TrackBaseModel
from tracksync.models.cache import CacheKey, EventRecord

_logger = logging.getLogger(__name__)

_SUCCESS_CODES = frozenset({"0", "200"})


class SourcePage(TrackBaseModel):
    """One page as returned by the source, before date filtering."""

    page: int
    total: int
    records: tuple[EventRecord, ...] = ()


def build_search_request(
    config: SyncConfig,
    key: CacheKey,
    *,
    page: int,
    page_size: int,
) -> dict[str, Any]:
    return {
        "projectId": config.project_id,
        "selectedPointId": key.point_id,
        "calcInfo": {},
        "dataType": "list",
        "filterList": [],
        "page": page,
        "pageSize": page_size,
        "order": "descend",
        "date": key.date,
    }


def build_search_headers(config: SyncConfig) -> dict[str, str]:
    headers = {
        "accept-language": "en,zh-CN;q=0.9,zh;q=0.8",
        "content-type": "text/plain;charset=UTF-8",
    }
    if config.access_token:
        headers["access-token"] = config.access_token
    return headers


def parse_search_response(body: Any, *, key: CacheKey, page: int, zone: tzinfo = UTC) -> SourcePage:
    """Validate the response envelope and parse the page.

    Naive record timestamps are read in *zone*. Records that fail validation
    are logged and dropped; the rest of the page is kept.

    Raises
    ------
    FetchFailedError
        If the envelope reports an error or lacks the ``data`` object.
    """
    if not isinstance(body, dict):
        raise FetchFailedError(
            f"Malformed search response for {key} page {page}: not an object",
            point_id=key.point_id,
            date=key.date,
            page=page,
        )
    code = body.get("code")
    if code is not None and str(code) not in _SUCCESS_CODES:
        raise FetchFailedError(
            f"Search for {key} page {page} failed: code={code} message={body.get('message', '')}",
            point_id=key.point_id,
            date=key.date,
            page=page,
        )
    data = body.get("data")
    if not isinstance(data, dict):
        raise FetchFailedError(
            f"Malformed search response for {key} page {page}: missing data",
            point_id=key.point_id,
            date=key.date,
            page=page,
        )

    raw_list = data.get("dataList") or []
    if not isinstance(raw_list, list):
        raise FetchFailedError(
            f"Malformed search response for {key} page {page}: dataList is not a list",
            point_id=key.point_id,
            date=key.date,
            page=page,
        )
    try:
        total = int(data.get("total") or 0)
    except (TypeError, ValueError):
        total = 0

    records: list[EventRecord] = []
    for item in raw_list:
        if not isinstance(item, dict):
            continue
        try:
            records.append(EventRecord.from_payload(item, zone))
        except ValidationError as exc:
            _logger.warning("Dropping unparsable record in %s page %d: %s", key, page, exc)
    return SourcePage(page=page, total=total, records=tuple(records))


async def fetch_search_page(
    config: SyncConfig,
    transport: Transport,
    key: CacheKey,
    *,
    page: int,
    page_size: int,
) -> SourcePage:
    """Fetch and parse one page for *key*.

    Raises
    ------
    FetchFailedError
        On network failure, timeout, non-200 status or malformed body.
    """
    payload = build_search_request(config, key, page=page, page_size=page_size)
    try:
        status, body = await transport.request_json(
            "POST",
            config.search_url,
            payload=payload,
            headers=build_search_headers(config),
        )
    except TransportError as exc:
        raise FetchFailedError(
            f"Search for {key} page {page} failed: {exc}",
            point_id=key.point_id,
            date=key.date,
            page=page,
        ) from exc

    if status != 200:
        raise FetchFailedError(
            f"Search for {key} page {page} returned HTTP {status}",
            point_id=key.point_id,
            date=key.date,
            page=page,
        )

    result = parse_search_response(body, key=key, page=page, zone=config.zone)
    _logger.debug("Search %s page=%d total=%d records=%d", key, page, result.total, len(result.records))
    return result
