from __future__ import annotations

from datetime import UTC, datetime

import pytest
from _fakes import FakeSearchTransport, make_config, make_records

from tracksync._api.search import build_search_request, parse_search_response
from tracksync._timing import no_wait
from tracksync.exceptions import FetchFailedError, IncompleteFetchError
from tracksync.models.cache import CacheKey
from tracksync.source import SourceClient

DAY = "2025-10-10"


def _client(transport: FakeSearchTransport, **config: object) -> SourceClient:
    return SourceClient(make_config(**config), transport, wait=no_wait)


@pytest.mark.asyncio
async def test_fetch_all_requests_every_page() -> None:
    transport = FakeSearchTransport(days={(7, DAY): make_records(DAY, 2500)})
    client = _client(transport, page_size=1000)

    result = await client.fetch_all(CacheKey.of(7, DAY))

    assert transport.pages_for(7, DAY) == [1, 2, 3]
    assert len(result.records) == 2500
    assert result.reported_total == 2500
    assert result.pages_requested == 3
    assert result.complete


@pytest.mark.asyncio
async def test_fetch_all_filters_records_outside_the_day() -> None:
    records = make_records("2025-10-11", 2, hour=1) + make_records(DAY, 998, hour=23)
    transport = FakeSearchTransport(days={(7, DAY): records})
    client = _client(transport, page_size=1000)

    result = await client.fetch_all(CacheKey.of(7, DAY))

    assert len(result.records) == 998
    assert result.removed_count == 2
    assert all(r.created_at is not None and r.created_at.date().isoformat() == DAY for r in result.records)


@pytest.mark.asyncio
async def test_naive_timestamps_are_read_in_configured_zone() -> None:
    day = "2025-10-08"
    records = [
        {"createdAt": "2025-10-08 23:30:00", "weUserId": "late"},
        {"createdAt": "2025-10-08 09:00:00", "weUserId": "early"},
        {"createdAt": "2025-10-07 23:59:00", "weUserId": "yesterday"},
    ]
    transport = FakeSearchTransport(days={(7, day): records})
    client = _client(transport, time_zone="Asia/Shanghai")

    result = await client.fetch_all(CacheKey.of(7, day))

    assert [r.visitor_id for r in result.records] == ["late", "early"]
    assert result.removed_count == 1
    assert result.records[0].created_at == datetime(2025, 10, 8, 15, 30, tzinfo=UTC)


def test_record_with_raw_key_is_kept_whole() -> None:
    item = {"createdAt": "2025-10-10T08:00:00Z", "weUserId": "u1", "raw": "opaque-string"}
    body = {"code": 0, "data": {"total": 1, "dataList": [item]}}

    page = parse_search_response(body, key=CacheKey.of(7, DAY), page=1)

    assert len(page.records) == 1
    assert page.records[0].created_at == datetime(2025, 10, 10, 8, 0, tzinfo=UTC)
    assert page.records[0].to_payload() == item


@pytest.mark.asyncio
async def test_single_page_day_makes_one_request() -> None:
    transport = FakeSearchTransport(days={(7, DAY): make_records(DAY, 12)})
    client = _client(transport)

    result = await client.fetch_all(CacheKey.of(7, DAY))

    assert transport.pages_for(7, DAY) == [1]
    assert len(result.records) == 12


@pytest.mark.asyncio
async def test_failed_middle_page_is_skipped() -> None:
    transport = FakeSearchTransport(
        days={(7, DAY): make_records(DAY, 2500)},
        fail_pages={(7, DAY, 2)},
    )
    client = _client(transport, page_size=1000)

    result = await client.fetch_all(CacheKey.of(7, DAY))

    assert result.failed_pages == (2,)
    assert transport.pages_for(7, DAY) == [1, 2, 3]
    assert len(result.records) == 1500
    assert not result.complete


@pytest.mark.asyncio
async def test_strict_fetch_raises_on_incomplete_result() -> None:
    transport = FakeSearchTransport(
        days={(7, DAY): make_records(DAY, 2500)},
        fail_pages={(7, DAY, 3)},
    )
    client = _client(transport, page_size=1000)

    with pytest.raises(IncompleteFetchError) as excinfo:
        await client.fetch_all(CacheKey.of(7, DAY), strict=True)

    assert excinfo.value.fetched == 2000
    assert excinfo.value.reported == 2500


@pytest.mark.asyncio
async def test_first_page_failure_raises() -> None:
    transport = FakeSearchTransport(fail_keys={(7, DAY)})
    client = _client(transport)

    with pytest.raises(FetchFailedError):
        await client.fetch_all(CacheKey.of(7, DAY))


@pytest.mark.asyncio
async def test_page_count_is_capped() -> None:
    transport = FakeSearchTransport(days={(7, DAY): make_records(DAY, 50)}, totals={(7, DAY): 500})
    client = _client(transport, page_size=10, max_pages=3)

    result = await client.fetch_all(CacheKey.of(7, DAY))

    assert transport.pages_for(7, DAY) == [1, 2, 3]
    assert len(result.records) == 30


@pytest.mark.asyncio
async def test_empty_page_stops_pagination() -> None:
    # The source over-reports; page 3 comes back empty.
    transport = FakeSearchTransport(days={(7, DAY): make_records(DAY, 20)}, totals={(7, DAY): 50})
    client = _client(transport, page_size=10)

    result = await client.fetch_all(CacheKey.of(7, DAY))

    assert transport.pages_for(7, DAY) == [1, 2, 3]
    assert len(result.records) == 20


@pytest.mark.asyncio
async def test_probe_latest_uses_small_page() -> None:
    transport = FakeSearchTransport(days={(7, DAY): make_records(DAY, 40)})
    client = _client(transport, probe_page_size=5)

    latest = await client.probe_latest(CacheKey.of(7, DAY))

    assert latest == datetime(2025, 10, 10, 10, 0, tzinfo=UTC)
    assert transport.calls == [(7, DAY, 1, 5)]


def test_search_request_shape() -> None:
    config = make_config(project_id="event1021")
    payload = build_search_request(config, CacheKey.of(7, DAY), page=2, page_size=1000)

    assert payload["projectId"] == "event1021"
    assert payload["selectedPointId"] == 7
    assert payload["date"] == DAY
    assert payload["page"] == 2
    assert payload["order"] == "descend"


def test_error_envelope_raises_fetch_failed() -> None:
    with pytest.raises(FetchFailedError):
        parse_search_response({"code": 401, "message": "token expired"}, key=CacheKey.of(7, DAY), page=1)
