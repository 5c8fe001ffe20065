from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from _fakes import (
    NOW,
    TODAY,
    FailingPersistentTier,
    FakeClock,
    FakeSearchTransport,
    make_accessor,
    make_entry,
    make_records,
)
from pydantic import ValidationError

from tracksync.models.cache import CacheKey
from tracksync.tiers.accessor import EnsureStatus
from tracksync.tiers.persistent import MemoryPersistentTier

HISTORICAL = "2025-10-01"


@pytest.mark.asyncio
async def test_concurrent_ensure_shares_one_fetch() -> None:
    transport = FakeSearchTransport(days={(7, TODAY): make_records(TODAY, 30)}, delay=0.01)
    accessor = make_accessor(transport, clock=FakeClock())
    key = CacheKey.of(7, TODAY)

    first, second = await asyncio.gather(accessor.ensure(key), accessor.ensure(key))

    assert accessor.source_fetches == 1
    assert transport.pages_for(7, TODAY) == [1]
    assert first.entry is second.entry
    assert first.status is EnsureStatus.REFRESHED
    assert accessor.inflight() == 0


@pytest.mark.asyncio
async def test_second_ensure_is_served_from_cache() -> None:
    transport = FakeSearchTransport(days={(7, TODAY): make_records(TODAY, 30)})
    persistent = MemoryPersistentTier()
    accessor = make_accessor(transport, clock=FakeClock(), persistent=persistent)
    key = CacheKey.of(7, TODAY)

    await accessor.ensure(key)
    again = await accessor.ensure(key)

    assert again.status is EnsureStatus.CACHED
    assert len(transport.calls) == 1
    assert await persistent.exists(key)
    assert key in accessor.local


@pytest.mark.asyncio
async def test_persistent_hit_fills_local_tier() -> None:
    persistent = MemoryPersistentTier()
    await persistent.put(make_entry(7, HISTORICAL, 20))
    transport = FakeSearchTransport()
    accessor = make_accessor(transport, clock=FakeClock(), persistent=persistent)
    key = CacheKey.of(7, HISTORICAL)

    result = await accessor.ensure(key)

    assert result.status is EnsureStatus.CACHED
    assert transport.calls == []
    assert key in accessor.local


@pytest.mark.asyncio
async def test_empty_today_is_not_cached() -> None:
    accessor = make_accessor(FakeSearchTransport(), clock=FakeClock())
    key = CacheKey.of(7, TODAY)

    result = await accessor.ensure(key)

    assert result.status is EnsureStatus.NOT_FOUND
    assert await accessor.get(key) is None


@pytest.mark.asyncio
async def test_empty_historical_day_is_cached() -> None:
    transport = FakeSearchTransport()
    accessor = make_accessor(transport, clock=FakeClock())
    key = CacheKey.of(7, HISTORICAL)

    result = await accessor.ensure(key)
    again = await accessor.ensure(key)

    assert result.status is EnsureStatus.EMPTY
    assert result.ok
    assert again.status is EnsureStatus.CACHED
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_failed_refresh_serves_previous_entry() -> None:
    persistent = MemoryPersistentTier()
    prior = make_entry(7, HISTORICAL, 20, fetched_at=NOW - timedelta(hours=30))
    await persistent.put(prior)
    transport = FakeSearchTransport(fail_keys={(7, HISTORICAL)})
    accessor = make_accessor(transport, clock=FakeClock(), persistent=persistent)

    result = await accessor.ensure(CacheKey.of(7, HISTORICAL))

    assert result.status is EnsureStatus.STALE
    assert result.entry == prior
    assert result.error is not None
    assert (await persistent.get(prior.key)) == prior


@pytest.mark.asyncio
async def test_failed_fetch_without_prior_entry() -> None:
    transport = FakeSearchTransport(fail_keys={(7, HISTORICAL)})
    accessor = make_accessor(transport, clock=FakeClock())

    result = await accessor.ensure(CacheKey.of(7, HISTORICAL))

    assert result.status is EnsureStatus.FAILED
    assert result.entry is None
    assert not result.ok


@pytest.mark.asyncio
async def test_invalid_fetch_result_is_a_failed_key(monkeypatch: pytest.MonkeyPatch) -> None:
    accessor = make_accessor(FakeSearchTransport(), clock=FakeClock())

    async def broken_fetch(key: CacheKey) -> object:
        return CacheKey.model_validate({"trackingPointId": -1, "date": "not-a-date"})

    monkeypatch.setattr(accessor.source, "fetch_all", broken_fetch)

    result = await accessor.ensure(CacheKey.of(7, HISTORICAL))

    assert result.status is EnsureStatus.FAILED
    assert isinstance(result.error, ValidationError)
    assert accessor.inflight() == 0


@pytest.mark.asyncio
async def test_persistent_write_failure_still_returns_data() -> None:
    transport = FakeSearchTransport(days={(7, HISTORICAL): make_records(HISTORICAL, 10)})
    accessor = make_accessor(transport, clock=FakeClock(), persistent=FailingPersistentTier())
    key = CacheKey.of(7, HISTORICAL)

    result = await accessor.ensure(key)

    assert result.status is EnsureStatus.REFRESHED
    assert result.persisted is False
    assert len(result.records) == 10
    assert key in accessor.local


@pytest.mark.asyncio
async def test_degraded_mode_bypasses_persistent_tier() -> None:
    transport = FakeSearchTransport(days={(7, HISTORICAL): make_records(HISTORICAL, 10)})
    persistent = MemoryPersistentTier()
    accessor = make_accessor(transport, clock=FakeClock(), persistent=persistent, degraded=True)

    result = await accessor.ensure(CacheKey.of(7, HISTORICAL))

    assert result.status is EnsureStatus.REFRESHED
    assert result.persisted is False
    assert len(persistent) == 0


@pytest.mark.asyncio
async def test_force_refetches_fresh_entry() -> None:
    transport = FakeSearchTransport(days={(7, HISTORICAL): make_records(HISTORICAL, 10)})
    accessor = make_accessor(transport, clock=FakeClock())
    key = CacheKey.of(7, HISTORICAL)

    await accessor.ensure(key)
    transport.days[(7, HISTORICAL)] = make_records(HISTORICAL, 12)
    result = await accessor.ensure(key, force=True)

    assert result.status is EnsureStatus.REFRESHED
    assert result.entry is not None and result.entry.actual_count == 12
    assert accessor.source_fetches == 2


@pytest.mark.asyncio
async def test_get_range_concatenates_days_in_order() -> None:
    transport = FakeSearchTransport(
        days={
            (7, "2025-10-08"): make_records("2025-10-08", 3, prefix="a"),
            (7, "2025-10-10"): make_records("2025-10-10", 2, prefix="c"),
        }
    )
    accessor = make_accessor(transport, clock=FakeClock())

    records = await accessor.get_range(7, "2025-10-08", "2025-10-10")

    assert [r.visitor_id for r in records] == ["a0", "a1", "a2", "c0", "c1"]


@pytest.mark.asyncio
async def test_get_range_skips_failed_days() -> None:
    transport = FakeSearchTransport(
        days={(7, "2025-10-08"): make_records("2025-10-08", 3)},
        fail_keys={(7, "2025-10-09")},
    )
    accessor = make_accessor(transport, clock=FakeClock())

    records = await accessor.get_range(7, "2025-10-08", "2025-10-09")

    assert len(records) == 3


@pytest.mark.asyncio
async def test_serve_refreshes_in_background() -> None:
    transport = FakeSearchTransport(days={(7, HISTORICAL): make_records(HISTORICAL, 10)})
    accessor = make_accessor(transport, clock=FakeClock())
    key = CacheKey.of(7, HISTORICAL)

    assert await accessor.serve(key) is None
    await accessor.aclose()

    served = await accessor.serve(key)
    assert served is not None and served.actual_count == 10


@pytest.mark.asyncio
async def test_clear_removes_key_from_both_tiers() -> None:
    persistent = MemoryPersistentTier()
    transport = FakeSearchTransport(days={(7, HISTORICAL): make_records(HISTORICAL, 10)})
    accessor = make_accessor(transport, clock=FakeClock(), persistent=persistent)
    key = CacheKey.of(7, HISTORICAL)
    await accessor.ensure(key)

    await accessor.clear(key)

    assert key not in accessor.local
    assert not await persistent.exists(key)


@pytest.mark.asyncio
async def test_is_fresh_reflects_policy() -> None:
    clock = FakeClock()
    transport = FakeSearchTransport(days={(7, HISTORICAL): make_records(HISTORICAL, 10)})
    accessor = make_accessor(transport, clock=clock)
    key = CacheKey.of(7, HISTORICAL)

    assert not await accessor.is_fresh(key)
    await accessor.ensure(key)
    assert await accessor.is_fresh(key)
    clock.advance(hours=25)
    assert not await accessor.is_fresh(key)
