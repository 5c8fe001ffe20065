from __future__ import annotations

import asyncio

import pytest
from _fakes import FakeClock, FakeSearchTransport, make_accessor, make_config, make_records

from tracksync._timing import no_wait
from tracksync.config import SyncConfig
from tracksync.models.cache import CacheKey
from tracksync.scheduling.preload import PreloadScheduler
from tracksync.tiers.accessor import TieredCacheAccessor
from tracksync.tracking import StaticConfigSource, TrackingPointRegistry

WINDOW = ("2025-10-08", "2025-10-09", "2025-10-10")
POINTS = (7, 9)


def _transport() -> FakeSearchTransport:
    return FakeSearchTransport(
        days={(point, day): make_records(day, 10) for point in POINTS for day in WINDOW},
    )


async def _scheduler(
    transport: FakeSearchTransport,
    clock: FakeClock,
    *,
    accessor: TieredCacheAccessor | None = None,
    config: SyncConfig | None = None,
) -> PreloadScheduler:
    config = config or make_config(preload_window_days=3)
    registry = TrackingPointRegistry(StaticConfigSource(POINTS))
    await registry.refresh()
    return PreloadScheduler(
        accessor or make_accessor(transport, clock=clock, config=config),
        registry,
        config=config,
        clock=clock,
        wait=no_wait,
    )


def test_window_is_oldest_first() -> None:
    scheduler = PreloadScheduler(
        make_accessor(FakeSearchTransport(), clock=FakeClock()),
        TrackingPointRegistry(StaticConfigSource()),
        config=make_config(),
        clock=FakeClock(),
    )

    assert scheduler.window(3) == list(WINDOW)


@pytest.mark.asyncio
async def test_first_pass_warms_the_whole_window() -> None:
    clock = FakeClock()
    transport = _transport()
    scheduler = await _scheduler(transport, clock)

    report = await scheduler.run_pass()

    assert report is not None
    assert report.deep is True
    assert report.planned == 6
    assert report.refreshed == 6
    assert report.failed == 0
    assert scheduler.last_run_date is not None
    assert scheduler.last_run_date.isoformat() == "2025-10-10"


@pytest.mark.asyncio
async def test_second_pass_same_day_is_shallow_and_skips_fresh_keys() -> None:
    clock = FakeClock()
    transport = _transport()
    scheduler = await _scheduler(transport, clock)
    await scheduler.run_pass()
    calls = len(transport.calls)

    clock.advance(minutes=5)
    report = await scheduler.run_pass()

    assert report is not None
    assert report.deep is False
    assert report.planned == 0
    assert len(transport.calls) == calls


@pytest.mark.asyncio
async def test_overlapping_pass_is_rejected() -> None:
    clock = FakeClock()
    transport = _transport()
    transport.gate = asyncio.Event()
    scheduler = await _scheduler(transport, clock)

    first = asyncio.create_task(scheduler.run_pass())
    await asyncio.sleep(0)
    assert scheduler.is_task_running

    assert await scheduler.run_pass() is None
    assert await scheduler.trigger_now() is None

    transport.gate.set()
    report = await first
    assert report is not None and report.refreshed == 6
    assert scheduler.is_task_running is False


@pytest.mark.asyncio
async def test_pass_state_is_per_instance() -> None:
    clock = FakeClock()
    transport = _transport()
    config = make_config(preload_window_days=3)
    accessor = make_accessor(transport, clock=clock, config=config)
    first = await _scheduler(transport, clock, accessor=accessor, config=config)
    second = await _scheduler(transport, clock, accessor=accessor, config=config)

    await first.run_pass()

    assert first.last_run_date is not None
    assert second.last_run_date is None
    report = await second.run_pass()
    assert report is not None
    assert report.deep is True
    assert report.planned == 0


@pytest.mark.asyncio
async def test_failed_keys_are_reported() -> None:
    clock = FakeClock()
    transport = _transport()
    transport.fail_keys.add((9, "2025-10-09"))
    scheduler = await _scheduler(transport, clock)

    report = await scheduler.run_pass()

    assert report is not None
    assert report.failed == 1
    assert report.failures == ["9/2025-10-09"]
    assert report.refreshed == 5


@pytest.mark.asyncio
async def test_opaque_record_fields_do_not_abort_the_pass() -> None:
    clock = FakeClock()
    transport = _transport()
    odd = transport.days[(7, "2025-10-09")]
    odd[0] = {**odd[0], "raw": "opaque-string"}
    accessor = make_accessor(transport, clock=clock, config=make_config(preload_window_days=3))
    scheduler = await _scheduler(transport, clock, accessor=accessor)

    report = await scheduler.run_pass()

    assert report is not None
    assert report.failed == 0
    assert report.refreshed == 6
    entry = await accessor.get(CacheKey.of(7, "2025-10-09"))
    assert entry is not None
    assert entry.records[0].to_payload()["raw"] == "opaque-string"
    assert await accessor.get(CacheKey.of(9, "2025-10-10")) is not None


@pytest.mark.asyncio
async def test_trigger_now_runs_a_deep_pass() -> None:
    clock = FakeClock()
    scheduler = await _scheduler(_transport(), clock)
    await scheduler.run_pass()

    report = await scheduler.trigger_now()

    assert report is not None
    assert report.deep is True


@pytest.mark.asyncio
async def test_status_reports_last_pass() -> None:
    clock = FakeClock()
    scheduler = await _scheduler(_transport(), clock)
    await scheduler.run_pass()

    status = scheduler.status()

    assert status["isTaskRunning"] is False
    assert status["pointIds"] == [7, 9]
    assert status["lastRunDate"] == "2025-10-10"
    assert status["lastReport"]["refreshed"] == 6
