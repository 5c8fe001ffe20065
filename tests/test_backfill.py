from __future__ import annotations

from datetime import date

import pytest
from _fakes import FakeClock, FakeSearchTransport, make_accessor, make_config, make_records

from tracksync._timing import no_wait
from tracksync.models.backfill import BackfillConsumer
from tracksync.models.cache import CacheKey, EventRecord
from tracksync.scheduling.backfill import BackfillCoordinator, MemoryConsumerRegistry

HISTORY = ("2025-10-07", "2025-10-06", "2025-10-05", "2025-10-04")


class _Recorder:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.delivered: list[tuple[str, str, int]] = []
        self._fail_for = fail_for or set()

    async def __call__(self, consumer: BackfillConsumer, key: CacheKey, records: tuple[EventRecord, ...]) -> None:
        if consumer.consumer_id in self._fail_for:
            raise RuntimeError("consumer offline")
        self.delivered.append((consumer.consumer_id, key.date, len(records)))


def _consumer(consumer_id: str, **overrides: object) -> BackfillConsumer:
    values: dict[str, object] = {
        "consumer_id": consumer_id,
        "project_id": "event1021",
        "point_id": 7,
        "history_days": 5,
        "pending_days": 3,
        "batch_size": 2,
    }
    values.update(overrides)
    return BackfillConsumer.model_validate(values)


def _coordinator(
    transport: FakeSearchTransport,
    registry: MemoryConsumerRegistry,
    deliver: _Recorder,
) -> BackfillCoordinator:
    clock = FakeClock()
    return BackfillCoordinator(
        make_accessor(transport, clock=clock),
        registry,
        deliver=deliver,
        config=make_config(),
        clock=clock,
        wait=no_wait,
    )


def _transport() -> FakeSearchTransport:
    return FakeSearchTransport(days={(7, day): make_records(day, 4) for day in HISTORY})


def test_pending_dates_continue_past_covered_window() -> None:
    consumer = _consumer("a", history_days=5, pending_days=3, batch_size=2)

    dates = BackfillCoordinator.pending_dates(consumer, date(2025, 10, 10))

    # Two days covered (10-09, 10-08), so the next batch starts at 10-07.
    assert dates == ["2025-10-07", "2025-10-06"]


def test_pending_dates_never_exceed_pending_days() -> None:
    consumer = _consumer("a", history_days=5, pending_days=1, batch_size=10)

    assert BackfillCoordinator.pending_dates(consumer, date(2025, 10, 10)) == ["2025-10-05"]


@pytest.mark.asyncio
async def test_shared_keys_are_fetched_once() -> None:
    transport = _transport()
    registry = MemoryConsumerRegistry([_consumer("a"), _consumer("b")])
    deliver = _Recorder()
    coordinator = _coordinator(transport, registry, deliver)

    report = await coordinator.tick()

    assert report is not None
    assert report.keys_fetched == 2
    assert report.delivered == 4
    assert sorted({(d, day) for d, day, _n in deliver.delivered}) == [
        ("a", "2025-10-06"),
        ("a", "2025-10-07"),
        ("b", "2025-10-06"),
        ("b", "2025-10-07"),
    ]
    assert [call[1] for call in transport.calls] == ["2025-10-07", "2025-10-06"]
    consumer = registry.get("a")
    assert consumer is not None
    assert consumer.pending_days == 1
    assert consumer.last_updated is not None


@pytest.mark.asyncio
async def test_delivery_failure_blocks_only_that_consumer() -> None:
    registry = MemoryConsumerRegistry([_consumer("a"), _consumer("b")])
    deliver = _Recorder(fail_for={"b"})
    coordinator = _coordinator(_transport(), registry, deliver)

    report = await coordinator.tick()

    assert report is not None
    assert report.blocked_consumers == ["b"]
    assert registry.get("a").pending_days == 1  # type: ignore[union-attr]
    assert registry.get("b").pending_days == 3  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_fetch_failure_stops_waiting_consumers() -> None:
    transport = _transport()
    transport.fail_keys.add((7, "2025-10-07"))
    registry = MemoryConsumerRegistry([_consumer("a")])
    deliver = _Recorder()
    coordinator = _coordinator(transport, registry, deliver)

    report = await coordinator.tick()

    assert report is not None
    assert report.failed_keys == ["7/2025-10-07"]
    assert report.blocked_consumers == ["a"]
    assert deliver.delivered == []
    assert registry.get("a").pending_days == 3  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_disabled_and_finished_consumers_are_ignored() -> None:
    transport = _transport()
    registry = MemoryConsumerRegistry([_consumer("off", enabled=False), _consumer("done", pending_days=0)])
    coordinator = _coordinator(transport, registry, _Recorder())

    report = await coordinator.tick()

    assert report is not None
    assert report.consumers == 0
    assert transport.calls == []


@pytest.mark.asyncio
async def test_repeated_ticks_finish_the_backlog() -> None:
    registry = MemoryConsumerRegistry([_consumer("a")])
    deliver = _Recorder()
    coordinator = _coordinator(_transport(), registry, deliver)

    await coordinator.tick()
    await coordinator.tick()
    await coordinator.tick()

    assert registry.get("a").pending_days == 0  # type: ignore[union-attr]
    assert [day for _c, day, _n in deliver.delivered] == ["2025-10-07", "2025-10-06", "2025-10-05"]
    assert coordinator.status()["lastReport"]["consumers"] == 0
