from __future__ import annotations

import asyncio

import pytest

from tracksync._periodic import PeriodicRunner


@pytest.mark.asyncio
async def test_runner_survives_failing_ticks() -> None:
    calls = 0

    async def tick() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first tick fails")

    runner = PeriodicRunner("test", 0.01, tick)
    await runner.start()
    await asyncio.sleep(0.05)
    await runner.stop()

    assert calls >= 2
    assert runner.running is False


@pytest.mark.asyncio
async def test_delayed_start_and_prompt_stop() -> None:
    calls = 0

    async def tick() -> None:
        nonlocal calls
        calls += 1

    runner = PeriodicRunner("test", 60.0, tick, run_immediately=False)
    await runner.start()
    assert runner.running
    await asyncio.wait_for(runner.stop(), timeout=1.0)

    assert calls == 0
