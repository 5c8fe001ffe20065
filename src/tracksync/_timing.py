"""Clock and delay strategies.

Every component that reads the time or sleeps takes these as injectable
callables, so tests can run against a fake clock and a zero-delay wait.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, tzinfo

Clock = Callable[[], datetime]
Wait = Callable[[float], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(UTC)


async def asyncio_wait(seconds: float) -> None:
    """Production delay strategy: a plain cooperative sleep."""
    if seconds > 0:
        await asyncio.sleep(seconds)


async def no_wait(_seconds: float) -> None:
    """Zero-delay strategy for tests and one-shot tools."""
    return None


def local_today(clock: Clock, zone: tzinfo) -> date:
    """Calendar date of *clock* in *zone*."""
    return clock().astimezone(zone).date()
