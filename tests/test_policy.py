from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from _fakes import NOW, make_entry

from tracksync.config import StalenessThresholds
from tracksync.exceptions import FetchFailedError
from tracksync.models.cache import CacheKey
from tracksync.tiers.policy import RefreshReason, StalenessPolicy, Verdict

YESTERDAY = "2025-10-09"
LAST_WEEK = "2025-10-03"


def _policy(**thresholds: object) -> StalenessPolicy:
    return StalenessPolicy(StalenessThresholds(**thresholds), zone=UTC)  # type: ignore[arg-type]


async def _no_newer(_key: CacheKey) -> datetime | None:
    return None


def test_missing_entry_is_refreshed() -> None:
    assert _policy().verdict(None, NOW) is Verdict.REFRESH


def test_hard_expiry_wins() -> None:
    entry = make_entry(7, LAST_WEEK, 100, fetched_at=NOW - timedelta(hours=25))
    policy = _policy()

    assert policy.refresh_reason(entry, NOW) is RefreshReason.HARD_EXPIRY
    assert policy.verdict(entry, NOW) is Verdict.REFRESH


@pytest.mark.asyncio
async def test_yesterday_refresh_depends_on_record_count() -> None:
    policy = _policy()
    fetched_at = NOW - timedelta(hours=5)
    full = make_entry(7, YESTERDAY, 5, fetched_at=fetched_at)
    sparse = make_entry(7, YESTERDAY, 4, fetched_at=fetched_at)

    assert await policy.should_refresh(full, NOW, probe=_no_newer) is False
    assert await policy.should_refresh(sparse, NOW, probe=_no_newer) is True
    assert policy.refresh_reason(sparse, NOW) is RefreshReason.SPARSE_DAY


@pytest.mark.asyncio
async def test_probe_refreshes_when_source_has_newer_records() -> None:
    policy = _policy()
    entry = make_entry(7, YESTERDAY, 20, fetched_at=NOW - timedelta(hours=5))

    async def newer(_key: CacheKey) -> datetime | None:
        return datetime(2025, 10, 9, 10, 5, tzinfo=UTC)

    async def within_grace(_key: CacheKey) -> datetime | None:
        return datetime(2025, 10, 9, 10, 1, tzinfo=UTC)

    assert policy.verdict(entry, NOW) is Verdict.PROBE
    assert await policy.should_refresh(entry, NOW, probe=newer) is True
    assert await policy.should_refresh(entry, NOW, probe=within_grace) is False


@pytest.mark.asyncio
async def test_probe_failure_keeps_entry() -> None:
    policy = _policy()
    entry = make_entry(7, YESTERDAY, 20, fetched_at=NOW - timedelta(hours=5))

    async def broken(key: CacheKey) -> datetime | None:
        raise FetchFailedError("boom", point_id=key.point_id, date=key.date)

    assert await policy.should_refresh(entry, NOW, probe=broken) is False


def test_historical_day_is_not_probed() -> None:
    entry = make_entry(7, LAST_WEEK, 20, fetched_at=NOW - timedelta(hours=5))

    assert _policy().verdict(entry, NOW) is Verdict.FRESH


def test_quiet_today_is_refreshed_after_recheck_delay() -> None:
    policy = _policy()
    # Newest record at 08:00, four hours before NOW.
    just_fetched = make_entry(7, "2025-10-10", 20, fetched_at=NOW, hour=8)
    fetched_earlier = make_entry(7, "2025-10-10", 20, fetched_at=NOW - timedelta(minutes=30), hour=8)

    assert policy.refresh_reason(just_fetched, NOW) is None
    assert policy.refresh_reason(fetched_earlier, NOW) is RefreshReason.TODAY_STALE


def test_busy_today_is_fresh() -> None:
    entry = make_entry(7, "2025-10-10", 20, fetched_at=NOW - timedelta(hours=1), hour=11)

    assert _policy().verdict(entry, NOW) is Verdict.FRESH


def test_sparse_rule_waits_for_recheck_delay() -> None:
    entry = make_entry(7, LAST_WEEK, 0, fetched_at=NOW - timedelta(minutes=30))

    assert _policy().verdict(entry, NOW) is Verdict.FRESH
    assert _policy().verdict(entry, NOW + timedelta(hours=1)) is Verdict.REFRESH


def test_verdict_is_monotonic_in_age() -> None:
    policy = _policy()
    entry = make_entry(7, LAST_WEEK, 50, fetched_at=NOW)
    seen_refresh = False
    for hours in range(0, 48):
        verdict = policy.verdict(entry, NOW + timedelta(hours=hours))
        if seen_refresh:
            assert verdict is Verdict.REFRESH
        seen_refresh = verdict is Verdict.REFRESH


def test_thresholds_are_configurable() -> None:
    entry = make_entry(7, LAST_WEEK, 3, fetched_at=NOW - timedelta(hours=2))

    assert _policy(sparse_day_threshold=2).verdict(entry, NOW) is Verdict.FRESH
    assert _policy(hard_expiry=timedelta(hours=1)).refresh_reason(entry, NOW) is RefreshReason.HARD_EXPIRY
