"""Engine configuration for tracksync."""

from __future__ import annotations

import dataclasses
import os
from datetime import timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tracksync._constants import (
    BACKEND_BASE_URL,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES,
    PROBE_PAGE_SIZE,
    SOURCE_BASE_URL,
    SOURCE_SEARCH_PATH,
)
from tracksync.exceptions import TrackSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, cast: type[int] | type[float]) -> int | float:
    try:
        return cast(value)
    except ValueError as exc:
        raise TrackSyncConfigError(f"{env_key} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class StalenessThresholds:
    """Knobs of the staleness policy.

    The defaults are empirical values carried over from production use; none
    of them has a derivation beyond "worked well enough".

    Parameters
    ----------
    hard_expiry : timedelta
        Entries older than this are always refreshed.
    recent_window_days : int
        Dates this many days back (today included) count as "recent".
    recent_probe_after : timedelta
        Recent entries older than this are checked against the source.
    newer_data_grace : timedelta
        A probed record must be newer than the cached newest by more than
        this to force a refresh.
    today_latest_max_age : timedelta
        Today's entry is refreshed when its newest record is older than this.
    today_recheck_after : timedelta
        Minimum entry age before a quiet "today" entry is re-fetched.
    sparse_day_threshold : int
        Historical entries with fewer records are suspected incomplete.
    sparse_recheck_after : timedelta
        Minimum entry age before a sparse historical entry is re-fetched.
    """

    hard_expiry: timedelta = timedelta(hours=24)
    recent_window_days: int = 2
    recent_probe_after: timedelta = timedelta(hours=4)
    newer_data_grace: timedelta = timedelta(minutes=2)
    today_latest_max_age: timedelta = timedelta(hours=2)
    today_recheck_after: timedelta = timedelta(minutes=10)
    sparse_day_threshold: int = 5
    sparse_recheck_after: timedelta = timedelta(hours=1)


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Engine configuration.

    Parameters
    ----------
    source_base_url : str
        Base URL of the upstream analytics API.
    source_search_path : str
        Path of the paginated search endpoint.
    access_token : str or None
        Token sent in the ``access-token`` header to the source.
    project_id : str
        Upstream project identifier.
    backend_base_url : str
        Base URL of the persistent-tier backend (including any ``/api`` prefix).
    time_zone : str
        IANA time zone that defines calendar days for bucketing and filtering.
    page_size : int
        Records per source page.
    max_pages : int
        Upper bound on pages fetched for one unit.
    page_delay : float
        Seconds to wait before each page after the first.
    probe_page_size : int
        Page size of the cheap "newest record" probe.
    request_timeout : float
        Per-request timeout in seconds.
    preload_window_days : int
        Rolling window of the regular preload pass.
    preload_interval : float
        Seconds between scheduled preload passes.
    preload_task_delay : float
        Seconds between tasks of a regular pass.
    full_sync_window_days : int
        Rolling window of the nightly full sync.
    full_sync_interval : float
        Seconds between full syncs.
    full_sync_task_delay : float
        Seconds between tasks of a full sync.
    config_refresh_interval : float
        Seconds between reloads of the tracking-point configuration.
    diagnostic_sample_days : int
        Dates sampled from each end of the range for source comparison.
    diagnostic_sample_delay : float
        Seconds between sample comparisons.
    freshness_tolerance : timedelta
        Allowed gap between cached and source newest record in diagnostics.
    escalation_threshold : int
        HIGH issue count above which auto-fix escalates to a full refresh.
    backfill_interval : float
        Seconds between backfill ticks.
    backfill_batch_size : int
        Default number of dates per consumer per tick.
    database_path : str
        SQLite file used by the backend surface.
    api_trace_enabled : bool
        Log redacted request/response bodies at DEBUG.
    staleness : StalenessThresholds
        Staleness policy knobs.
    """

    source_base_url: str = SOURCE_BASE_URL
    source_search_path: str = SOURCE_SEARCH_PATH
    access_token: str | None = None
    project_id: str = "default"
    backend_base_url: str = BACKEND_BASE_URL
    time_zone: str = "UTC"
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = MAX_PAGES
    page_delay: float = 0.1
    probe_page_size: int = PROBE_PAGE_SIZE
    request_timeout: float = 30.0
    preload_window_days: int = 7
    preload_interval: float = 3600.0
    preload_task_delay: float = 1.0
    full_sync_window_days: int = 30
    full_sync_interval: float = 24 * 3600.0
    full_sync_task_delay: float = 2.0
    config_refresh_interval: float = 300.0
    diagnostic_sample_days: int = 2
    diagnostic_sample_delay: float = 0.2
    freshness_tolerance: timedelta = timedelta(seconds=60)
    escalation_threshold: int = 3
    backfill_interval: float = 3600.0
    backfill_batch_size: int = 10
    database_path: str = "tracksync.db"
    api_trace_enabled: bool = False
    staleness: StalenessThresholds = dataclasses.field(default_factory=StalenessThresholds)

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise TrackSyncConfigError("page_size must be positive")
        if self.max_pages <= 0:
            raise TrackSyncConfigError("max_pages must be positive")
        if self.preload_window_days <= 0 or self.full_sync_window_days <= 0:
            raise TrackSyncConfigError("preload windows must be at least one day")
        try:
            ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise TrackSyncConfigError(f"unknown time zone {self.time_zone!r}") from exc

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def search_url(self) -> str:
        return f"{self.source_base_url.rstrip('/')}{self.source_search_path}"

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from environment variables.

        Reads the ``TRACKSYNC_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        SyncConfig
            Populated configuration.
        """
        env = os.environ

        staleness_kwargs: dict[str, Any] = {}
        _ENV_STALENESS_HOURS = {
            "TRACKSYNC_HARD_EXPIRY_HOURS": "hard_expiry",
            "TRACKSYNC_RECENT_PROBE_AFTER_HOURS": "recent_probe_after",
            "TRACKSYNC_TODAY_LATEST_MAX_AGE_HOURS": "today_latest_max_age",
            "TRACKSYNC_SPARSE_RECHECK_AFTER_HOURS": "sparse_recheck_after",
        }
        for env_key, field_name in _ENV_STALENESS_HOURS.items():
            val = env.get(env_key)
            if val is not None:
                staleness_kwargs[field_name] = timedelta(hours=_env_number(env_key, val, float))
        sparse_env = env.get("TRACKSYNC_SPARSE_DAY_THRESHOLD")
        if sparse_env is not None:
            staleness_kwargs["sparse_day_threshold"] = _env_number("TRACKSYNC_SPARSE_DAY_THRESHOLD", sparse_env, int)

        staleness_overrides = overrides.pop("staleness", None)
        if isinstance(staleness_overrides, dict):
            staleness_kwargs.update(staleness_overrides)
        elif isinstance(staleness_overrides, StalenessThresholds):
            staleness_kwargs = dataclasses.asdict(staleness_overrides)

        _ENV_CONFIG_MAP = {
            "TRACKSYNC_SOURCE_BASE_URL": "source_base_url",
            "TRACKSYNC_SOURCE_SEARCH_PATH": "source_search_path",
            "TRACKSYNC_ACCESS_TOKEN": "access_token",
            "TRACKSYNC_PROJECT_ID": "project_id",
            "TRACKSYNC_BACKEND_BASE_URL": "backend_base_url",
            "TRACKSYNC_TIME_ZONE": "time_zone",
            "TRACKSYNC_DATABASE_PATH": "database_path",
        }
        config_kwargs: dict[str, Any] = {"staleness": StalenessThresholds(**staleness_kwargs)}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        # Numeric settings, handled separately
        _ENV_INT_MAP = {
            "TRACKSYNC_PAGE_SIZE": "page_size",
            "TRACKSYNC_MAX_PAGES": "max_pages",
            "TRACKSYNC_PRELOAD_WINDOW_DAYS": "preload_window_days",
            "TRACKSYNC_FULL_SYNC_WINDOW_DAYS": "full_sync_window_days",
        }
        _ENV_FLOAT_MAP = {
            "TRACKSYNC_REQUEST_TIMEOUT": "request_timeout",
            "TRACKSYNC_PRELOAD_INTERVAL": "preload_interval",
            "TRACKSYNC_PRELOAD_TASK_DELAY": "preload_task_delay",
            "TRACKSYNC_CONFIG_REFRESH_INTERVAL": "config_refresh_interval",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, int)
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, float)

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(
                env.get("TRACKSYNC_API_TRACE_ENABLED"),
                False,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
