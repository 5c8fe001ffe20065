"""Custom exception hierarchy for tracksync."""

from __future__ import annotations


class TrackSyncError(Exception):
    """Base exception for all tracksync errors."""


class TrackSyncConfigError(TrackSyncError):
    """Invalid or missing configuration."""


class TransportError(TrackSyncError):
    """HTTP-level failure (network, timeout, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FetchFailedError(TrackSyncError):
    """The upstream source could not deliver a page.

    Covers network errors, request timeouts, non-success status codes and
    malformed response bodies.
    """

    def __init__(
        self,
        message: str,
        *,
        point_id: int | None = None,
        date: str = "",
        page: int | None = None,
    ) -> None:
        self.point_id = point_id
        self.date = date
        self.page = page
        super().__init__(message)


class IncompleteFetchError(FetchFailedError):
    """Fewer records were fetched than the source reported.

    Reported totals are occasionally wrong, so this is only raised when the
    caller asks for a strict fetch; otherwise it is logged as a warning.
    """

    def __init__(
        self,
        message: str,
        *,
        point_id: int | None = None,
        date: str = "",
        fetched: int = 0,
        reported: int = 0,
    ) -> None:
        self.fetched = fetched
        self.reported = reported
        super().__init__(message, point_id=point_id, date=date)


class PersistentTierUnavailableError(TrackSyncError):
    """The durable backend store is unreachable or failing."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class StaleConfigError(TrackSyncError):
    """The local tracking-point mirror has drifted from the authoritative config."""

    def __init__(
        self,
        message: str,
        *,
        local_ids: tuple[int, ...] = (),
        authoritative_ids: tuple[int, ...] = (),
    ) -> None:
        self.local_ids = local_ids
        self.authoritative_ids = authoritative_ids
        super().__init__(message)
