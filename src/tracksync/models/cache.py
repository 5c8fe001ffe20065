"""Cache keys, event records and cache entries."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, date, datetime, tzinfo
from typing import Any

from pydantic import (
    AliasChoices,
    Field,
    ModelWrapValidatorHandler,
    PrivateAttr,
    field_validator,
    model_validator,
)

from tracksync.models._base import EventTimestamp, TrackBaseModel


class CacheKey(TrackBaseModel):
    """One day of one tracking point."""

    point_id: int = Field(alias="trackingPointId", ge=0)
    date: str

    @field_validator("date", mode="before")
    @classmethod
    def _normalize_date(cls, value: Any) -> str:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date):
            return value.isoformat()
        text = str(value).strip()
        try:
            parsed = date.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"date must be YYYY-MM-DD, got {value!r}") from exc
        if parsed.isoformat() != text:
            raise ValueError(f"date must be YYYY-MM-DD, got {value!r}")
        return text

    @classmethod
    def of(cls, point_id: int, day: date | str) -> CacheKey:
        return cls(point_id=point_id, date=day)

    @property
    def day(self) -> date:
        return date.fromisoformat(self.date)

    def __str__(self) -> str:
        return f"{self.point_id}/{self.date}"


class EventRecord(TrackBaseModel):
    """A single tracking event.

    Opaque apart from its creation time and visitor identifier. The payload
    exactly as received is kept out of band and is what gets persisted, so
    payload keys never collide with model state.

    Validate with ``context={"zone": zone}`` to read naive ``createdAt``
    values in that zone.
    """

    created_at: EventTimestamp = None
    visitor_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("weUserId", "userId", "visitorId", "visitor_id"),
    )
    _payload: dict[str, Any] = PrivateAttr(default_factory=dict)

    @model_validator(mode="wrap")
    @classmethod
    def _keep_payload(cls, values: Any, handler: ModelWrapValidatorHandler[EventRecord]) -> EventRecord:
        record = handler(values)
        if isinstance(values, dict):
            record._payload = dict(values)
        return record

    @classmethod
    def from_payload(cls, payload: dict[str, Any], zone: tzinfo = UTC) -> EventRecord:
        return cls.model_validate(payload, context={"zone": zone})

    @field_validator("visitor_id", mode="before")
    @classmethod
    def _coerce_visitor(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    def local_date(self, zone: tzinfo) -> date | None:
        """Calendar date of ``created_at`` in *zone*."""
        if self.created_at is None:
            return None
        return self.created_at.astimezone(zone).date()

    def to_payload(self) -> dict[str, Any]:
        return dict(self._payload)


def filter_records_for_day(
    records: Iterable[EventRecord],
    day: date,
    zone: tzinfo,
) -> tuple[list[EventRecord], dict[str, int]]:
    """Keep only records created on *day*.

    Returns the kept records plus a histogram of removed records by their
    own date (``"invalid"`` for records without a usable timestamp).
    """
    kept: list[EventRecord] = []
    removed: dict[str, int] = {}
    for record in records:
        record_day = record.local_date(zone)
        if record_day == day:
            kept.append(record)
            continue
        bucket = record_day.isoformat() if record_day is not None else "invalid"
        removed[bucket] = removed.get(bucket, 0) + 1
    return kept, removed


class CacheEntry(TrackBaseModel):
    """Immutable snapshot of one cached day.

    A refresh produces a new entry that replaces the old one wholesale.
    """

    key: CacheKey
    records: tuple[EventRecord, ...] = ()
    fetched_at: datetime
    reported_total: int | None = None
    actual_count: int = 0

    @model_validator(mode="after")
    def _check_count(self) -> CacheEntry:
        if self.actual_count != len(self.records):
            raise ValueError(f"actual_count={self.actual_count} does not match {len(self.records)} records")
        return self

    @classmethod
    def build(
        cls,
        key: CacheKey,
        records: Iterable[EventRecord],
        *,
        fetched_at: datetime,
        reported_total: int | None = None,
    ) -> CacheEntry:
        items = tuple(records)
        return cls(
            key=key,
            records=items,
            fetched_at=fetched_at,
            reported_total=reported_total,
            actual_count=len(items),
        )

    @property
    def is_empty(self) -> bool:
        return self.actual_count == 0

    @property
    def latest_record_at(self) -> datetime | None:
        stamps = [r.created_at for r in self.records if r.created_at is not None]
        return max(stamps) if stamps else None

    def age(self, now: datetime) -> float:
        """Seconds since the entry was fetched."""
        return (now - self.fetched_at).total_seconds()

    def to_payload(self) -> list[dict[str, Any]]:
        return [record.to_payload() for record in self.records]
