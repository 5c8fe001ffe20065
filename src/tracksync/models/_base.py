"""Base model and timestamp parsing shared by tracksync models.

Every wire-facing model inherits from :class:`TrackBaseModel`, which maps
camelCase payload keys onto snake_case fields and is frozen, so cached
values can be shared between tiers without defensive copies.
"""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationInfo
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def _from_epoch(value: float) -> datetime:
    if value >= _MS_THRESHOLD:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=UTC)


def parse_event_timestamp(value: Any, zone: tzinfo = UTC) -> datetime | None:
    """Convert a source timestamp to an aware datetime.

    Accepts ISO 8601 strings (``Z`` suffix included), ``YYYY-MM-DD HH:MM:SS``
    strings, and epoch seconds or milliseconds as numbers or numeric strings.
    Naive values are wall-clock times in *zone*. Unparsable values yield
    ``None`` so a single bad record is filtered out instead of failing its
    whole page.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=zone)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        try:
            return _from_epoch(float(value))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_event_timestamp(int(text), zone)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=zone)
    return None


def _coerce_event_timestamp(value: Any, info: ValidationInfo) -> datetime | None:
    zone = (info.context or {}).get("zone", UTC)
    return parse_event_timestamp(value, zone)


EventTimestamp = Annotated[datetime | None, BeforeValidator(_coerce_event_timestamp)]
"""Annotated type that coerces source timestamps to aware datetimes.

Naive values are read in the ``zone`` passed as validation context, UTC by
default.
"""


class TrackBaseModel(BaseModel):
    """Base for tracksync wire models.

    Handles camelCase to snake_case via ``alias_generator=to_camel`` and
    freezes instances.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
