"""Consumers of historical backfill."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from tracksync.models._base import TrackBaseModel


class BackfillConsumer(TrackBaseModel):
    """A downstream consumer that wants *history_days* of data for one point.

    ``pending_days`` counts the days still missing beyond the covered window;
    covered days are the most recent ``history_days - pending_days`` days
    before today.
    """

    consumer_id: str
    project_id: str
    point_id: int
    history_days: int = Field(default=30, ge=0)
    pending_days: int = Field(default=0, ge=0)
    last_updated: datetime | None = None
    batch_size: int = Field(default=10, ge=1)
    enabled: bool = True

    @property
    def covered_days(self) -> int:
        return max(self.history_days - self.pending_days, 0)
