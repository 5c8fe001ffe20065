"""Tracking-point configuration as read from the backend."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import Field

from tracksync.models._base import TrackBaseModel


def _coerce_point_ids(values: Iterable[Any]) -> tuple[int, ...]:
    """Drop empty values and duplicates, keeping first-seen order."""
    seen: dict[int, None] = {}
    for value in values:
        if value is None or value == "":
            continue
        try:
            point_id = int(value)
        except (TypeError, ValueError):
            continue
        seen.setdefault(point_id, None)
    return tuple(seen)


class TrackingPointSet(TrackBaseModel):
    """Read-only list of active tracking points for one upstream project."""

    project_id: str | None = None
    point_ids: tuple[int, ...] = ()
    metadata: dict[int, dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_project_config(cls, config: Mapping[str, Any], *, project_id: str | None = None) -> TrackingPointSet:
        """Build the set from a backend ``projectConfig`` document.

        The visit and click points come first, then behaviour points. Older
        documents only carry ``selectedBuryPointIds``.
        """
        visit = config.get("visitBuryPointId")
        click = config.get("clickBuryPointId")
        behaviour = config.get("behaviorBuryPointIds") or []
        if visit or click or behaviour:
            candidates: list[Any] = [visit, click, *behaviour]
        else:
            candidates = list(config.get("selectedBuryPointIds") or [])

        metadata: dict[int, dict[str, Any]] = {}
        for role, value in (("visit", visit), ("click", click)):
            ids = _coerce_point_ids([value])
            if ids:
                metadata.setdefault(ids[0], {})["role"] = role
        for point_id in _coerce_point_ids(behaviour):
            metadata.setdefault(point_id, {}).setdefault("role", "behavior")

        return cls(
            project_id=project_id or config.get("projectId"),
            point_ids=_coerce_point_ids(candidates),
            metadata=metadata,
        )

    def same_points(self, other: TrackingPointSet) -> bool:
        """Order-insensitive comparison of the point ids."""
        return sorted(self.point_ids) == sorted(other.point_ids)

    def __len__(self) -> int:
        return len(self.point_ids)
