"""Merge preview model returned by the preview/diff engine."""

from __future__ import annotations

from pydantic import BaseModel, Field

from kinmerge.models.entity import Entity
from kinmerge.models.merge_proposal import FieldConflict


class MergePreview(BaseModel):
    """Prospective result of merging duplicate into canonical."""

    canonical: Entity
    duplicate: Entity
    merged_fields: dict[str, str | None]
    conflicts: list[FieldConflict] = Field(default_factory=list)
    affected_counts: dict[str, int] = Field(default_factory=dict)

    def changed_fields(self) -> dict[str, str | None]:
        """Fields whose merged value differs from the canonical's current value."""
        return {
            name: value
            for name, value in self.merged_fields.items()
            if self.canonical.fields.get(name) != value
        }
