"""Merge record model: the reversible result of a successful merge."""

from __future__ import annotations

from pydantic import BaseModel, Field

from kinmerge.models.entity import EntityType


class MergeRecord(BaseModel):
    """Everything Undo needs to reverse one executed merge.

    field_diff holds the canonical's pre-merge value for each field that the merge
    changed; applied_fields holds the value written by the merge for the same
    fields. reassigned_reference_counts is keyed by relation type.
    """

    merge_record_id: str
    proposal_id: str
    entity_type: EntityType
    source_id: str
    target_id: str
    performed_by: str
    performed_at: str
    field_diff: dict[str, str | None] = Field(default_factory=dict)
    applied_fields: dict[str, str | None] = Field(default_factory=dict)
    reassigned_reference_counts: dict[str, int] = Field(default_factory=dict)
    source_family_status: str | None = None
    undone: bool = False
    undone_by: str | None = None
    undone_at: str | None = None
    undo_expires_at: str | None = None
