"""Response models shared by the /v1 routers.

Converters build API models from domain models so the wire shape can evolve
independently of the persistence layer.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from kinmerge.models.duplicate_candidate import DuplicateCandidate
from kinmerge.models.entity import Entity
from kinmerge.models.merge_preview import MergePreview
from kinmerge.models.merge_proposal import MergeProposal
from kinmerge.models.merge_record import MergeRecord


class FieldConflictResponse(BaseModel):
    """A conflict between canonical and duplicate values."""

    field: str
    canonical_value: str | None = None
    duplicate_value: str | None = None
    resolution: str


class AnalysisSnapshotResponse(BaseModel):
    """Frozen analysis captured when a proposal was created."""

    affected_counts: dict[str, int]
    conflicts: list[FieldConflictResponse]
    captured_at: str
    total_affected: int


class MergeProposalResponse(BaseModel):
    """Merge proposal response model."""

    proposal_id: str
    entity_type: str
    source_id: str
    target_id: str
    confidence_score: float
    reason: str
    status: str
    proposal_type: str
    proposed_by: str
    analysis_snapshot: AnalysisSnapshotResponse | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    review_reason: str | None = None
    error_details: dict[str, Any] | None = None
    created_at: str
    updated_at: str | None = None
    expires_at: str | None = None
    executed_at: str | None = None


class PaginatedMergeProposalList(BaseModel):
    """Paginated list of merge proposals."""

    items: list[MergeProposalResponse]
    next_cursor: str | None = None


class MergeRecordResponse(BaseModel):
    """Merge record response model."""

    merge_record_id: str
    proposal_id: str
    entity_type: str
    source_id: str
    target_id: str
    performed_by: str
    performed_at: str
    field_diff: dict[str, str | None]
    applied_fields: dict[str, str | None]
    reassigned_reference_counts: dict[str, int]
    undone: bool
    undone_by: str | None = None
    undone_at: str | None = None
    undo_expires_at: str | None = None


class EntityResponse(BaseModel):
    """Person or family as seen by the merge engine."""

    entity_id: str
    entity_type: str
    family_id: str
    fields: dict[str, str | None]
    status: str | None = None
    merged_into_id: str | None = None


class MergePreviewResponse(BaseModel):
    """Prospective result of a merge; nothing is written."""

    canonical: EntityResponse
    duplicate: EntityResponse
    merged_fields: dict[str, str | None]
    changed_fields: dict[str, str | None]
    conflicts: list[FieldConflictResponse]
    affected_counts: dict[str, int]
    total_affected: int


class DuplicateCandidateResponse(BaseModel):
    """Duplicate candidate response model."""

    candidate_id: str
    entity_type: str
    family_id: str | None = None
    entity_a_id: str
    entity_b_id: str
    confidence_score: float
    match_reasons: list[str]
    status: str
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    created_at: str
    updated_at: str | None = None


def to_proposal_response(proposal: MergeProposal) -> MergeProposalResponse:
    """Convert a MergeProposal to its API response model."""
    snapshot = proposal.analysis_snapshot
    return MergeProposalResponse(
        proposal_id=proposal.proposal_id,
        entity_type=proposal.entity_type.value,
        source_id=proposal.source_id,
        target_id=proposal.target_id,
        confidence_score=proposal.confidence_score,
        reason=proposal.reason,
        status=proposal.status.value,
        proposal_type=proposal.proposal_type,
        proposed_by=proposal.proposed_by,
        analysis_snapshot=AnalysisSnapshotResponse(
            affected_counts=dict(snapshot.affected_counts),
            conflicts=[FieldConflictResponse(**c.model_dump()) for c in snapshot.conflicts],
            captured_at=snapshot.captured_at,
            total_affected=snapshot.total_affected,
        )
        if snapshot is not None
        else None,
        reviewed_by=proposal.reviewed_by,
        reviewed_at=proposal.reviewed_at,
        review_reason=proposal.review_reason,
        error_details=proposal.error_details,
        created_at=proposal.created_at,
        updated_at=proposal.updated_at,
        expires_at=proposal.expires_at,
        executed_at=proposal.executed_at,
    )


def to_record_response(record: MergeRecord) -> MergeRecordResponse:
    """Convert a MergeRecord to its API response model."""
    return MergeRecordResponse(
        merge_record_id=record.merge_record_id,
        proposal_id=record.proposal_id,
        entity_type=record.entity_type.value,
        source_id=record.source_id,
        target_id=record.target_id,
        performed_by=record.performed_by,
        performed_at=record.performed_at,
        field_diff=dict(record.field_diff),
        applied_fields=dict(record.applied_fields),
        reassigned_reference_counts=dict(record.reassigned_reference_counts),
        undone=record.undone,
        undone_by=record.undone_by,
        undone_at=record.undone_at,
        undo_expires_at=record.undo_expires_at,
    )


def _to_entity_response(entity: Entity) -> EntityResponse:
    return EntityResponse(
        entity_id=entity.entity_id,
        entity_type=entity.entity_type.value,
        family_id=entity.family_id,
        fields=dict(entity.fields),
        status=entity.status,
        merged_into_id=entity.merged_into_id,
    )


def to_preview_response(preview: MergePreview) -> MergePreviewResponse:
    """Convert a MergePreview to its API response model."""
    return MergePreviewResponse(
        canonical=_to_entity_response(preview.canonical),
        duplicate=_to_entity_response(preview.duplicate),
        merged_fields=dict(preview.merged_fields),
        changed_fields=preview.changed_fields(),
        conflicts=[FieldConflictResponse(**c.model_dump()) for c in preview.conflicts],
        affected_counts=dict(preview.affected_counts),
        total_affected=sum(preview.affected_counts.values()),
    )


def to_candidate_response(candidate: DuplicateCandidate) -> DuplicateCandidateResponse:
    """Convert a DuplicateCandidate to its API response model."""
    return DuplicateCandidateResponse(
        candidate_id=candidate.candidate_id,
        entity_type=candidate.entity_type.value,
        family_id=candidate.family_id,
        entity_a_id=candidate.entity_a_id,
        entity_b_id=candidate.entity_b_id,
        confidence_score=candidate.confidence_score,
        match_reasons=list(candidate.match_reasons),
        status=candidate.status.value,
        reviewed_by=candidate.reviewed_by,
        reviewed_at=candidate.reviewed_at,
        created_at=candidate.created_at,
        updated_at=candidate.updated_at,
    )
