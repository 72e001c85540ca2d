"""kinmerge domain models: pydantic models for merge entities and results."""

from kinmerge.models.duplicate_candidate import CandidateStatus, DuplicateCandidate
from kinmerge.models.entity import (
    MERGEABLE_FAMILY_STATUSES,
    Entity,
    EntityType,
    FamilyField,
    FamilyStatus,
    PersonField,
    is_empty,
    mergeable_fields,
)
from kinmerge.models.merge_preview import MergePreview
from kinmerge.models.merge_proposal import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AnalysisSnapshot,
    FieldConflict,
    MergeProposal,
    ProposalStatus,
    can_transition,
)
from kinmerge.models.merge_record import MergeRecord

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AnalysisSnapshot",
    "CandidateStatus",
    "DuplicateCandidate",
    "Entity",
    "EntityType",
    "FamilyField",
    "FamilyStatus",
    "FieldConflict",
    "MERGEABLE_FAMILY_STATUSES",
    "MergePreview",
    "MergeProposal",
    "MergeRecord",
    "PersonField",
    "ProposalStatus",
    "TERMINAL_STATUSES",
    "can_transition",
    "is_empty",
    "mergeable_fields",
]
