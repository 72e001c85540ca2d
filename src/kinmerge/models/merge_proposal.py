"""Merge proposal model and its state machine definition.

A proposal names a source entity (expected to disappear) and a target entity
(the canonical record that survives). Its analysis snapshot is captured once and
never recomputed in place.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from kinmerge.models.entity import EntityType


class ProposalStatus(StrEnum):
    """Lifecycle status of a merge proposal."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {ProposalStatus.REJECTED, ProposalStatus.EXECUTED, ProposalStatus.FAILED}
)

ALLOWED_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset({ProposalStatus.ACCEPTED, ProposalStatus.REJECTED}),
    ProposalStatus.ACCEPTED: frozenset({ProposalStatus.EXECUTED, ProposalStatus.FAILED}),
    ProposalStatus.REJECTED: frozenset(),
    ProposalStatus.EXECUTED: frozenset(),
    ProposalStatus.FAILED: frozenset(),
}


def can_transition(current: ProposalStatus | str, target: ProposalStatus | str) -> bool:
    """Return True if current -> target is a legal proposal transition."""
    return ProposalStatus(target) in ALLOWED_TRANSITIONS[ProposalStatus(current)]


class FieldConflict(BaseModel):
    """Two different non-empty values for a conflict-sensitive field."""

    model_config = ConfigDict(frozen=True)

    field: str
    canonical_value: str | None
    duplicate_value: str | None
    resolution: str = Field(default="canonical", description="'canonical' or 'override'")


class AnalysisSnapshot(BaseModel):
    """Immutable copy of affected-record counts and conflicts for a proposal."""

    model_config = ConfigDict(frozen=True)

    affected_counts: dict[str, int]
    conflicts: tuple[FieldConflict, ...] = ()
    captured_at: str

    @property
    def total_affected(self) -> int:
        """Total number of dependent rows referencing the duplicate."""
        return sum(self.affected_counts.values())


class MergeProposal(BaseModel):
    """A request to merge source_id into target_id."""

    proposal_id: str
    entity_type: EntityType
    source_id: str
    target_id: str
    confidence_score: float = Field(..., ge=0, le=10)
    reason: str
    analysis_snapshot: AnalysisSnapshot | None = None
    status: ProposalStatus = ProposalStatus.PENDING
    proposed_by: str
    proposal_type: str = "manual"
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    review_reason: str | None = None
    error_details: dict[str, Any] | None = None
    created_at: str
    updated_at: str | None = None
    expires_at: str | None = None
    executed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        """True if no further transition is possible."""
        return self.status in TERMINAL_STATUSES
