"""Duplicate candidate model produced by signal computation."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from kinmerge.models.entity import EntityType


class CandidateStatus(StrEnum):
    """Status of a candidate pair."""

    PENDING = "pending"
    MERGED = "merged"
    DISMISSED = "dismissed"


class DuplicateCandidate(BaseModel):
    """An unordered pair of entities that may be the same real-world entity."""

    candidate_id: str
    entity_type: EntityType
    family_id: str | None = None
    entity_a_id: str
    entity_b_id: str
    confidence_score: float = Field(..., ge=0, le=100, description="Risk score, 0-100")
    match_reasons: list[str] = Field(default_factory=list)
    status: CandidateStatus = CandidateStatus.PENDING
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    created_at: str
    updated_at: str | None = None
