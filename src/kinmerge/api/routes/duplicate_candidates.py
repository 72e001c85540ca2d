"""Duplicate candidate routes for the kinmerge API.

Provides:
- GET /v1/duplicate-candidates (List Duplicate Candidates)
- POST /v1/duplicate-candidates/{candidateId}:dismiss (Dismiss Duplicate Candidate)
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from kinmerge.api.routes.dependencies import get_merge_service, get_request_id
from kinmerge.api.routes.schemas import DuplicateCandidateResponse, to_candidate_response
from kinmerge.models.duplicate_candidate import CandidateStatus
from kinmerge.services.merge.service import MergeProposalService

router = APIRouter(prefix="/v1", tags=["DuplicateCandidates"])

MergeService = Annotated[MergeProposalService, Depends(get_merge_service)]


class DuplicateCandidateList(BaseModel):
    """List of duplicate candidates, highest score first."""

    items: list[DuplicateCandidateResponse]


class DismissCandidateRequest(BaseModel):
    """Request model for dismissing a candidate."""

    reviewer_id: str = Field(..., min_length=1)


@router.get(
    "/duplicate-candidates",
    response_model=DuplicateCandidateList,
    operation_id="listDuplicateCandidates",
)
def list_duplicate_candidates(
    service: MergeService,
    status: CandidateStatus = CandidateStatus.PENDING,
    min_score: float | None = Query(default=None, ge=0, le=100),
    limit: int = Query(default=50, ge=1, le=500),
) -> DuplicateCandidateList:
    """List duplicate candidates by status."""
    candidates = service.list_candidates(status=status, min_score=min_score, limit=limit)
    return DuplicateCandidateList(items=[to_candidate_response(c) for c in candidates])


@router.post(
    "/duplicate-candidates/{candidate_id}:dismiss",
    response_model=DuplicateCandidateResponse,
    operation_id="dismissDuplicateCandidate",
)
def dismiss_duplicate_candidate(
    candidate_id: str,
    request_body: DismissCandidateRequest,
    request: Request,
    service: MergeService,
) -> DuplicateCandidateResponse:
    """Mark a pending candidate as not a duplicate."""
    candidate = service.dismiss_candidate(
        candidate_id, request_body.reviewer_id, request_id=get_request_id(request)
    )
    return to_candidate_response(candidate)
