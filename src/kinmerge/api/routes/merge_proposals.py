"""Merge proposal routes for the kinmerge API.

Provides:
- POST /v1/merge-proposals (Propose Merge)
- GET /v1/merge-proposals (List Merge Proposals)
- GET /v1/merge-proposals/{proposalId} (Get Merge Proposal)
- POST /v1/merge-proposals/{proposalId}:accept (Accept Merge Proposal)
- POST /v1/merge-proposals/{proposalId}:reject (Reject Merge Proposal)
- POST /v1/merge-proposals/{proposalId}:execute (Execute Merge Proposal)
- GET /v1/merge-proposals/{proposalId}/preview (Preview Merge Proposal)
- POST /v1/merge-proposals/{proposalId}:preview (Preview Merge Proposal With Overrides)
- GET /v1/merge-previews (Preview Ad-hoc Merge)
"""

from __future__ import annotations

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from kinmerge.api.routes.dependencies import get_merge_service, get_request_id
from kinmerge.api.routes.schemas import (
    MergePreviewResponse,
    MergeProposalResponse,
    MergeRecordResponse,
    PaginatedMergeProposalList,
    to_preview_response,
    to_proposal_response,
    to_record_response,
)
from kinmerge.models.entity import EntityType
from kinmerge.models.merge_proposal import ProposalStatus
from kinmerge.services.merge.service import MergeProposalService, ProposeMergeInput

router = APIRouter(prefix="/v1", tags=["MergeProposals"])

MergeService = Annotated[MergeProposalService, Depends(get_merge_service)]


class CreateMergeProposalRequest(BaseModel):
    """Request model for proposing a merge."""

    source_id: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    entity_type: EntityType = EntityType.PERSON
    confidence_score: float = Field(..., ge=0, le=10)
    reason: str = Field(..., min_length=1)
    proposed_by: str = Field(..., min_length=1)
    proposal_type: Literal["manual", "automated"] = "manual"


class AcceptMergeProposalRequest(BaseModel):
    """Request model for accepting a proposal."""

    reviewer_id: str = Field(..., min_length=1)


class RejectMergeProposalRequest(BaseModel):
    """Request model for rejecting a proposal."""

    reviewer_id: str = Field(..., min_length=1)
    reason: str | None = None


class PreviewMergeProposalRequest(BaseModel):
    """Request model for previewing a proposal with chosen field values."""

    overrides: dict[str, str | None] | None = None


class ExecuteMergeProposalRequest(BaseModel):
    """Request model for executing an accepted proposal.

    overrides pins merged values for named fields, including conflicting ones.
    """

    confirmed_by: str = Field(..., min_length=1)
    overrides: dict[str, str | None] | None = None


@router.post(
    "/merge-proposals",
    response_model=MergeProposalResponse,
    status_code=201,
    operation_id="createMergeProposal",
)
def create_merge_proposal(
    request_body: CreateMergeProposalRequest,
    request: Request,
    service: MergeService,
) -> MergeProposalResponse:
    """Propose merging source_id into target_id.

    Returns:
        The created proposal, status pending, with its analysis snapshot.
    """
    proposal = service.propose(
        ProposeMergeInput(
            source_id=request_body.source_id,
            target_id=request_body.target_id,
            entity_type=request_body.entity_type,
            confidence_score=request_body.confidence_score,
            reason=request_body.reason,
            proposed_by=request_body.proposed_by,
            proposal_type=request_body.proposal_type,
            request_id=get_request_id(request),
        )
    )
    return to_proposal_response(proposal)


@router.get(
    "/merge-proposals",
    response_model=PaginatedMergeProposalList,
    operation_id="listMergeProposals",
)
def list_merge_proposals(
    service: MergeService,
    status: ProposalStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
) -> PaginatedMergeProposalList:
    """List merge proposals in proposal_id order, paginated by cursor."""
    proposals, next_cursor = service.list(status=status, limit=limit, cursor=cursor)
    return PaginatedMergeProposalList(
        items=[to_proposal_response(p) for p in proposals],
        next_cursor=next_cursor,
    )


@router.get(
    "/merge-proposals/{proposal_id}",
    response_model=MergeProposalResponse,
    operation_id="getMergeProposal",
)
def get_merge_proposal(proposal_id: str, service: MergeService) -> MergeProposalResponse:
    """Get a merge proposal by ID.

    Raises:
        NotFoundError: 404 if the proposal does not exist.
    """
    return to_proposal_response(service.get(proposal_id))


@router.post(
    "/merge-proposals/{proposal_id}:accept",
    response_model=MergeProposalResponse,
    operation_id="acceptMergeProposal",
)
def accept_merge_proposal(
    proposal_id: str,
    request_body: AcceptMergeProposalRequest,
    request: Request,
    service: MergeService,
) -> MergeProposalResponse:
    """Accept a pending proposal.

    Raises:
        NotFoundError: 404 if the proposal does not exist.
        InvalidStateError: 409 if the proposal is not pending or has expired.
    """
    proposal = service.accept(
        proposal_id, request_body.reviewer_id, request_id=get_request_id(request)
    )
    return to_proposal_response(proposal)


@router.post(
    "/merge-proposals/{proposal_id}:reject",
    response_model=MergeProposalResponse,
    operation_id="rejectMergeProposal",
)
def reject_merge_proposal(
    proposal_id: str,
    request_body: RejectMergeProposalRequest,
    request: Request,
    service: MergeService,
) -> MergeProposalResponse:
    """Reject a pending proposal."""
    proposal = service.reject(
        proposal_id,
        request_body.reviewer_id,
        reason=request_body.reason,
        request_id=get_request_id(request),
    )
    return to_proposal_response(proposal)


@router.post(
    "/merge-proposals/{proposal_id}:execute",
    response_model=MergeRecordResponse,
    operation_id="executeMergeProposal",
)
def execute_merge_proposal(
    proposal_id: str,
    request_body: ExecuteMergeProposalRequest,
    request: Request,
    service: MergeService,
) -> MergeRecordResponse:
    """Execute an accepted proposal atomically.

    Raises:
        InvalidStateError: 409 if the proposal is not accepted.
        ExecutionError: 500 with details.stage; the proposal is now failed.
    """
    record = service.execute(
        proposal_id,
        request_body.confirmed_by,
        overrides=request_body.overrides,
        request_id=get_request_id(request),
    )
    return to_record_response(record)


@router.get(
    "/merge-proposals/{proposal_id}/preview",
    response_model=MergePreviewResponse,
    operation_id="previewMergeProposal",
)
def preview_merge_proposal(proposal_id: str, service: MergeService) -> MergePreviewResponse:
    """Preview a proposal's merge against current data."""
    return to_preview_response(service.preview_proposal(proposal_id))



@router.post(
    "/merge-proposals/{proposal_id}:preview",
    response_model=MergePreviewResponse,
    operation_id="previewMergeProposalWithOverrides",
)
def preview_merge_proposal_with_overrides(
    proposal_id: str,
    request_body: PreviewMergeProposalRequest,
    service: MergeService,
) -> MergePreviewResponse:
    """Preview a proposal's merge with the overrides an execute would send.

    Raises:
        NotFoundError: 404 if the proposal does not exist.
        InvalidStateError: 409 if an override names an unknown field.
    """
    return to_preview_response(
        service.preview_proposal(proposal_id, overrides=request_body.overrides)
    )

@router.get(
    "/merge-previews",
    response_model=MergePreviewResponse,
    operation_id="previewMerge",
)
def preview_merge(
    service: MergeService,
    source_id: str = Query(..., min_length=1),
    target_id: str = Query(..., min_length=1),
    entity_type: EntityType = EntityType.PERSON,
) -> MergePreviewResponse:
    """Preview merging source_id into target_id without a proposal."""
    return to_preview_response(service.preview(source_id, target_id, entity_type))
