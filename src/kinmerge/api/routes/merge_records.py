"""Merge record routes for the kinmerge API.

Provides:
- GET /v1/merge-records/{mergeRecordId} (Get Merge Record)
- POST /v1/merge-records/{mergeRecordId}:undo (Undo Merge)
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from kinmerge.api.routes.dependencies import get_merge_service, get_request_id
from kinmerge.api.routes.schemas import MergeRecordResponse, to_record_response
from kinmerge.services.merge.service import MergeProposalService

router = APIRouter(prefix="/v1", tags=["MergeRecords"])

MergeService = Annotated[MergeProposalService, Depends(get_merge_service)]


class UndoMergeRequest(BaseModel):
    """Request model for undoing a merge."""

    undone_by: str = Field(..., min_length=1)


@router.get(
    "/merge-records/{merge_record_id}",
    response_model=MergeRecordResponse,
    operation_id="getMergeRecord",
)
def get_merge_record(merge_record_id: str, service: MergeService) -> MergeRecordResponse:
    """Get a merge record by ID."""
    return to_record_response(service.get_merge_record(merge_record_id))


@router.post(
    "/merge-records/{merge_record_id}:undo",
    response_model=MergeRecordResponse,
    operation_id="undoMerge",
)
def undo_merge(
    merge_record_id: str,
    request_body: UndoMergeRequest,
    request: Request,
    service: MergeService,
) -> MergeRecordResponse:
    """Reverse an executed merge within its undo window.

    Raises:
        AlreadyUndoneError: 409 ALREADY_UNDONE if the record was already undone.
        InvalidStateError: 409 if the undo window has passed.
    """
    record = service.undo(
        merge_record_id, request_body.undone_by, request_id=get_request_id(request)
    )
    return to_record_response(record)
