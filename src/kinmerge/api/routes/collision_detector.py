"""Collision detector routes for the kinmerge API.

Provides:
- POST /v1/collision-detector:run (Run Collision Detector)
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from kinmerge.api.routes.dependencies import get_collision_detector
from kinmerge.services.merge.detector import CollisionDetector

router = APIRouter(prefix="/v1", tags=["CollisionDetector"])


class DetectorRunResponse(BaseModel):
    """Counters from one detector run."""

    entities_scanned: int
    candidates_found: int
    proposals_created: int
    proposals_skipped: int
    proposals_failed: int
    cancelled: bool


@router.post(
    "/collision-detector:run",
    response_model=DetectorRunResponse,
    operation_id="runCollisionDetector",
)
def run_collision_detector(
    detector: Annotated[CollisionDetector, Depends(get_collision_detector)],
) -> DetectorRunResponse:
    """Run one detection pass synchronously.

    Raises:
        ExternalDependencyError: 502 if the signal store fails.
    """
    summary = detector.run()
    return DetectorRunResponse(
        entities_scanned=summary.entities_scanned,
        candidates_found=summary.candidates_found,
        proposals_created=summary.proposals_created,
        proposals_skipped=summary.proposals_skipped,
        proposals_failed=summary.proposals_failed,
        cancelled=summary.cancelled,
    )
