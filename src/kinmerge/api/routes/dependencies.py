"""Shared request helpers for the /v1 routers."""

from fastapi import Request

from kinmerge.services.merge.detector import CollisionDetector
from kinmerge.services.merge.service import MergeProposalService


def get_merge_service(request: Request) -> MergeProposalService:
    """Return the MergeProposalService built by create_app()."""
    service: MergeProposalService = request.app.state.merge_service
    return service


def get_collision_detector(request: Request) -> CollisionDetector:
    """Return the CollisionDetector built by create_app()."""
    detector: CollisionDetector = request.app.state.collision_detector
    return detector


def get_request_id(request: Request) -> str | None:
    """Return the request ID set by RequestIdMiddleware, if any."""
    return getattr(request.state, "request_id", None)
