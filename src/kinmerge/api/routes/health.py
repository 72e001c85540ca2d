"""Health check endpoint for the kinmerge API."""

from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter(tags=["Health"])

KINMERGE_VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    time: str
    version: str


@router.get("/health", response_model=HealthResponse)
def get_health() -> HealthResponse:
    """Health check endpoint.

    Returns JSON with status, time (ISO-8601), and version. The X-Request-Id
    header is added by the request ID middleware.
    """
    return HealthResponse(
        status="ok",
        time=datetime.now(UTC).isoformat(),
        version=KINMERGE_VERSION,
    )
