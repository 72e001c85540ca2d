"""kinmerge FastAPI application factory.

This module provides the create_app() factory for bootstrapping the merge API.
"""

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy import Engine
from starlette.exceptions import HTTPException

from kinmerge.api.errors import (
    http_exception_handler,
    merge_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from kinmerge.api.middleware.request_id import RequestIdMiddleware
from kinmerge.api.routes.collision_detector import router as collision_detector_router
from kinmerge.api.routes.duplicate_candidates import router as duplicate_candidates_router
from kinmerge.api.routes.health import KINMERGE_VERSION
from kinmerge.api.routes.health import router as health_router
from kinmerge.api.routes.merge_proposals import router as merge_proposals_router
from kinmerge.api.routes.merge_records import router as merge_records_router
from kinmerge.audit.sink import AuditSink, get_audit_sink
from kinmerge.observability.tracing import (
    configure_tracing,
    instrument_fastapi,
    instrument_httpx,
    instrument_sqlalchemy,
)
from kinmerge.persistence.db import get_engine
from kinmerge.persistence.repositories.signals import SignalStore, SqlSignalStore
from kinmerge.services.merge.config import MergeSettings
from kinmerge.services.merge.detector import CollisionDetector
from kinmerge.services.merge.errors import MergeError
from kinmerge.services.merge.service import MergeProposalService


def create_app(
    engine: Engine | None = None,
    audit_sink: AuditSink | None = None,
    settings: MergeSettings | None = None,
    signal_store: SignalStore | None = None,
) -> FastAPI:
    """Create and configure the kinmerge FastAPI application.

    This factory:
    - Builds the merge service and collision detector and stores them on app.state
    - Registers RequestIdMiddleware
    - Registers the exception handlers that produce the error envelope
    - Mounts the health router and the /v1 routers

    Args:
        engine: Optional SQLAlchemy engine. If None, uses KINMERGE_DATABASE_URL.
        audit_sink: Optional AuditSink instance. If None, uses the configured default.
        settings: Optional MergeSettings. If None, reads KINMERGE_* env vars.
        signal_store: Optional SignalStore. If None, uses SqlSignalStore on the engine.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="kinmerge API",
        description="Identity deduplication and merge service for people and families",
        version=KINMERGE_VERSION,
    )

    engine = engine if engine is not None else get_engine()
    audit_sink = audit_sink if audit_sink is not None else get_audit_sink()
    settings = settings if settings is not None else MergeSettings.from_env()
    signal_store = signal_store if signal_store is not None else SqlSignalStore(engine)

    merge_service = MergeProposalService(engine, audit_sink=audit_sink, settings=settings)
    app.state.audit_sink = audit_sink
    app.state.merge_service = merge_service
    app.state.collision_detector = CollisionDetector(merge_service, signal_store)

    configure_tracing()
    instrument_httpx()
    instrument_sqlalchemy(engine)

    app.add_middleware(RequestIdMiddleware)

    instrument_fastapi(app)

    app.add_exception_handler(MergeError, merge_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(merge_proposals_router)
    app.include_router(merge_records_router)
    app.include_router(duplicate_candidates_router)
    app.include_router(collision_detector_router)

    return app
