"""MergeProposalService - business logic for the merge proposal lifecycle.

State machine:

    pending -> accepted -> executed
    pending -> rejected
    accepted -> failed

Every public operation runs in its own transaction on the service's engine.
Status changes are compare-and-set, so of two concurrent transitions exactly one
wins and the other fails with InvalidStateError. Audit events are emitted after
commit and are best-effort: a failing sink is logged and never fatal.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from kinmerge.audit.sink import AuditSink, InMemoryAuditSink
from kinmerge.models.duplicate_candidate import CandidateStatus, DuplicateCandidate
from kinmerge.models.entity import Entity, EntityType
from kinmerge.models.merge_preview import MergePreview
from kinmerge.models.merge_proposal import MergeProposal, ProposalStatus
from kinmerge.models.merge_record import MergeRecord
from kinmerge.observability.tracing import traced
from kinmerge.persistence.repositories.candidates import CandidatesRepository
from kinmerge.persistence.repositories.entities import EntityRepository
from kinmerge.persistence.repositories.merge_records import MergeRecordsRepository
from kinmerge.persistence.repositories.proposals import (
    OpenProposalExistsError,
    ProposalsRepository,
)
from kinmerge.services.merge.clock import Clock, format_timestamp, parse_timestamp, system_clock
from kinmerge.services.merge.config import MergeSettings
from kinmerge.services.merge.errors import (
    ConflictError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
)
from kinmerge.services.merge.executor import MergeExecutor, failure_cause
from kinmerge.services.merge.policy import ConflictPolicy, load_conflict_policy
from kinmerge.services.merge.preview import (
    PreviewEngine,
    load_merge_pair,
    snapshot_from_preview,
    validate_overrides,
)
from kinmerge.services.merge.undo import MergeUndoer

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:proposal-expiry"
EXPIRED_REASON = "expired"


def build_audit_event(
    event_type: str,
    entity_id: str,
    actor_id: str,
    family_id: str | None = None,
    details: dict[str, Any] | None = None,
    risk_score: float | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Build an audit event dict in the shape every sink receives."""
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "occurred_at": format_timestamp(system_clock()),
        "event_type": event_type,
        "entity_id": entity_id,
        "actor_id": actor_id,
        "family_id": family_id,
        "details": details or {},
        "request_id": request_id or str(uuid.uuid4()),
    }
    if risk_score is not None:
        event["risk_score"] = risk_score
    return event


def emit_audit_event(audit_sink: AuditSink, event: dict[str, Any]) -> None:
    """Emit an event, logging instead of raising when the sink fails."""
    try:
        audit_sink.emit(event)
    except Exception as e:
        logger.warning("Failed to emit audit event %s: %s", event.get("event_type"), e)


class ProposeMergeInput(BaseModel):
    """Input model for proposing a merge."""

    source_id: str = Field(..., min_length=1, description="Entity expected to disappear")
    target_id: str = Field(..., min_length=1, description="Canonical entity that survives")
    entity_type: EntityType = EntityType.PERSON
    confidence_score: float = Field(..., ge=0, le=10)
    reason: str = Field(..., min_length=1)
    proposed_by: str = Field(..., min_length=1)
    proposal_type: str = Field(default="manual")
    request_id: str | None = Field(default=None, description="Request correlation ID")

    @field_validator("proposal_type")
    @classmethod
    def validate_proposal_type(cls, v: str) -> str:
        """Validate proposal_type is known."""
        if v not in ("manual", "automated"):
            raise ValueError("proposal_type must be 'manual' or 'automated'")
        return v


class MergeProposalService:
    """Service layer for proposals, previews, execution and undo.

    Owns transactions: each public method opens one with engine.begin(). A failed
    execute is rolled back first and the proposal is then moved to failed in a
    separate transaction.
    """

    def __init__(
        self,
        engine: Engine,
        audit_sink: AuditSink | None = None,
        settings: MergeSettings | None = None,
        policy: ConflictPolicy | None = None,
        clock: Clock = system_clock,
    ) -> None:
        """Initialize the service.

        Args:
            engine: SQLAlchemy engine for the kinmerge store.
            audit_sink: Sink for audit events. Defaults to an in-memory sink.
            settings: Merge settings. Defaults to MergeSettings().
            policy: Conflict policy. Defaults to the policy named in settings.
            clock: Source of the current time.
        """
        self._engine = engine
        self._audit_sink = audit_sink or InMemoryAuditSink()
        self._settings = settings or MergeSettings()
        self._policy = policy or load_conflict_policy(self._settings.conflict_policy_path)
        self._clock = clock

    @property
    def settings(self) -> MergeSettings:
        """Return the active settings."""
        return self._settings

    @property
    def audit_sink(self) -> AuditSink:
        """Return the audit sink events are emitted to."""
        return self._audit_sink

    def _emit_audit_event(
        self,
        event_type: str,
        entity_id: str,
        actor_id: str,
        family_id: str | None = None,
        details: dict[str, Any] | None = None,
        risk_score: float | None = None,
        request_id: str | None = None,
    ) -> None:
        """Emit an audit event for merge operations with request correlation."""
        emit_audit_event(
            self._audit_sink,
            build_audit_event(
                event_type,
                entity_id,
                actor_id,
                family_id=family_id,
                details=details,
                risk_score=risk_score,
                request_id=request_id,
            ),
        )

    def _get_proposal(self, conn: Connection, proposal_id: str) -> MergeProposal:
        proposal = ProposalsRepository(conn).get(proposal_id)
        if proposal is None:
            raise NotFoundError("merge_proposal", proposal_id)
        return proposal

    def _family_of(self, conn: Connection, entity_type: EntityType, entity_id: str) -> str | None:
        entity = EntityRepository(conn, entity_type).get(entity_id)
        return entity.family_id if entity is not None else None

    @staticmethod
    def _proposal_details(proposal: MergeProposal, **extra: Any) -> dict[str, Any]:
        details: dict[str, Any] = {
            "proposal_id": proposal.proposal_id,
            "entity_type": proposal.entity_type.value,
            "source_id": proposal.source_id,
            "target_id": proposal.target_id,
        }
        details.update({k: v for k, v in extra.items() if v is not None})
        return details

    def get_entity(self, entity_type: EntityType, entity_id: str) -> Entity:
        """Get an entity by ID.

        Raises:
            NotFoundError: If the entity does not exist.
        """
        with self._engine.begin() as conn:
            entity = EntityRepository(conn, entity_type).get(entity_id)
        if entity is None:
            raise NotFoundError(EntityType(entity_type).value, entity_id)
        return entity

    def propose(self, input_data: ProposeMergeInput) -> MergeProposal:
        """Create a pending merge proposal and capture its analysis snapshot.

        Args:
            input_data: Validated proposal input.

        Returns:
            The created proposal.

        Raises:
            NotFoundError: If either entity or its family does not exist.
            InvalidStateError: If source == target, an entity is already merged
                or a family is not active/provisional.
            ConflictError: If a pending or accepted proposal exists for the pair.
        """
        with traced(
            "merge.propose",
            {
                "kinmerge.entity_type": input_data.entity_type.value,
                "kinmerge.proposal_type": input_data.proposal_type,
            },
        ):
            now = self._clock()
            created_at = format_timestamp(now)

            with self._engine.begin() as conn:
                repo = EntityRepository(conn, input_data.entity_type)
                _, target = load_merge_pair(repo, input_data.source_id, input_data.target_id)

                proposals = ProposalsRepository(conn)
                existing = proposals.find_open_for_pair(
                    input_data.entity_type.value, input_data.source_id, input_data.target_id
                )
                if existing is not None:
                    raise ConflictError(
                        "An open merge proposal already exists for this pair",
                        {"proposal_id": existing.proposal_id, "status": existing.status.value},
                    )

                preview = PreviewEngine(conn, self._policy).preview(
                    input_data.source_id, input_data.target_id, input_data.entity_type
                )
                proposal = MergeProposal(
                    proposal_id=str(uuid.uuid4()),
                    entity_type=input_data.entity_type,
                    source_id=input_data.source_id,
                    target_id=input_data.target_id,
                    confidence_score=input_data.confidence_score,
                    reason=input_data.reason,
                    analysis_snapshot=snapshot_from_preview(preview, created_at),
                    status=ProposalStatus.PENDING,
                    proposed_by=input_data.proposed_by,
                    proposal_type=input_data.proposal_type,
                    created_at=created_at,
                    expires_at=format_timestamp(
                        now + timedelta(days=self._settings.proposal_ttl_days)
                    ),
                )

                try:
                    proposals.create(proposal)
                except OpenProposalExistsError as e:
                    raise ConflictError(
                        "An open merge proposal already exists for this pair",
                        {"source_id": e.source_id, "target_id": e.target_id},
                    ) from e

        self._emit_audit_event(
            event_type="merge.proposed",
            entity_id=proposal.target_id,
            actor_id=proposal.proposed_by,
            family_id=target.family_id,
            details=self._proposal_details(
                proposal,
                proposal_type=proposal.proposal_type,
                affected_records=proposal.analysis_snapshot.total_affected
                if proposal.analysis_snapshot
                else None,
            ),
            risk_score=proposal.confidence_score * 10,
            request_id=input_data.request_id,
        )
        return proposal

    def accept(
        self,
        proposal_id: str,
        reviewer_id: str,
        request_id: str | None = None,
    ) -> MergeProposal:
        """Accept a pending proposal.

        Raises:
            NotFoundError: If the proposal does not exist.
            InvalidStateError: If the proposal is not pending or has expired.
        """
        with traced("merge.accept", {"kinmerge.proposal_id": proposal_id}):
            now = self._clock()
            reviewed_at = format_timestamp(now)

            with self._engine.begin() as conn:
                proposals = ProposalsRepository(conn)
                proposal = self._get_proposal(conn, proposal_id)
                self._require_status(proposal, ProposalStatus.PENDING, ProposalStatus.ACCEPTED)

                if proposal.expires_at and now >= parse_timestamp(proposal.expires_at):
                    raise InvalidStateError(
                        f"Proposal {proposal_id} expired at {proposal.expires_at}",
                        {"proposal_id": proposal_id, "expires_at": proposal.expires_at},
                    )

                if proposal.analysis_snapshot is None:
                    preview = PreviewEngine(conn, self._policy).preview(
                        proposal.source_id, proposal.target_id, proposal.entity_type
                    )
                    proposals.set_snapshot(proposal_id, snapshot_from_preview(preview, reviewed_at))

                if not proposals.transition(
                    proposal_id,
                    ProposalStatus.PENDING,
                    ProposalStatus.ACCEPTED,
                    reviewed_at,
                    reviewed_by=reviewer_id,
                    reviewed_at=reviewed_at,
                ):
                    raise self._lost_race(proposal_id, ProposalStatus.ACCEPTED)

                updated = self._get_proposal(conn, proposal_id)
                family_id = self._family_of(conn, updated.entity_type, updated.target_id)

        self._emit_audit_event(
            event_type="merge.accepted",
            entity_id=updated.target_id,
            actor_id=reviewer_id,
            family_id=family_id,
            details=self._proposal_details(updated),
            risk_score=updated.confidence_score * 10,
            request_id=request_id,
        )
        return updated

    def reject(
        self,
        proposal_id: str,
        reviewer_id: str,
        reason: str | None = None,
        request_id: str | None = None,
    ) -> MergeProposal:
        """Reject a pending proposal and dismiss the matching duplicate candidate.

        Raises:
            NotFoundError: If the proposal does not exist.
            InvalidStateError: If the proposal is not pending.
        """
        with traced("merge.reject", {"kinmerge.proposal_id": proposal_id}):
            reviewed_at = format_timestamp(self._clock())

            with self._engine.begin() as conn:
                proposals = ProposalsRepository(conn)
                proposal = self._get_proposal(conn, proposal_id)
                self._require_status(proposal, ProposalStatus.PENDING, ProposalStatus.REJECTED)

                if not proposals.transition(
                    proposal_id,
                    ProposalStatus.PENDING,
                    ProposalStatus.REJECTED,
                    reviewed_at,
                    reviewed_by=reviewer_id,
                    reviewed_at=reviewed_at,
                    review_reason=reason,
                ):
                    raise self._lost_race(proposal_id, ProposalStatus.REJECTED)

                CandidatesRepository(conn).set_status_for_pair(
                    proposal.entity_type.value,
                    proposal.source_id,
                    proposal.target_id,
                    CandidateStatus.DISMISSED,
                    expected={CandidateStatus.PENDING},
                    now=reviewed_at,
                    reviewed_by=reviewer_id,
                )

                updated = self._get_proposal(conn, proposal_id)
                family_id = self._family_of(conn, updated.entity_type, updated.target_id)

        self._emit_audit_event(
            event_type="merge.rejected",
            entity_id=updated.target_id,
            actor_id=reviewer_id,
            family_id=family_id,
            details=self._proposal_details(updated, review_reason=reason),
            request_id=request_id,
        )
        return updated

    def execute(
        self,
        proposal_id: str,
        confirmed_by: str,
        overrides: dict[str, str | None] | None = None,
        request_id: str | None = None,
    ) -> MergeRecord:
        """Execute an accepted proposal atomically.

        On ExecutionError everything is rolled back, the proposal moves to failed
        with error_details, and the error is re-raised. There is no retry.

        Raises:
            NotFoundError: If the proposal does not exist.
            InvalidStateError: If the proposal is not accepted or overrides name
                unknown fields.
            ExecutionError: If the merge failed part way.
        """
        with traced(
            "merge.execute", {"kinmerge.proposal_id": proposal_id}
        ) as span:
            try:
                with self._engine.begin() as conn:
                    proposal = self._get_proposal(conn, proposal_id)
                    self._require_status(
                        proposal, ProposalStatus.ACCEPTED, ProposalStatus.EXECUTED
                    )
                    validate_overrides(proposal.entity_type, overrides)

                    executor = MergeExecutor(
                        conn,
                        policy=self._policy,
                        undo_window_days=self._settings.undo_window_days,
                        clock=self._clock,
                    )
                    record = executor.execute(proposal, confirmed_by, overrides)
                    family_id = self._family_of(conn, proposal.entity_type, proposal.target_id)
            except ExecutionError as e:
                span.set_attribute("kinmerge.failed_stage", e.stage)
                self._mark_failed(proposal_id, e, confirmed_by, request_id)
                raise
            except SQLAlchemyError as e:
                error = ExecutionError("commit", failure_cause(e), {"proposal_id": proposal_id})
                self._mark_failed(proposal_id, error, confirmed_by, request_id)
                raise error from e

        self._emit_audit_event(
            event_type="merge.executed",
            entity_id=record.target_id,
            actor_id=confirmed_by,
            family_id=family_id,
            details={
                "proposal_id": record.proposal_id,
                "merge_record_id": record.merge_record_id,
                "entity_type": record.entity_type.value,
                "source_id": record.source_id,
                "target_id": record.target_id,
                "changed_fields": sorted(record.field_diff),
                "reassigned_reference_counts": record.reassigned_reference_counts,
                "undo_expires_at": record.undo_expires_at,
            },
            risk_score=proposal.confidence_score * 10,
            request_id=request_id,
        )
        return record

    def _mark_failed(
        self,
        proposal_id: str,
        error: ExecutionError,
        actor_id: str,
        request_id: str | None,
    ) -> None:
        """Move an accepted proposal to failed after its execution rolled back."""
        error_details = {"stage": error.stage, "cause": error.cause, "message": error.message}
        now = format_timestamp(self._clock())

        try:
            with self._engine.begin() as conn:
                moved = ProposalsRepository(conn).transition(
                    proposal_id,
                    ProposalStatus.ACCEPTED,
                    ProposalStatus.FAILED,
                    now,
                    error_details=error_details,
                )
        except SQLAlchemyError as e:
            logger.error("Failed to mark proposal %s as failed: %s", proposal_id, e)
            return

        if not moved:
            logger.warning("Proposal %s was not accepted when marking it failed", proposal_id)
            return

        logger.warning("Merge proposal %s failed at stage %s", proposal_id, error.stage)
        self._emit_audit_event(
            event_type="merge.failed",
            entity_id=proposal_id,
            actor_id=actor_id,
            details={"proposal_id": proposal_id, **error_details},
            request_id=request_id,
        )

    def preview(
        self,
        source_id: str,
        target_id: str,
        entity_type: EntityType = EntityType.PERSON,
        overrides: dict[str, str | None] | None = None,
    ) -> MergePreview:
        """Preview merging source into target without writing anything."""
        with self._engine.begin() as conn:
            return PreviewEngine(conn, self._policy).preview(
                source_id, target_id, entity_type, overrides
            )

    def preview_proposal(
        self,
        proposal_id: str,
        overrides: dict[str, str | None] | None = None,
    ) -> MergePreview:
        """Preview the merge a proposal describes, against current data."""
        with self._engine.begin() as conn:
            proposal = self._get_proposal(conn, proposal_id)
            return PreviewEngine(conn, self._policy).preview(
                proposal.source_id, proposal.target_id, proposal.entity_type, overrides
            )

    def get(self, proposal_id: str) -> MergeProposal:
        """Get a proposal by ID.

        Raises:
            NotFoundError: If the proposal does not exist.
        """
        with self._engine.begin() as conn:
            return self._get_proposal(conn, proposal_id)

    def list(
        self,
        status: ProposalStatus | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[MergeProposal], str | None]:
        """List proposals with pagination.

        Returns:
            Tuple of (proposals, next_cursor).
        """
        with self._engine.begin() as conn:
            return ProposalsRepository(conn).list(
                status=status.value if status is not None else None,
                limit=limit,
                cursor=cursor,
            )

    def get_merge_record(self, merge_record_id: str) -> MergeRecord:
        """Get a merge record by ID.

        Raises:
            NotFoundError: If the record does not exist.
        """
        with self._engine.begin() as conn:
            record = MergeRecordsRepository(conn).get(merge_record_id)
        if record is None:
            raise NotFoundError("merge_record", merge_record_id)
        return record

    def undo(
        self,
        merge_record_id: str,
        undone_by: str,
        request_id: str | None = None,
    ) -> MergeRecord:
        """Reverse an executed merge.

        Raises:
            NotFoundError: If the record does not exist.
            AlreadyUndoneError: If the record was already undone.
            InvalidStateError: If the undo window has passed.
            ExecutionError: If the entities changed since the merge.
        """
        with traced("merge.undo", {"kinmerge.merge_record_id": merge_record_id}):
            with self._engine.begin() as conn:
                record = MergeUndoer(conn, clock=self._clock).undo(merge_record_id, undone_by)
                family_id = self._family_of(conn, record.entity_type, record.source_id)

        self._emit_audit_event(
            event_type="merge.undone",
            entity_id=record.source_id,
            actor_id=undone_by,
            family_id=family_id,
            details={
                "merge_record_id": record.merge_record_id,
                "proposal_id": record.proposal_id,
                "entity_type": record.entity_type.value,
                "source_id": record.source_id,
                "target_id": record.target_id,
                "restored_fields": sorted(record.field_diff),
                "restored_reference_counts": record.reassigned_reference_counts,
            },
            request_id=request_id,
        )
        return record

    def expire_stale(self) -> list[MergeProposal]:
        """Reject pending proposals past their expires_at with reason "expired".

        Returns:
            The proposals that were expired by this call.
        """
        now = format_timestamp(self._clock())
        expired: list[MergeProposal] = []

        with self._engine.begin() as conn:
            proposals = ProposalsRepository(conn)
            for proposal in proposals.list_expired_pending(now):
                if proposals.transition(
                    proposal.proposal_id,
                    ProposalStatus.PENDING,
                    ProposalStatus.REJECTED,
                    now,
                    reviewed_by=EXPIRY_ACTOR,
                    reviewed_at=now,
                    review_reason=EXPIRED_REASON,
                ):
                    expired.append(
                        proposal.model_copy(
                            update={
                                "status": ProposalStatus.REJECTED,
                                "reviewed_by": EXPIRY_ACTOR,
                                "reviewed_at": now,
                                "review_reason": EXPIRED_REASON,
                                "updated_at": now,
                            }
                        )
                    )

        for proposal in expired:
            self._emit_audit_event(
                event_type="merge.expired",
                entity_id=proposal.target_id,
                actor_id=EXPIRY_ACTOR,
                details=self._proposal_details(proposal, expires_at=proposal.expires_at),
            )
        if expired:
            logger.info("Expired %d stale merge proposals", len(expired))
        return expired

    def list_candidates(
        self,
        status: CandidateStatus | None = CandidateStatus.PENDING,
        min_score: float | None = None,
        limit: int = 50,
    ) -> list[DuplicateCandidate]:
        """List duplicate candidates, highest score first."""
        with self._engine.begin() as conn:
            return CandidatesRepository(conn).list(
                status=status.value if status is not None else None,
                min_score=min_score,
                limit=limit,
            )

    def dismiss_candidate(
        self,
        candidate_id: str,
        reviewer_id: str,
        request_id: str | None = None,
    ) -> DuplicateCandidate:
        """Mark a pending duplicate candidate as not a duplicate.

        Raises:
            NotFoundError: If the candidate does not exist.
            InvalidStateError: If the candidate is not pending.
        """
        now = format_timestamp(self._clock())

        with self._engine.begin() as conn:
            candidates = CandidatesRepository(conn)
            candidate = candidates.get(candidate_id)
            if candidate is None:
                raise NotFoundError("duplicate_candidate", candidate_id)
            if candidate.status != CandidateStatus.PENDING or not candidates.set_status(
                candidate_id,
                CandidateStatus.DISMISSED,
                expected={CandidateStatus.PENDING},
                now=now,
                reviewed_by=reviewer_id,
            ):
                raise InvalidStateError(
                    f"Candidate {candidate_id} is {candidate.status}; only pending "
                    "candidates can be dismissed",
                    {"candidate_id": candidate_id, "status": candidate.status.value},
                )
            updated = candidates.get(candidate_id)

        self._emit_audit_event(
            event_type="candidate.dismissed",
            entity_id=candidate.entity_a_id,
            actor_id=reviewer_id,
            family_id=candidate.family_id,
            details={
                "candidate_id": candidate_id,
                "entity_type": candidate.entity_type.value,
                "entity_a_id": candidate.entity_a_id,
                "entity_b_id": candidate.entity_b_id,
            },
            risk_score=candidate.confidence_score,
            request_id=request_id,
        )
        return updated or candidate

    @staticmethod
    def _require_status(
        proposal: MergeProposal,
        expected: ProposalStatus,
        target: ProposalStatus,
    ) -> None:
        if proposal.status != expected:
            raise InvalidStateError(
                f"Proposal {proposal.proposal_id} is {proposal.status}; cannot move to {target}",
                {
                    "proposal_id": proposal.proposal_id,
                    "status": proposal.status.value,
                    "target_status": target.value,
                },
            )

    @staticmethod
    def _lost_race(proposal_id: str, target: ProposalStatus) -> InvalidStateError:
        return InvalidStateError(
            f"Proposal {proposal_id} changed status concurrently; cannot move to {target}",
            {"proposal_id": proposal_id, "target_status": target.value},
        )
