"""Atomic merge executor.

Runs every step of a merge on one connection inside the caller's transaction:

    validate -> reassign_references -> verify_counts -> apply_fields -> tombstone -> record

reassign_references repoints the duplicate's dependent rows to the canonical.
A story or media link the canonical already has is deleted instead, and the
deleted row is logged whole so undo can put it back. Both kinds count towards
the reference totals checked against the analysis snapshot.

Any exception is raised as ExecutionError carrying the failing stage (except the
status check, which raises InvalidStateError), and the caller rolls back. The
executor never commits.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import DBAPIError

from kinmerge.models.duplicate_candidate import CandidateStatus
from kinmerge.models.entity import EntityType
from kinmerge.models.merge_proposal import MergeProposal, ProposalStatus
from kinmerge.models.merge_record import MergeRecord
from kinmerge.persistence.repositories.candidates import CandidatesRepository
from kinmerge.persistence.repositories.entities import EntityRepository, relations
from kinmerge.persistence.repositories.merge_records import MergeRecordsRepository
from kinmerge.persistence.repositories.proposals import ProposalsRepository
from kinmerge.services.merge.clock import Clock, format_timestamp, system_clock
from kinmerge.services.merge.errors import ExecutionError, InvalidStateError, MergeError
from kinmerge.services.merge.policy import DEFAULT_CONFLICT_POLICY, ConflictPolicy
from kinmerge.services.merge.preview import compute_merged_fields, load_merge_pair

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_VALIDATE = "validate"
STAGE_REASSIGN = "reassign_references"
STAGE_VERIFY_COUNTS = "verify_counts"
STAGE_APPLY_FIELDS = "apply_fields"
STAGE_TOMBSTONE = "tombstone"
STAGE_RECORD = "record"


def failure_cause(e: Exception) -> str:
    """Describe a failure without SQL text or bound parameters.

    Driver errors keep the first line of the driver message; anything else is
    reduced to its class name.
    """
    if isinstance(e, DBAPIError) and e.orig is not None:
        lines = str(e.orig).strip().splitlines()
        if lines:
            return f"{type(e).__name__}: {lines[0]}"
    return type(e).__name__


@contextmanager
def merge_stage(stage: str, **ids: str) -> Iterator[None]:
    """Wrap unexpected failures in ExecutionError tagged with the stage name.

    MergeError subclasses pass through unchanged.
    """
    try:
        yield
    except MergeError:
        raise
    except Exception as e:
        logger.warning("Merge stage %s failed: %s", stage, type(e).__name__)
        raise ExecutionError(stage, failure_cause(e), dict(ids)) from e


def _call_in_stage(stage: str, fn: Callable[[], T], **ids: str) -> T:
    with merge_stage(stage, **ids):
        return fn()


class MergeExecutor:
    """Executes accepted merge proposals on one transactional connection."""

    def __init__(
        self,
        conn: Connection,
        policy: ConflictPolicy = DEFAULT_CONFLICT_POLICY,
        undo_window_days: int = 7,
        clock: Clock = system_clock,
    ) -> None:
        """Initialize the executor.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
            policy: Conflict-sensitive field policy used to compute merged fields.
            undo_window_days: Days the resulting merge stays undoable.
            clock: Source of the current time.
        """
        self._conn = conn
        self._policy = policy
        self._undo_window = timedelta(days=undo_window_days)
        self._clock = clock
        self._proposals = ProposalsRepository(conn)
        self._records = MergeRecordsRepository(conn)
        self._candidates = CandidatesRepository(conn)

    def execute(
        self,
        proposal: MergeProposal,
        performed_by: str,
        overrides: dict[str, str | None] | None = None,
    ) -> MergeRecord:
        """Merge proposal.source_id into proposal.target_id.

        Args:
            proposal: Proposal to execute (re-read and re-checked here).
            performed_by: Actor confirming the merge.
            overrides: Explicit field values replacing the field policy outcome.

        Returns:
            The persisted MergeRecord.

        Raises:
            InvalidStateError: If the proposal is no longer accepted.
            ExecutionError: If any stage fails.
        """
        now = self._clock()
        performed_at = format_timestamp(now)
        ids = {"proposal_id": proposal.proposal_id}

        current = _call_in_stage(
            STAGE_VALIDATE, lambda: self._proposals.get(proposal.proposal_id), **ids
        )
        if current is None or current.status != ProposalStatus.ACCEPTED:
            status = current.status.value if current is not None else "missing"
            raise InvalidStateError(
                f"Proposal {proposal.proposal_id} is {status}; only accepted proposals "
                "can be executed",
                {"proposal_id": proposal.proposal_id, "status": status},
            )

        entity_type = EntityType(current.entity_type)
        repo = EntityRepository(self._conn, entity_type)

        with merge_stage(STAGE_VALIDATE, **ids):
            try:
                source, target = load_merge_pair(repo, current.source_id, current.target_id)
            except MergeError as e:
                raise ExecutionError(STAGE_VALIDATE, e.message, {**ids, **e.details}) from e

        merge_record_id = str(uuid.uuid4())

        moved_counts: dict[str, int] = {}
        with merge_stage(STAGE_REASSIGN, **ids):
            for spec in relations(entity_type):
                dropped = repo.drop_duplicate_references(
                    source.entity_id, target.entity_id, spec.relation_type
                )
                self._records.add_dropped_rows(
                    merge_record_id, spec.relation_type, spec.id_column, dropped
                )
                moved = repo.reassign_references(
                    source.entity_id, target.entity_id, spec.relation_type
                )
                self._records.add_moves(merge_record_id, spec.relation_type, moved)
                moved_counts[spec.relation_type] = len(moved) + len(dropped)

        self._verify_counts(current, moved_counts)

        with merge_stage(STAGE_APPLY_FIELDS, **ids):
            merged, _ = compute_merged_fields(
                entity_type, target.fields, source.fields, self._policy, overrides
            )
            changed = {
                name: value
                for name, value in merged.items()
                if target.fields.get(name) != value
            }
            field_diff = {name: target.fields.get(name) for name in changed}
            repo.update(target.entity_id, changed)

        with merge_stage(STAGE_TOMBSTONE, **ids):
            if not repo.tombstone(source.entity_id, target.entity_id, performed_at):
                raise ExecutionError(
                    STAGE_TOMBSTONE,
                    "source entity was merged concurrently",
                    {**ids, "source_id": source.entity_id},
                )
            self._candidates.set_status_for_pair(
                entity_type.value,
                source.entity_id,
                target.entity_id,
                CandidateStatus.MERGED,
                expected={CandidateStatus.PENDING},
                now=performed_at,
                reviewed_by=performed_by,
            )

        record = MergeRecord(
            merge_record_id=merge_record_id,
            proposal_id=current.proposal_id,
            entity_type=entity_type,
            source_id=source.entity_id,
            target_id=target.entity_id,
            performed_by=performed_by,
            performed_at=performed_at,
            field_diff=field_diff,
            applied_fields=changed,
            reassigned_reference_counts=moved_counts,
            source_family_status=source.status,
            undo_expires_at=format_timestamp(now + self._undo_window),
        )

        with merge_stage(STAGE_RECORD, **ids):
            self._records.create(record)
            moved_proposal = self._proposals.transition(
                current.proposal_id,
                ProposalStatus.ACCEPTED,
                ProposalStatus.EXECUTED,
                performed_at,
                executed_at=performed_at,
            )
        if not moved_proposal:
            raise InvalidStateError(
                f"Proposal {current.proposal_id} changed status during execution",
                {"proposal_id": current.proposal_id},
            )

        logger.info(
            "Merged %s %s into %s (record %s)",
            entity_type,
            source.entity_id,
            target.entity_id,
            merge_record_id,
        )
        return record

    def _verify_counts(self, proposal: MergeProposal, moved_counts: dict[str, int]) -> None:
        """Compare moved row counts with the counts frozen at analysis time."""
        snapshot = proposal.analysis_snapshot
        if snapshot is None:
            raise ExecutionError(
                STAGE_VERIFY_COUNTS,
                "proposal has no analysis snapshot",
                {"proposal_id": proposal.proposal_id},
            )

        relation_names = set(snapshot.affected_counts) | set(moved_counts)
        mismatched = {
            name: {
                "expected": snapshot.affected_counts.get(name, 0),
                "actual": moved_counts.get(name, 0),
            }
            for name in sorted(relation_names)
            if snapshot.affected_counts.get(name, 0) != moved_counts.get(name, 0)
        }
        if mismatched:
            raise ExecutionError(
                STAGE_VERIFY_COUNTS,
                "reassigned reference counts differ from the analysis snapshot",
                {"proposal_id": proposal.proposal_id, "mismatched": mismatched},
            )
