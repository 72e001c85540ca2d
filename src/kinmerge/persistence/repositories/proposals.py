"""Merge proposals repository.

Status changes are compare-and-set updates (WHERE status = :expected) so a
concurrent transition can never be overwritten. Pair uniqueness for open
proposals is enforced by the ux_merge_proposals_open_pair index; the insert that
loses a race surfaces as OpenProposalExistsError.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from kinmerge.models.merge_proposal import AnalysisSnapshot, MergeProposal, ProposalStatus

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_COLUMNS = """
    proposal_id, entity_type, source_id, target_id, confidence_score, reason,
    analysis_snapshot, status, proposed_by, proposal_type, reviewed_by, reviewed_at,
    review_reason, error_details, created_at, updated_at, expires_at, executed_at
"""

_MUTABLE_COLUMNS = frozenset(
    {"reviewed_by", "reviewed_at", "review_reason", "error_details", "executed_at"}
)


class OpenProposalExistsError(Exception):
    """Raised when an open proposal already exists for the unordered pair."""

    def __init__(self, source_id: str, target_id: str) -> None:
        self.source_id = source_id
        self.target_id = target_id
        super().__init__(f"Open merge proposal already exists for {source_id} / {target_id}")


def ordered_pair(a: str, b: str) -> tuple[str, str]:
    """Return (low, high) for an unordered pair of ids."""
    return (a, b) if a <= b else (b, a)


class ProposalsRepository:
    """Repository for merge proposal persistence operations."""

    def __init__(self, conn: Connection) -> None:
        """Initialize repository with a transactional connection.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
        """
        self._conn = conn

    def create(self, proposal: MergeProposal) -> MergeProposal:
        """Insert a new proposal.

        The insert is the check: the partial unique index rejects a second open
        proposal for the same unordered pair.

        Args:
            proposal: Fully populated proposal in pending status.

        Returns:
            The stored proposal.

        Raises:
            OpenProposalExistsError: If an open proposal exists for the pair.
        """
        pair_low, pair_high = ordered_pair(proposal.source_id, proposal.target_id)
        snapshot = (
            proposal.analysis_snapshot.model_dump_json()
            if proposal.analysis_snapshot is not None
            else None
        )

        try:
            with self._conn.begin_nested():
                self._conn.execute(
                    text(
                        """
                        INSERT INTO merge_proposals (
                            proposal_id, entity_type, source_id, target_id,
                            pair_low, pair_high, confidence_score, reason,
                            analysis_snapshot, status, proposed_by, proposal_type,
                            created_at, updated_at, expires_at
                        ) VALUES (
                            :proposal_id, :entity_type, :source_id, :target_id,
                            :pair_low, :pair_high, :confidence_score, :reason,
                            :analysis_snapshot, :status, :proposed_by, :proposal_type,
                            :created_at, NULL, :expires_at
                        )
                        """
                    ),
                    {
                        "proposal_id": proposal.proposal_id,
                        "entity_type": proposal.entity_type.value,
                        "source_id": proposal.source_id,
                        "target_id": proposal.target_id,
                        "pair_low": pair_low,
                        "pair_high": pair_high,
                        "confidence_score": proposal.confidence_score,
                        "reason": proposal.reason,
                        "analysis_snapshot": snapshot,
                        "status": proposal.status.value,
                        "proposed_by": proposal.proposed_by,
                        "proposal_type": proposal.proposal_type,
                        "created_at": proposal.created_at,
                        "expires_at": proposal.expires_at,
                    },
                )
        except IntegrityError as e:
            raise OpenProposalExistsError(proposal.source_id, proposal.target_id) from e

        return proposal

    def get(self, proposal_id: str) -> MergeProposal | None:
        """Get a proposal by ID.

        Args:
            proposal_id: Proposal identifier.

        Returns:
            MergeProposal, or None if not found.
        """
        row = (
            self._conn.execute(
                text(f"SELECT {_COLUMNS} FROM merge_proposals WHERE proposal_id = :proposal_id"),
                {"proposal_id": proposal_id},
            )
            .mappings()
            .fetchone()
        )
        return None if row is None else self._row_to_model(row)

    def find_open_for_pair(self, entity_type: str, a: str, b: str) -> MergeProposal | None:
        """Return the pending or accepted proposal for an unordered pair, if any."""
        pair_low, pair_high = ordered_pair(a, b)
        row = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM merge_proposals
                    WHERE entity_type = :entity_type
                      AND pair_low = :pair_low AND pair_high = :pair_high
                      AND status IN ('pending', 'accepted')
                    """
                ),
                {"entity_type": entity_type, "pair_low": pair_low, "pair_high": pair_high},
            )
            .mappings()
            .fetchone()
        )
        return None if row is None else self._row_to_model(row)

    def list(
        self,
        status: str | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[MergeProposal], str | None]:
        """List proposals ordered by id.

        Args:
            status: Optional status filter.
            limit: Maximum number of proposals to return.
            cursor: Pagination cursor (proposal_id to start after).

        Returns:
            Tuple of (proposals list, next_cursor or None).
        """
        effective_limit = min(max(1, limit), 200)
        clauses: list[str] = []
        params: dict[str, Any] = {"limit": effective_limit + 1}
        if status is not None:
            clauses.append("status = :status")
            params["status"] = status
        if cursor:
            clauses.append("proposal_id > :cursor")
            params["cursor"] = cursor
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM merge_proposals
                    {where}
                    ORDER BY proposal_id
                    LIMIT :limit
                    """
                ),
                params,
            )
            .mappings()
            .fetchall()
        )

        proposals = [self._row_to_model(row) for row in rows[:effective_limit]]
        next_cursor = None
        if len(rows) > effective_limit:
            next_cursor = proposals[-1].proposal_id

        return proposals, next_cursor

    def list_expired_pending(self, now: str) -> list[MergeProposal]:
        """Return pending proposals whose expires_at is at or before now."""
        rows = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM merge_proposals
                    WHERE status = 'pending' AND expires_at IS NOT NULL
                      AND expires_at <= :now
                    ORDER BY proposal_id
                    """
                ),
                {"now": now},
            )
            .mappings()
            .fetchall()
        )
        return [self._row_to_model(row) for row in rows]

    def transition(
        self,
        proposal_id: str,
        from_status: ProposalStatus,
        to_status: ProposalStatus,
        updated_at: str,
        **changes: Any,
    ) -> bool:
        """Compare-and-set a proposal's status.

        Args:
            proposal_id: Proposal identifier.
            from_status: Status the proposal must currently have.
            to_status: New status.
            updated_at: Timestamp of the transition.
            **changes: Extra columns to set (reviewed_by, reviewed_at, review_reason,
                error_details, executed_at).

        Returns:
            True if the proposal was in from_status and has been moved.
        """
        unknown = set(changes) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update proposal columns: {sorted(unknown)}")

        params: dict[str, Any] = {
            "proposal_id": proposal_id,
            "from_status": from_status.value,
            "to_status": to_status.value,
            "updated_at": updated_at,
        }
        assignments = ["status = :to_status", "updated_at = :updated_at"]
        for column, value in changes.items():
            if column == "error_details" and value is not None:
                value = json.dumps(value, sort_keys=True)
            assignments.append(f"{column} = :{column}")
            params[column] = value

        result = self._conn.execute(
            text(
                f"""
                UPDATE merge_proposals
                SET {", ".join(assignments)}
                WHERE proposal_id = :proposal_id AND status = :from_status
                """
            ),
            params,
        )
        return result.rowcount > 0

    def set_snapshot(self, proposal_id: str, snapshot: AnalysisSnapshot) -> bool:
        """Attach an analysis snapshot if none has been captured yet.

        Returns:
            True if the snapshot was written.
        """
        result = self._conn.execute(
            text(
                """
                UPDATE merge_proposals
                SET analysis_snapshot = :snapshot
                WHERE proposal_id = :proposal_id AND analysis_snapshot IS NULL
                """
            ),
            {"proposal_id": proposal_id, "snapshot": snapshot.model_dump_json()},
        )
        return result.rowcount > 0

    def _row_to_model(self, row: Any) -> MergeProposal:
        """Convert database row mapping to MergeProposal."""
        snapshot = row["analysis_snapshot"]
        error_details = row["error_details"]

        return MergeProposal(
            proposal_id=str(row["proposal_id"]),
            entity_type=row["entity_type"],
            source_id=str(row["source_id"]),
            target_id=str(row["target_id"]),
            confidence_score=float(row["confidence_score"]),
            reason=row["reason"],
            analysis_snapshot=(
                AnalysisSnapshot.model_validate_json(snapshot) if snapshot else None
            ),
            status=row["status"],
            proposed_by=row["proposed_by"],
            proposal_type=row["proposal_type"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            review_reason=row["review_reason"],
            error_details=json.loads(error_details) if error_details else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
            executed_at=row["executed_at"],
        )
