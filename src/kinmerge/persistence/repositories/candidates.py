"""Duplicate candidates repository.

At most one non-dismissed candidate exists per unordered pair (enforced by the
ux_duplicate_candidates_open_pair index).
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text

from kinmerge.models.duplicate_candidate import CandidateStatus, DuplicateCandidate
from kinmerge.persistence.repositories.proposals import ordered_pair

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_COLUMNS = """
    candidate_id, entity_type, family_id, entity_a_id, entity_b_id, confidence_score,
    match_reasons, status, reviewed_by, reviewed_at, created_at, updated_at
"""


class CandidatesRepository:
    """Repository for duplicate candidate persistence operations."""

    def __init__(self, conn: Connection) -> None:
        """Initialize repository with a transactional connection.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
        """
        self._conn = conn

    def upsert(
        self,
        *,
        entity_type: str,
        family_id: str | None,
        entity_a_id: str,
        entity_b_id: str,
        confidence_score: float,
        match_reasons: list[str],
        now: str,
    ) -> DuplicateCandidate:
        """Create a candidate for a pair, or refresh the score of an open one.

        A candidate that is merged or dismissed keeps its status and score, so a
        reviewer's dismissal survives later signal recomputation.

        Returns:
            The stored candidate.
        """
        existing = self.get_for_pair(entity_type, entity_a_id, entity_b_id)
        if existing is not None:
            if existing.status == CandidateStatus.PENDING:
                self._conn.execute(
                    text(
                        """
                        UPDATE duplicate_candidates
                        SET confidence_score = :score, match_reasons = :reasons,
                            updated_at = :now
                        WHERE candidate_id = :candidate_id
                        """
                    ),
                    {
                        "candidate_id": existing.candidate_id,
                        "score": confidence_score,
                        "reasons": json.dumps(match_reasons),
                        "now": now,
                    },
                )
                return existing.model_copy(
                    update={
                        "confidence_score": confidence_score,
                        "match_reasons": match_reasons,
                        "updated_at": now,
                    }
                )
            return existing

        candidate_id = str(uuid.uuid4())
        pair_low, pair_high = ordered_pair(entity_a_id, entity_b_id)
        self._conn.execute(
            text(
                """
                INSERT INTO duplicate_candidates (
                    candidate_id, entity_type, family_id, entity_a_id, entity_b_id,
                    pair_low, pair_high, confidence_score, match_reasons, status,
                    created_at, updated_at
                ) VALUES (
                    :candidate_id, :entity_type, :family_id, :entity_a_id, :entity_b_id,
                    :pair_low, :pair_high, :score, :reasons, 'pending',
                    :now, NULL
                )
                """
            ),
            {
                "candidate_id": candidate_id,
                "entity_type": entity_type,
                "family_id": family_id,
                "entity_a_id": entity_a_id,
                "entity_b_id": entity_b_id,
                "pair_low": pair_low,
                "pair_high": pair_high,
                "score": confidence_score,
                "reasons": json.dumps(match_reasons),
                "now": now,
            },
        )
        return DuplicateCandidate(
            candidate_id=candidate_id,
            entity_type=entity_type,
            family_id=family_id,
            entity_a_id=entity_a_id,
            entity_b_id=entity_b_id,
            confidence_score=confidence_score,
            match_reasons=match_reasons,
            status=CandidateStatus.PENDING,
            created_at=now,
        )

    def get(self, candidate_id: str) -> DuplicateCandidate | None:
        """Get a candidate by ID."""
        row = (
            self._conn.execute(
                text(
                    f"SELECT {_COLUMNS} FROM duplicate_candidates "
                    "WHERE candidate_id = :candidate_id"
                ),
                {"candidate_id": candidate_id},
            )
            .mappings()
            .fetchone()
        )
        return None if row is None else self._row_to_model(row)

    def get_for_pair(self, entity_type: str, a: str, b: str) -> DuplicateCandidate | None:
        """Return the candidate for an unordered pair, preferring an open one."""
        pair_low, pair_high = ordered_pair(a, b)
        row = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM duplicate_candidates
                    WHERE entity_type = :entity_type
                      AND pair_low = :pair_low AND pair_high = :pair_high
                    ORDER BY CASE WHEN status = 'dismissed' THEN 1 ELSE 0 END,
                             created_at DESC
                    LIMIT 1
                    """
                ),
                {"entity_type": entity_type, "pair_low": pair_low, "pair_high": pair_high},
            )
            .mappings()
            .fetchone()
        )
        return None if row is None else self._row_to_model(row)

    def get_open_for_pair(self, entity_type: str, a: str, b: str) -> DuplicateCandidate | None:
        """Return the non-dismissed candidate for an unordered pair, if any."""
        pair_low, pair_high = ordered_pair(a, b)
        row = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM duplicate_candidates
                    WHERE entity_type = :entity_type
                      AND pair_low = :pair_low AND pair_high = :pair_high
                      AND status <> 'dismissed'
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
        status: str | None = CandidateStatus.PENDING.value,
        min_score: float | None = None,
        limit: int = 50,
    ) -> list[DuplicateCandidate]:
        """List candidates ordered by confidence score descending.

        Args:
            status: Optional status filter (default: pending).
            min_score: Optional minimum confidence score (inclusive).
            limit: Maximum number of candidates to return.

        Returns:
            Candidates, highest score first; ties ordered by candidate_id.
        """
        clauses: list[str] = []
        params: dict[str, Any] = {"limit": min(max(1, limit), 500)}
        if status is not None:
            clauses.append("status = :status")
            params["status"] = status
        if min_score is not None:
            clauses.append("confidence_score >= :min_score")
            params["min_score"] = min_score
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM duplicate_candidates
                    {where}
                    ORDER BY confidence_score DESC, candidate_id
                    LIMIT :limit
                    """
                ),
                params,
            )
            .mappings()
            .fetchall()
        )
        return [self._row_to_model(row) for row in rows]

    def set_status(
        self,
        candidate_id: str,
        status: CandidateStatus,
        expected: Iterable[CandidateStatus],
        now: str,
        reviewed_by: str | None = None,
    ) -> bool:
        """Compare-and-set a candidate's status.

        Returns:
            True if the candidate was in one of the expected statuses.
        """
        result = self._conn.execute(
            text(
                """
                UPDATE duplicate_candidates
                SET status = :status, updated_at = :now,
                    reviewed_by = COALESCE(:reviewed_by, reviewed_by),
                    reviewed_at = CASE WHEN :reviewed_by IS NULL THEN reviewed_at ELSE :now END
                WHERE candidate_id = :candidate_id AND status IN :expected
                """
            ).bindparams(bindparam("expected", expanding=True)),
            {
                "candidate_id": candidate_id,
                "status": status.value,
                "now": now,
                "reviewed_by": reviewed_by,
                "expected": [s.value for s in expected],
            },
        )
        return result.rowcount > 0

    def set_status_for_pair(
        self,
        entity_type: str,
        a: str,
        b: str,
        status: CandidateStatus,
        expected: Iterable[CandidateStatus],
        now: str,
        reviewed_by: str | None = None,
    ) -> bool:
        """Compare-and-set the status of the open candidate for a pair, if one exists."""
        candidate = self.get_open_for_pair(entity_type, a, b)
        if candidate is None:
            return False
        return self.set_status(candidate.candidate_id, status, expected, now, reviewed_by)

    def _row_to_model(self, row: Any) -> DuplicateCandidate:
        """Convert database row mapping to DuplicateCandidate."""
        reasons = row["match_reasons"]
        if isinstance(reasons, str):
            reasons = json.loads(reasons)

        return DuplicateCandidate(
            candidate_id=str(row["candidate_id"]),
            entity_type=row["entity_type"],
            family_id=row["family_id"],
            entity_a_id=str(row["entity_a_id"]),
            entity_b_id=str(row["entity_b_id"]),
            confidence_score=float(row["confidence_score"]),
            match_reasons=reasons or [],
            status=row["status"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
