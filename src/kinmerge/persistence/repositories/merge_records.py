"""Merge records repository.

A merge record is written once per successful execute, together with one
merge_reference_moves row per dependent row the merge repointed or dropped.
Dropped rows (links that would have duplicated one the canonical already has)
are logged with their full column values. Undo reads the log back to restore
exactly those rows.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from kinmerge.models.merge_record import MergeRecord

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_COLUMNS = """
    merge_record_id, proposal_id, entity_type, source_id, target_id, performed_by,
    performed_at, field_diff, applied_fields, reassigned_reference_counts,
    source_family_status, undone, undone_by, undone_at, undo_expires_at
"""


class MergeRecordsRepository:
    """Repository for merge records and their reference-move log."""

    def __init__(self, conn: Connection) -> None:
        """Initialize repository with a transactional connection.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
        """
        self._conn = conn

    def create(self, record: MergeRecord) -> MergeRecord:
        """Insert a merge record.

        Raises:
            IntegrityError: If a record already exists for the proposal.
        """
        self._conn.execute(
            text(
                """
                INSERT INTO merge_records (
                    merge_record_id, proposal_id, entity_type, source_id, target_id,
                    performed_by, performed_at, field_diff, applied_fields,
                    reassigned_reference_counts, source_family_status, undone,
                    undo_expires_at
                ) VALUES (
                    :merge_record_id, :proposal_id, :entity_type, :source_id, :target_id,
                    :performed_by, :performed_at, :field_diff, :applied_fields,
                    :counts, :source_family_status, FALSE,
                    :undo_expires_at
                )
                """
            ),
            {
                "merge_record_id": record.merge_record_id,
                "proposal_id": record.proposal_id,
                "entity_type": record.entity_type.value,
                "source_id": record.source_id,
                "target_id": record.target_id,
                "performed_by": record.performed_by,
                "performed_at": record.performed_at,
                "field_diff": json.dumps(record.field_diff, sort_keys=True),
                "applied_fields": json.dumps(record.applied_fields, sort_keys=True),
                "counts": json.dumps(record.reassigned_reference_counts, sort_keys=True),
                "source_family_status": record.source_family_status,
                "undo_expires_at": record.undo_expires_at,
            },
        )
        return record

    def get(self, merge_record_id: str) -> MergeRecord | None:
        """Get a merge record by ID."""
        row = (
            self._conn.execute(
                text(
                    f"SELECT {_COLUMNS} FROM merge_records "
                    "WHERE merge_record_id = :merge_record_id"
                ),
                {"merge_record_id": merge_record_id},
            )
            .mappings()
            .fetchone()
        )
        return None if row is None else self._row_to_model(row)

    def get_by_proposal(self, proposal_id: str) -> MergeRecord | None:
        """Get the merge record produced by a proposal, if it was executed."""
        row = (
            self._conn.execute(
                text(f"SELECT {_COLUMNS} FROM merge_records WHERE proposal_id = :proposal_id"),
                {"proposal_id": proposal_id},
            )
            .mappings()
            .fetchone()
        )
        return None if row is None else self._row_to_model(row)

    def add_moves(self, merge_record_id: str, relation_type: str, row_ids: list[str]) -> None:
        """Log the dependent rows moved for one relation type."""
        if not row_ids:
            return

        self._conn.execute(
            text(
                """
                INSERT INTO merge_reference_moves (
                    move_id, merge_record_id, relation_type, row_id
                ) VALUES (
                    :move_id, :merge_record_id, :relation_type, :row_id
                )
                """
            ),
            [
                {
                    "move_id": str(uuid.uuid4()),
                    "merge_record_id": merge_record_id,
                    "relation_type": relation_type,
                    "row_id": row_id,
                }
                for row_id in row_ids
            ],
        )

    def list_moves(self, merge_record_id: str) -> dict[str, list[str]]:
        """Return moved row ids grouped by relation type."""
        rows = self._conn.execute(
            text(
                """
                SELECT relation_type, row_id FROM merge_reference_moves
                WHERE merge_record_id = :merge_record_id AND action = 'moved'
                ORDER BY relation_type, row_id
                """
            ),
            {"merge_record_id": merge_record_id},
        ).fetchall()

        moves: dict[str, list[str]] = {}
        for row in rows:
            moves.setdefault(row.relation_type, []).append(str(row.row_id))
        return moves

    def add_dropped_rows(
        self,
        merge_record_id: str,
        relation_type: str,
        id_column: str,
        rows: list[dict[str, Any]],
    ) -> None:
        """Log dependent rows the merge deleted, with every column value."""
        if not rows:
            return

        self._conn.execute(
            text(
                """
                INSERT INTO merge_reference_moves (
                    move_id, merge_record_id, relation_type, row_id, action, row_data
                ) VALUES (
                    :move_id, :merge_record_id, :relation_type, :row_id, 'dropped', :row_data
                )
                """
            ),
            [
                {
                    "move_id": str(uuid.uuid4()),
                    "merge_record_id": merge_record_id,
                    "relation_type": relation_type,
                    "row_id": str(row[id_column]),
                    "row_data": json.dumps(row, sort_keys=True),
                }
                for row in rows
            ],
        )

    def list_dropped_rows(self, merge_record_id: str) -> dict[str, list[dict[str, Any]]]:
        """Return dropped rows grouped by relation type."""
        rows = self._conn.execute(
            text(
                """
                SELECT relation_type, row_data FROM merge_reference_moves
                WHERE merge_record_id = :merge_record_id AND action = 'dropped'
                ORDER BY relation_type, row_id
                """
            ),
            {"merge_record_id": merge_record_id},
        ).fetchall()

        dropped: dict[str, list[dict[str, Any]]] = {}
        for row in rows:
            dropped.setdefault(row.relation_type, []).append(json.loads(row.row_data))
        return dropped

    def mark_undone(self, merge_record_id: str, undone_by: str, undone_at: str) -> bool:
        """Compare-and-set a record to undone.

        Returns:
            True if the record was not undone before this call.
        """
        result = self._conn.execute(
            text(
                """
                UPDATE merge_records
                SET undone = TRUE, undone_by = :undone_by, undone_at = :undone_at
                WHERE merge_record_id = :merge_record_id AND undone = FALSE
                """
            ),
            {
                "merge_record_id": merge_record_id,
                "undone_by": undone_by,
                "undone_at": undone_at,
            },
        )
        return result.rowcount > 0

    def _row_to_model(self, row: Any) -> MergeRecord:
        """Convert database row mapping to MergeRecord."""

        def _json(value: Any) -> dict[str, Any]:
            if isinstance(value, str):
                return json.loads(value)
            return value or {}

        return MergeRecord(
            merge_record_id=str(row["merge_record_id"]),
            proposal_id=str(row["proposal_id"]),
            entity_type=row["entity_type"],
            source_id=str(row["source_id"]),
            target_id=str(row["target_id"]),
            performed_by=row["performed_by"],
            performed_at=row["performed_at"],
            field_diff=_json(row["field_diff"]),
            applied_fields=_json(row["applied_fields"]),
            reassigned_reference_counts=_json(row["reassigned_reference_counts"]),
            source_family_status=row["source_family_status"],
            undone=bool(row["undone"]),
            undone_by=row["undone_by"],
            undone_at=row["undone_at"],
            undo_expires_at=row["undo_expires_at"],
        )
