"""Merge undo.

Reverses one MergeRecord on the caller's transaction: restores the canonical's
pre-merge field values, moves the logged dependent rows back to the source,
re-inserts the duplicate links the merge deleted, clears the source tombstone
and reopens the duplicate candidate. Undo refuses to run over changes made after
the merge, so a successful undo is exact.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kinmerge.models.duplicate_candidate import CandidateStatus
from kinmerge.models.entity import EntityType
from kinmerge.models.merge_record import MergeRecord
from kinmerge.persistence.repositories.candidates import CandidatesRepository
from kinmerge.persistence.repositories.entities import EntityRepository
from kinmerge.persistence.repositories.merge_records import MergeRecordsRepository
from kinmerge.services.merge.clock import Clock, format_timestamp, parse_timestamp, system_clock
from kinmerge.services.merge.errors import (
    AlreadyUndoneError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
)
from kinmerge.services.merge.executor import merge_stage

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

STAGE_RESTORE_FIELDS = "restore_fields"
STAGE_RESTORE_REFERENCES = "restore_references"
STAGE_UNTOMBSTONE = "untombstone"
STAGE_MARK_UNDONE = "mark_undone"


class MergeUndoer:
    """Reverses executed merges on one transactional connection."""

    def __init__(self, conn: Connection, clock: Clock = system_clock) -> None:
        self._conn = conn
        self._clock = clock
        self._records = MergeRecordsRepository(conn)
        self._candidates = CandidatesRepository(conn)

    def undo(self, merge_record_id: str, undone_by: str) -> MergeRecord:
        """Reverse the merge described by a merge record.

        Args:
            merge_record_id: Record produced by the merge.
            undone_by: Actor requesting the undo.

        Returns:
            The record, marked undone.

        Raises:
            NotFoundError: If the record does not exist.
            AlreadyUndoneError: If the record was already undone.
            InvalidStateError: If the undo window has passed.
            ExecutionError: If the entities changed since the merge or a step fails.
        """
        record = self._records.get(merge_record_id)
        if record is None:
            raise NotFoundError("merge_record", merge_record_id)
        if record.undone:
            raise AlreadyUndoneError(merge_record_id)

        now = self._clock()
        if record.undo_expires_at and now > parse_timestamp(record.undo_expires_at):
            raise InvalidStateError(
                f"Undo window for merge record {merge_record_id} expired at "
                f"{record.undo_expires_at}",
                {"merge_record_id": merge_record_id, "undo_expires_at": record.undo_expires_at},
            )

        undone_at = format_timestamp(now)
        ids = {"merge_record_id": merge_record_id}
        repo = EntityRepository(self._conn, EntityType(record.entity_type))

        with merge_stage(STAGE_RESTORE_FIELDS, **ids):
            target = repo.get(record.target_id)
            if target is None:
                raise ExecutionError(
                    STAGE_RESTORE_FIELDS,
                    "canonical entity no longer exists",
                    {**ids, "target_id": record.target_id},
                )
            drifted = sorted(
                name
                for name, value in record.applied_fields.items()
                if target.fields.get(name) != value
            )
            if drifted:
                raise ExecutionError(
                    STAGE_RESTORE_FIELDS,
                    "canonical fields changed after the merge",
                    {**ids, "fields": drifted},
                )
            repo.update(record.target_id, record.field_diff)

        with merge_stage(STAGE_RESTORE_REFERENCES, **ids):
            for relation_type, row_ids in self._records.list_moves(merge_record_id).items():
                restored = repo.restore_references(
                    relation_type, row_ids, record.target_id, record.source_id
                )
                if restored != len(row_ids):
                    raise ExecutionError(
                        STAGE_RESTORE_REFERENCES,
                        "reassigned rows changed after the merge",
                        {
                            **ids,
                            "relation_type": relation_type,
                            "expected": len(row_ids),
                            "actual": restored,
                        },
                    )
            for relation_type, rows in self._records.list_dropped_rows(merge_record_id).items():
                repo.reinsert_references(relation_type, rows)

        with merge_stage(STAGE_UNTOMBSTONE, **ids):
            if not repo.untombstone(record.source_id, status=record.source_family_status):
                raise ExecutionError(
                    STAGE_UNTOMBSTONE,
                    "source entity is not tombstoned",
                    {**ids, "source_id": record.source_id},
                )
            self._candidates.set_status_for_pair(
                record.entity_type.value,
                record.source_id,
                record.target_id,
                CandidateStatus.PENDING,
                expected={CandidateStatus.MERGED},
                now=undone_at,
            )

        with merge_stage(STAGE_MARK_UNDONE, **ids):
            marked = self._records.mark_undone(merge_record_id, undone_by, undone_at)
        if not marked:
            raise AlreadyUndoneError(merge_record_id)

        logger.info("Undid merge record %s", merge_record_id)
        return record.model_copy(
            update={"undone": True, "undone_by": undone_by, "undone_at": undone_at}
        )
