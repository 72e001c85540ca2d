"""Entity store for person and family records.

Implements the contract the merge executor depends on: get, update,
reassign_references, tombstone, plus the counting and reversal helpers used by
preview and undo. Table and column names come from the static registries below,
never from caller input, except that reinsert_references takes column names from
rows this repository dropped earlier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text

from kinmerge.models.entity import Entity, EntityType, FamilyStatus, mergeable_fields

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationSpec:
    """A foreign reference from a dependent table to a mergeable entity.

    Attributes:
        relation_type: Stable name used in counts and the reference-move log.
        table: Dependent table name.
        id_column: Primary key column of the dependent table.
        ref_column: Column holding the referenced entity id.
        predicate: Optional static SQL predicate narrowing the rows.
        dedupe_columns: Columns that identify what a row points at. A duplicate's
            row that matches one of the canonical's rows on all of them is
            dropped on merge instead of repointed.
    """

    relation_type: str
    table: str
    id_column: str
    ref_column: str
    predicate: str | None = None
    dedupe_columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class EntityTable:
    """Where an entity type is stored."""

    table: str
    id_column: str
    family_column: str
    has_status: bool


ENTITY_TABLES: dict[EntityType, EntityTable] = {
    EntityType.PERSON: EntityTable(
        table="people", id_column="person_id", family_column="family_id", has_status=False
    ),
    EntityType.FAMILY: EntityTable(
        table="families", id_column="family_id", family_column="family_id", has_status=True
    ),
}

RELATIONS: dict[EntityType, tuple[RelationSpec, ...]] = {
    EntityType.PERSON: (
        RelationSpec(
            relation_type="entity_links",
            table="entity_links",
            id_column="link_id",
            ref_column="entity_id",
            predicate="entity_type = 'person'",
            dedupe_columns=("source_type", "source_id"),
        ),
        RelationSpec(
            relation_type="relationships.from",
            table="relationships",
            id_column="relationship_id",
            ref_column="from_person_id",
        ),
        RelationSpec(
            relation_type="relationships.to",
            table="relationships",
            id_column="relationship_id",
            ref_column="to_person_id",
        ),
        RelationSpec(
            relation_type="person_user_links",
            table="person_user_links",
            id_column="link_id",
            ref_column="person_id",
        ),
    ),
    EntityType.FAMILY: (
        RelationSpec("people", "people", "person_id", "family_id"),
        RelationSpec("members", "members", "member_id", "family_id"),
        RelationSpec("stories", "stories", "story_id", "family_id"),
        RelationSpec("media", "media", "media_id", "family_id"),
        RelationSpec("entity_links", "entity_links", "link_id", "family_id"),
        RelationSpec("relationships", "relationships", "relationship_id", "family_id"),
    ),
}


def relations(entity_type: EntityType) -> tuple[RelationSpec, ...]:
    """Return the dependent references of an entity type."""
    return RELATIONS[entity_type]


def _utc_now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class EntityRepository:
    """Repository for one entity type's records and their dependent references.

    The connection must already be inside a transaction; the repository never
    commits.
    """

    def __init__(self, conn: Connection, entity_type: EntityType) -> None:
        """Initialize repository with connection and entity type.

        Args:
            conn: SQLAlchemy connection (must be in a transaction).
            entity_type: Entity type this repository operates on.
        """
        self._conn = conn
        self._entity_type = EntityType(entity_type)
        self._table = ENTITY_TABLES[self._entity_type]
        self._fields = mergeable_fields(self._entity_type)
        self._relations = {spec.relation_type: spec for spec in RELATIONS[self._entity_type]}

    @property
    def entity_type(self) -> EntityType:
        """Return the entity type this repository serves."""
        return self._entity_type

    def _relation(self, relation_type: str) -> RelationSpec:
        spec = self._relations.get(relation_type)
        if spec is None:
            raise ValueError(f"Unknown relation type {relation_type!r} for {self._entity_type}")
        return spec

    def get(self, entity_id: str) -> Entity | None:
        """Get an entity by ID, including tombstoned ones.

        Args:
            entity_id: Entity identifier.

        Returns:
            Entity, or None if not found.
        """
        status_column = ", status" if self._table.has_status else ""
        row = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {self._table.id_column} AS entity_id,
                           {self._table.family_column} AS family_id,
                           {", ".join(self._fields)},
                           merged_into_id, merged_at, created_at{status_column}
                    FROM {self._table.table}
                    WHERE {self._table.id_column} = :entity_id
                    """
                ),
                {"entity_id": entity_id},
            )
            .mappings()
            .fetchone()
        )

        if row is None:
            return None

        return self._row_to_entity(row)

    def list_active(self, family_id: str | None = None) -> list[Entity]:
        """List entities that have not been merged away.

        Args:
            family_id: Optional owning family filter.

        Returns:
            Entities ordered by id.
        """
        status_column = ", status" if self._table.has_status else ""
        params: dict[str, Any] = {}
        family_filter = ""
        if family_id is not None:
            family_filter = f"AND {self._table.family_column} = :family_id"
            params["family_id"] = family_id

        rows = (
            self._conn.execute(
                text(
                    f"""
                    SELECT {self._table.id_column} AS entity_id,
                           {self._table.family_column} AS family_id,
                           {", ".join(self._fields)},
                           merged_into_id, merged_at, created_at{status_column}
                    FROM {self._table.table}
                    WHERE merged_into_id IS NULL {family_filter}
                    ORDER BY {self._table.id_column}
                    """
                ),
                params,
            )
            .mappings()
            .fetchall()
        )
        return [self._row_to_entity(row) for row in rows]

    def get_family_status(self, family_id: str) -> str | None:
        """Return the status of the owning family, or None if it does not exist."""
        row = self._conn.execute(
            text("SELECT status FROM families WHERE family_id = :family_id"),
            {"family_id": family_id},
        ).fetchone()
        return None if row is None else row.status

    def update(self, entity_id: str, fields: dict[str, str | None]) -> bool:
        """Write field values onto an entity.

        Args:
            entity_id: Entity identifier.
            fields: Mapping of mergeable field name to new value.

        Returns:
            True if the entity was updated, False if not found.

        Raises:
            ValueError: If a field is outside the entity type's mergeable set.
        """
        if not fields:
            return True

        unknown = sorted(set(fields) - set(self._fields))
        if unknown:
            raise ValueError(f"Fields {unknown} are not mergeable for {self._entity_type}")

        assignments = ", ".join(f"{name} = :f_{name}" for name in fields)
        params: dict[str, Any] = {f"f_{name}": value for name, value in fields.items()}
        params["entity_id"] = entity_id
        params["updated_at"] = _utc_now()

        result = self._conn.execute(
            text(
                f"""
                UPDATE {self._table.table}
                SET {assignments}, updated_at = :updated_at
                WHERE {self._table.id_column} = :entity_id
                """
            ),
            params,
        )
        return result.rowcount > 0

    def count_references(self, entity_id: str) -> dict[str, int]:
        """Count dependent rows referencing an entity, grouped by relation type.

        Every relation type is present in the result, including zero counts.
        """
        counts: dict[str, int] = {}
        for spec in self._relations.values():
            predicate = f"AND {spec.predicate}" if spec.predicate else ""
            row = self._conn.execute(
                text(
                    f"""
                    SELECT COUNT(*) AS n FROM {spec.table}
                    WHERE {spec.ref_column} = :entity_id {predicate}
                    """
                ),
                {"entity_id": entity_id},
            ).fetchone()
            counts[spec.relation_type] = int(row.n) if row is not None else 0
        return counts

    def list_reference_ids(self, entity_id: str, relation_type: str) -> list[str]:
        """Return ids of dependent rows referencing an entity for one relation type."""
        spec = self._relation(relation_type)
        predicate = f"AND {spec.predicate}" if spec.predicate else ""
        rows = self._conn.execute(
            text(
                f"""
                SELECT {spec.id_column} AS row_id FROM {spec.table}
                WHERE {spec.ref_column} = :entity_id {predicate}
                ORDER BY {spec.id_column}
                """
            ),
            {"entity_id": entity_id},
        ).fetchall()
        return [str(row.row_id) for row in rows]

    def reassign_references(self, from_id: str, to_id: str, relation_type: str) -> list[str]:
        """Repoint every reference of one relation type from from_id to to_id.

        Args:
            from_id: Entity currently referenced (the duplicate).
            to_id: Entity to reference instead (the canonical).
            relation_type: Relation type to move.

        Returns:
            Ids of the rows that were moved.
        """
        spec = self._relation(relation_type)
        row_ids = self.list_reference_ids(from_id, relation_type)
        if not row_ids:
            return []

        self._conn.execute(
            text(
                f"""
                UPDATE {spec.table}
                SET {spec.ref_column} = :to_id
                WHERE {spec.id_column} IN :row_ids AND {spec.ref_column} = :from_id
                """
            ).bindparams(bindparam("row_ids", expanding=True)),
            {"to_id": to_id, "from_id": from_id, "row_ids": row_ids},
        )
        logger.debug(
            "Reassigned %d %s rows from %s to %s", len(row_ids), relation_type, from_id, to_id
        )
        return row_ids

    def drop_duplicate_references(
        self, from_id: str, to_id: str, relation_type: str
    ) -> list[dict[str, Any]]:
        """Delete from_id's rows that would duplicate a row to_id already has.

        A story or media item linked to both people keeps only the canonical's
        link. Relations without dedupe columns drop nothing.

        Returns:
            The deleted rows with every column, ordered by row id.
        """
        spec = self._relation(relation_type)
        if not spec.dedupe_columns:
            return []

        predicate = f"AND {spec.predicate}" if spec.predicate else ""
        same_item = " AND ".join(f"kept.{col} = dup.{col}" for col in spec.dedupe_columns)
        rows = (
            self._conn.execute(
                text(
                    f"""
                    SELECT dup.* FROM {spec.table} AS dup
                    WHERE dup.{spec.ref_column} = :from_id {predicate}
                      AND EXISTS (
                          SELECT 1 FROM {spec.table} AS kept
                          WHERE kept.{spec.ref_column} = :to_id {predicate}
                            AND {same_item}
                      )
                    ORDER BY dup.{spec.id_column}
                    """
                ),
                {"from_id": from_id, "to_id": to_id},
            )
            .mappings()
            .fetchall()
        )
        if not rows:
            return []

        dropped = [dict(row) for row in rows]
        self._conn.execute(
            text(f"DELETE FROM {spec.table} WHERE {spec.id_column} IN :row_ids").bindparams(
                bindparam("row_ids", expanding=True)
            ),
            {"row_ids": [row[spec.id_column] for row in dropped]},
        )
        logger.debug(
            "Dropped %d duplicate %s rows of %s already held by %s",
            len(dropped),
            relation_type,
            from_id,
            to_id,
        )
        return dropped

    def reinsert_references(self, relation_type: str, rows: list[dict[str, Any]]) -> int:
        """Insert rows removed by drop_duplicate_references back unchanged.

        Returns:
            Number of rows inserted.

        Raises:
            ValueError: If a row carries a column name that is not an identifier.
        """
        if not rows:
            return 0

        spec = self._relation(relation_type)
        columns = sorted(rows[0])
        if not all(col.isidentifier() for col in columns):
            raise ValueError(f"Invalid column names for {spec.table}: {columns}")

        self._conn.execute(
            text(
                f"""
                INSERT INTO {spec.table} ({", ".join(columns)})
                VALUES ({", ".join(f":{col}" for col in columns)})
                """
            ),
            rows,
        )
        return len(rows)

    def restore_references(
        self,
        relation_type: str,
        row_ids: list[str],
        current_id: str,
        original_id: str,
    ) -> int:
        """Move specific rows back from current_id to original_id.

        Only rows that still reference current_id are moved.

        Returns:
            Number of rows moved back.
        """
        if not row_ids:
            return 0

        spec = self._relation(relation_type)
        result = self._conn.execute(
            text(
                f"""
                UPDATE {spec.table}
                SET {spec.ref_column} = :original_id
                WHERE {spec.id_column} IN :row_ids AND {spec.ref_column} = :current_id
                """
            ).bindparams(bindparam("row_ids", expanding=True)),
            {"original_id": original_id, "current_id": current_id, "row_ids": row_ids},
        )
        return result.rowcount

    def tombstone(self, entity_id: str, merged_into_id: str, merged_at: str) -> bool:
        """Mark an entity as merged away without deleting it.

        Families additionally move to status 'merged'.

        Returns:
            True if the entity was live and is now tombstoned.
        """
        status_clause = ", status = :status" if self._table.has_status else ""
        result = self._conn.execute(
            text(
                f"""
                UPDATE {self._table.table}
                SET merged_into_id = :merged_into_id, merged_at = :merged_at{status_clause}
                WHERE {self._table.id_column} = :entity_id AND merged_into_id IS NULL
                """
            ),
            {
                "entity_id": entity_id,
                "merged_into_id": merged_into_id,
                "merged_at": merged_at,
                "status": FamilyStatus.MERGED.value,
            },
        )
        return result.rowcount > 0

    def untombstone(self, entity_id: str, status: str | None = None) -> bool:
        """Clear the tombstone on an entity.

        Args:
            entity_id: Entity identifier.
            status: Family status to restore (families only).

        Returns:
            True if a tombstoned entity was restored.
        """
        status_clause = ""
        params: dict[str, Any] = {"entity_id": entity_id}
        if self._table.has_status:
            status_clause = ", status = :status"
            params["status"] = status or FamilyStatus.ACTIVE.value

        result = self._conn.execute(
            text(
                f"""
                UPDATE {self._table.table}
                SET merged_into_id = NULL, merged_at = NULL{status_clause}
                WHERE {self._table.id_column} = :entity_id AND merged_into_id IS NOT NULL
                """
            ),
            params,
        )
        return result.rowcount > 0

    def _row_to_entity(self, row: Any) -> Entity:
        """Convert database row mapping to Entity."""
        return Entity(
            entity_id=str(row["entity_id"]),
            entity_type=self._entity_type,
            family_id=str(row["family_id"]),
            fields={name: row[name] for name in self._fields},
            status=row["status"] if self._table.has_status else None,
            merged_into_id=row["merged_into_id"],
            merged_at=row["merged_at"],
            created_at=row["created_at"],
        )
