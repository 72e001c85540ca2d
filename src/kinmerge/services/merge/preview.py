"""Preview/diff engine.

Computes what a merge would produce without writing anything: the merged field
set, field-level conflicts and how many dependent rows reference the duplicate.

Field policy: the canonical value wins; an empty canonical field adopts the
duplicate's value. Two different non-empty values on a conflict-sensitive field
are reported as a FieldConflict, resolved to the canonical value unless the
caller supplies an override.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kinmerge.models.entity import (
    MERGEABLE_FAMILY_STATUSES,
    Entity,
    EntityType,
    is_empty,
    mergeable_fields,
)
from kinmerge.models.merge_preview import MergePreview
from kinmerge.models.merge_proposal import AnalysisSnapshot, FieldConflict
from kinmerge.persistence.repositories.entities import EntityRepository
from kinmerge.services.merge.errors import InvalidStateError, NotFoundError
from kinmerge.services.merge.policy import DEFAULT_CONFLICT_POLICY, ConflictPolicy

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)


def validate_overrides(entity_type: EntityType, overrides: dict[str, str | None] | None) -> None:
    """Reject overrides naming fields outside the entity type's mergeable set.

    Raises:
        InvalidStateError: If any override field is unknown.
    """
    if not overrides:
        return
    unknown = sorted(set(overrides) - set(mergeable_fields(entity_type)))
    if unknown:
        raise InvalidStateError(
            f"Unknown {entity_type} fields in overrides: {unknown}",
            {"fields": unknown},
        )


def compute_merged_fields(
    entity_type: EntityType,
    canonical: dict[str, str | None],
    duplicate: dict[str, str | None],
    policy: ConflictPolicy = DEFAULT_CONFLICT_POLICY,
    overrides: dict[str, str | None] | None = None,
) -> tuple[dict[str, str | None], list[FieldConflict]]:
    """Apply the field policy to two field sets.

    Args:
        entity_type: Entity type, selects the field set and sensitive fields.
        canonical: Canonical entity's current fields.
        duplicate: Duplicate entity's current fields.
        policy: Conflict-sensitive field policy.
        overrides: Explicit values that replace the policy outcome per field.

    Returns:
        Tuple of (merged fields, conflicts) with conflicts in field order.

    Raises:
        InvalidStateError: If overrides name unknown fields.
    """
    validate_overrides(entity_type, overrides)
    overrides = overrides or {}

    merged: dict[str, str | None] = {}
    conflicts: list[FieldConflict] = []

    for name in mergeable_fields(entity_type):
        canonical_value = canonical.get(name)
        duplicate_value = duplicate.get(name)

        if is_empty(canonical_value) and not is_empty(duplicate_value):
            value = duplicate_value
        else:
            value = canonical_value

        if (
            policy.is_sensitive(entity_type, name)
            and not is_empty(canonical_value)
            and not is_empty(duplicate_value)
            and canonical_value != duplicate_value
        ):
            conflicts.append(
                FieldConflict(
                    field=name,
                    canonical_value=canonical_value,
                    duplicate_value=duplicate_value,
                    resolution="override" if name in overrides else "canonical",
                )
            )

        merged[name] = overrides[name] if name in overrides else value

    return merged, conflicts


def load_merge_pair(
    repo: EntityRepository,
    source_id: str,
    target_id: str,
    check_family_status: bool = True,
) -> tuple[Entity, Entity]:
    """Load and validate the two sides of a merge.

    Args:
        repo: Entity repository for the merge's entity type.
        source_id: Duplicate entity id (disappears).
        target_id: Canonical entity id (survives).
        check_family_status: Require both owning families to be mergeable.

    Returns:
        Tuple of (source, target).

    Raises:
        InvalidStateError: If source == target, either entity is tombstoned or an
            owning family is not active/provisional.
        NotFoundError: If either entity or its family does not exist.
    """
    if source_id == target_id:
        raise InvalidStateError(
            "Cannot merge an entity into itself", {"source_id": source_id}
        )

    source = repo.get(source_id)
    if source is None:
        raise NotFoundError(repo.entity_type.value, source_id)
    target = repo.get(target_id)
    if target is None:
        raise NotFoundError(repo.entity_type.value, target_id)

    for entity in (source, target):
        if entity.is_tombstoned:
            raise InvalidStateError(
                f"{entity.entity_type} {entity.entity_id} has already been merged",
                {"entity_id": entity.entity_id, "merged_into_id": entity.merged_into_id},
            )

    if check_family_status:
        for entity in (source, target):
            status = repo.get_family_status(entity.family_id)
            if status is None:
                raise NotFoundError("family", entity.family_id)
            if status not in MERGEABLE_FAMILY_STATUSES:
                raise InvalidStateError(
                    f"Family {entity.family_id} is {status}; only active or provisional "
                    "families can take part in a merge",
                    {"family_id": entity.family_id, "status": status},
                )

    return source, target


def snapshot_from_preview(preview: MergePreview, captured_at: str) -> AnalysisSnapshot:
    """Freeze a preview's counts and conflicts into a proposal snapshot."""
    return AnalysisSnapshot(
        affected_counts=dict(preview.affected_counts),
        conflicts=tuple(preview.conflicts),
        captured_at=captured_at,
    )


class PreviewEngine:
    """Read-only merge previews over one connection."""

    def __init__(self, conn: Connection, policy: ConflictPolicy = DEFAULT_CONFLICT_POLICY) -> None:
        self._conn = conn
        self._policy = policy

    def preview(
        self,
        source_id: str,
        target_id: str,
        entity_type: EntityType,
        overrides: dict[str, str | None] | None = None,
    ) -> MergePreview:
        """Compute the prospective result of merging source into target.

        Args:
            source_id: Duplicate entity id.
            target_id: Canonical entity id.
            entity_type: Entity type of both ids.
            overrides: Optional explicit field values.

        Returns:
            MergePreview with merged fields, conflicts and affected counts.

        Raises:
            NotFoundError: If either entity does not exist.
            InvalidStateError: If the pair cannot be merged or overrides are invalid.
        """
        entity_type = EntityType(entity_type)
        validate_overrides(entity_type, overrides)

        repo = EntityRepository(self._conn, entity_type)
        source, target = load_merge_pair(repo, source_id, target_id, check_family_status=False)

        merged, conflicts = compute_merged_fields(
            entity_type, target.fields, source.fields, self._policy, overrides
        )

        return MergePreview(
            canonical=target,
            duplicate=source,
            merged_fields=merged,
            conflicts=conflicts,
            affected_counts=repo.count_references(source_id),
        )
