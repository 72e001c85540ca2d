"""Entity model for mergeable person and family records.

The merge engine is entity-type-parametric: every entity type declares a closed
set of mergeable field names so conflict detection and field diffs stay exhaustive.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class EntityType(StrEnum):
    """Kind of record that can take part in a merge."""

    PERSON = "person"
    FAMILY = "family"


class PersonField(StrEnum):
    """Mergeable fields of a person record."""

    GIVEN_NAME = "given_name"
    MIDDLE_NAME = "middle_name"
    SURNAME = "surname"
    FULL_NAME = "full_name"
    GENDER = "gender"
    BIRTH_DATE = "birth_date"
    BIRTH_PLACE = "birth_place"
    DEATH_DATE = "death_date"
    DEATH_PLACE = "death_place"
    BIO = "bio"
    NOTES = "notes"


class FamilyField(StrEnum):
    """Mergeable fields of a family record."""

    NAME = "name"
    DESCRIPTION = "description"
    LOCALE = "locale"
    TIMEZONE = "timezone"


class FamilyStatus(StrEnum):
    """Lifecycle status of a family (the parent aggregate)."""

    ACTIVE = "active"
    PROVISIONAL = "provisional"
    VERIFIED = "verified"
    ARCHIVED = "archived"
    MERGED = "merged"


MERGEABLE_FAMILY_STATUSES = frozenset({FamilyStatus.ACTIVE, FamilyStatus.PROVISIONAL})

_FIELDS_BY_TYPE: dict[EntityType, type[StrEnum]] = {
    EntityType.PERSON: PersonField,
    EntityType.FAMILY: FamilyField,
}


def mergeable_fields(entity_type: EntityType) -> tuple[str, ...]:
    """Return the mergeable field names for an entity type, in declaration order."""
    return tuple(member.value for member in _FIELDS_BY_TYPE[entity_type])


class Entity(BaseModel):
    """A person or family record as seen by the merge engine.

    A family's parent aggregate is itself, so family_id == entity_id for families.
    """

    entity_id: str = Field(..., description="Opaque entity identifier")
    entity_type: EntityType
    family_id: str = Field(..., description="Owning family identifier")
    fields: dict[str, str | None] = Field(default_factory=dict)
    status: str | None = Field(default=None, description="Family status (families only)")
    merged_into_id: str | None = None
    merged_at: str | None = None
    created_at: str | None = None

    @property
    def is_tombstoned(self) -> bool:
        """True once the entity has been merged away into another record."""
        return self.merged_into_id is not None


def is_empty(value: str | None) -> bool:
    """A field value counts as empty when it is None or only whitespace."""
    return value is None or not value.strip()
