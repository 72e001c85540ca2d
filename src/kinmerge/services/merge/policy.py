"""Conflict-sensitive field policy.

When canonical and duplicate hold different non-empty values for one of these
fields the preview records a FieldConflict instead of silently keeping the
canonical value. The policy can be replaced from a YAML file shaped like:

    person:
      - birth_date
      - death_date
    family: []
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from kinmerge.models.entity import EntityType, mergeable_fields

logger = logging.getLogger(__name__)


class ConflictPolicyError(Exception):
    """Raised when a conflict policy file is missing or malformed."""


@dataclass(frozen=True)
class ConflictPolicy:
    """Conflict-sensitive fields per entity type."""

    sensitive_fields: dict[EntityType, frozenset[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Reject fields outside each entity type's mergeable set."""
        for entity_type, names in self.sensitive_fields.items():
            unknown = sorted(set(names) - set(mergeable_fields(entity_type)))
            if unknown:
                raise ConflictPolicyError(
                    f"Unknown {entity_type} fields in conflict policy: {unknown}"
                )

    def is_sensitive(self, entity_type: EntityType, field_name: str) -> bool:
        """True if a disagreement on field_name must be surfaced as a conflict."""
        return field_name in self.sensitive_fields.get(EntityType(entity_type), frozenset())

    @classmethod
    def from_yaml(cls, path: str | Path) -> ConflictPolicy:
        """Load a policy from a YAML file.

        Entity types absent from the file have no conflict-sensitive fields.

        Raises:
            ConflictPolicyError: If the file cannot be read or is malformed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConflictPolicyError(f"Failed to load conflict policy {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConflictPolicyError(f"Conflict policy {path} must be a mapping")

        sensitive: dict[EntityType, frozenset[str]] = {}
        for key, names in data.items():
            try:
                entity_type = EntityType(key)
            except ValueError as e:
                raise ConflictPolicyError(f"Unknown entity type in conflict policy: {key}") from e
            if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
                raise ConflictPolicyError(f"Conflict policy for {key} must be a list of fields")
            sensitive[entity_type] = frozenset(names)

        logger.info("Loaded conflict policy from %s", path)
        return cls(sensitive_fields=sensitive)


DEFAULT_CONFLICT_POLICY = ConflictPolicy(
    sensitive_fields={
        EntityType.PERSON: frozenset(
            {"birth_date", "birth_place", "death_date", "death_place", "gender"}
        ),
        EntityType.FAMILY: frozenset(),
    }
)


def load_conflict_policy(path: str | None) -> ConflictPolicy:
    """Return the policy at path, or the default policy when path is None."""
    if path is None:
        return DEFAULT_CONFLICT_POLICY
    return ConflictPolicy.from_yaml(path)
