"""kinmerge testing utilities: seed helpers for domain tables."""

from kinmerge.testing.seed import (
    DEFAULT_CREATED_AT,
    seed_entity_link,
    seed_family,
    seed_media,
    seed_member,
    seed_person,
    seed_person_user_link,
    seed_relationship,
    seed_story,
)

__all__ = [
    "DEFAULT_CREATED_AT",
    "seed_entity_link",
    "seed_family",
    "seed_media",
    "seed_member",
    "seed_person",
    "seed_person_user_link",
    "seed_relationship",
    "seed_story",
]
