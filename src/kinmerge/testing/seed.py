"""Seed helpers that insert domain rows for tests and local experiments.

Each helper inserts one row on an open connection and returns its id. Ids are
random uuids unless given; created_at defaults to a fixed instant so ordering in
tests is stable.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Connection

DEFAULT_CREATED_AT = "2026-01-01T00:00:00.000000Z"


def _new_id(value: str | None) -> str:
    return value or str(uuid.uuid4())


def _insert(conn: Connection, table: str, values: dict[str, Any]) -> None:
    columns = ", ".join(values)
    params = ", ".join(f":{name}" for name in values)
    conn.execute(text(f"INSERT INTO {table} ({columns}) VALUES ({params})"), values)


def seed_family(
    conn: Connection,
    name: str = "Okafor Family",
    family_id: str | None = None,
    status: str = "active",
    created_at: str = DEFAULT_CREATED_AT,
    **fields: str | None,
) -> str:
    """Insert a family; extra keyword args set description, locale or timezone."""
    family_id = _new_id(family_id)
    _insert(
        conn,
        "families",
        {
            "family_id": family_id,
            "name": name,
            "status": status,
            "created_at": created_at,
            **fields,
        },
    )
    return family_id


def seed_person(
    conn: Connection,
    family_id: str,
    person_id: str | None = None,
    created_at: str = DEFAULT_CREATED_AT,
    **fields: str | None,
) -> str:
    """Insert a person; keyword args set mergeable fields such as given_name."""
    person_id = _new_id(person_id)
    _insert(
        conn,
        "people",
        {
            "person_id": person_id,
            "family_id": family_id,
            "created_at": created_at,
            **fields,
        },
    )
    return person_id


def seed_member(conn: Connection, family_id: str, user_id: str = "user-1") -> str:
    """Insert a family membership row."""
    member_id = _new_id(None)
    _insert(
        conn,
        "members",
        {
            "member_id": member_id,
            "family_id": family_id,
            "user_id": user_id,
            "created_at": DEFAULT_CREATED_AT,
        },
    )
    return member_id


def seed_story(conn: Connection, family_id: str, title: str = "Harvest, 1962") -> str:
    """Insert a story owned by a family."""
    story_id = _new_id(None)
    _insert(
        conn,
        "stories",
        {
            "story_id": story_id,
            "family_id": family_id,
            "title": title,
            "created_at": DEFAULT_CREATED_AT,
        },
    )
    return story_id


def seed_media(conn: Connection, family_id: str, file_name: str = "portrait.jpg") -> str:
    """Insert a media item owned by a family."""
    media_id = _new_id(None)
    _insert(
        conn,
        "media",
        {
            "media_id": media_id,
            "family_id": family_id,
            "file_name": file_name,
            "created_at": DEFAULT_CREATED_AT,
        },
    )
    return media_id


def seed_entity_link(
    conn: Connection,
    family_id: str,
    person_id: str,
    source_type: str = "story",
    source_id: str | None = None,
) -> str:
    """Link a person to a story or media item."""
    link_id = _new_id(None)
    _insert(
        conn,
        "entity_links",
        {
            "link_id": link_id,
            "family_id": family_id,
            "entity_type": "person",
            "entity_id": person_id,
            "source_type": source_type,
            "source_id": _new_id(source_id),
            "created_at": DEFAULT_CREATED_AT,
        },
    )
    return link_id


def seed_relationship(
    conn: Connection,
    family_id: str,
    from_person_id: str,
    to_person_id: str,
    relationship_type: str = "parent",
) -> str:
    """Insert a relationship edge between two people."""
    relationship_id = _new_id(None)
    _insert(
        conn,
        "relationships",
        {
            "relationship_id": relationship_id,
            "family_id": family_id,
            "from_person_id": from_person_id,
            "to_person_id": to_person_id,
            "relationship_type": relationship_type,
            "created_at": DEFAULT_CREATED_AT,
        },
    )
    return relationship_id


def seed_person_user_link(conn: Connection, person_id: str, user_id: str = "user-1") -> str:
    """Claim a person record for a user account."""
    link_id = _new_id(None)
    _insert(
        conn,
        "person_user_links",
        {
            "link_id": link_id,
            "person_id": person_id,
            "user_id": user_id,
            "created_at": DEFAULT_CREATED_AT,
        },
    )
    return link_id
