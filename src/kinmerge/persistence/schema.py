"""DDL for the kinmerge store.

The statements are written in the SQL subset shared by PostgreSQL and SQLite so
the same schema backs production and the test suite. The alembic migration
0001_merge_foundation executes exactly these statements.

Pair uniqueness for candidates and open proposals is enforced by partial unique
indexes over the ordered pair columns (pair_low, pair_high).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

# Domain tables owned by the surrounding product. The merge engine reads and
# repoints them but never creates or deletes rows.
DOMAIN_TABLES: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS families (
        family_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        locale TEXT,
        timezone TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        merged_into_id TEXT,
        merged_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS people (
        person_id TEXT PRIMARY KEY,
        family_id TEXT NOT NULL,
        given_name TEXT,
        middle_name TEXT,
        surname TEXT,
        full_name TEXT,
        gender TEXT,
        birth_date TEXT,
        birth_place TEXT,
        death_date TEXT,
        death_place TEXT,
        bio TEXT,
        notes TEXT,
        merged_into_id TEXT,
        merged_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        member_id TEXT PRIMARY KEY,
        family_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stories (
        story_id TEXT PRIMARY KEY,
        family_id TEXT NOT NULL,
        title TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS media (
        media_id TEXT PRIMARY KEY,
        family_id TEXT NOT NULL,
        file_name TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entity_links (
        link_id TEXT PRIMARY KEY,
        family_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        source_type TEXT NOT NULL,
        source_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS relationships (
        relationship_id TEXT PRIMARY KEY,
        family_id TEXT NOT NULL,
        from_person_id TEXT NOT NULL,
        to_person_id TEXT NOT NULL,
        relationship_type TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS person_user_links (
        link_id TEXT PRIMARY KEY,
        person_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
)

MERGE_TABLES: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS entity_signals (
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        family_id TEXT,
        name_slug TEXT NOT NULL,
        risk_score INTEGER NOT NULL DEFAULT 0,
        candidate_ids TEXT NOT NULL DEFAULT '[]',
        last_computed_at TEXT NOT NULL,
        PRIMARY KEY (entity_type, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS duplicate_candidates (
        candidate_id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        family_id TEXT,
        entity_a_id TEXT NOT NULL,
        entity_b_id TEXT NOT NULL,
        pair_low TEXT NOT NULL,
        pair_high TEXT NOT NULL,
        confidence_score REAL NOT NULL,
        match_reasons TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'pending',
        reviewed_by TEXT,
        reviewed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_duplicate_candidates_open_pair
    ON duplicate_candidates (entity_type, pair_low, pair_high)
    WHERE status <> 'dismissed'
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_duplicate_candidates_score
    ON duplicate_candidates (status, confidence_score)
    """,
    """
    CREATE TABLE IF NOT EXISTS merge_proposals (
        proposal_id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        source_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        pair_low TEXT NOT NULL,
        pair_high TEXT NOT NULL,
        confidence_score REAL NOT NULL,
        reason TEXT NOT NULL,
        analysis_snapshot TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        proposed_by TEXT NOT NULL,
        proposal_type TEXT NOT NULL DEFAULT 'manual',
        reviewed_by TEXT,
        reviewed_at TEXT,
        review_reason TEXT,
        error_details TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        expires_at TEXT,
        executed_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_merge_proposals_open_pair
    ON merge_proposals (entity_type, pair_low, pair_high)
    WHERE status IN ('pending', 'accepted')
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_merge_proposals_status
    ON merge_proposals (status, expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS merge_records (
        merge_record_id TEXT PRIMARY KEY,
        proposal_id TEXT NOT NULL UNIQUE,
        entity_type TEXT NOT NULL,
        source_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        performed_by TEXT NOT NULL,
        performed_at TEXT NOT NULL,
        field_diff TEXT NOT NULL DEFAULT '{}',
        applied_fields TEXT NOT NULL DEFAULT '{}',
        reassigned_reference_counts TEXT NOT NULL DEFAULT '{}',
        source_family_status TEXT,
        undone BOOLEAN NOT NULL DEFAULT FALSE,
        undone_by TEXT,
        undone_at TEXT,
        undo_expires_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS merge_reference_moves (
        move_id TEXT PRIMARY KEY,
        merge_record_id TEXT NOT NULL,
        relation_type TEXT NOT NULL,
        row_id TEXT NOT NULL,
        action TEXT NOT NULL DEFAULT 'moved',
        row_data TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_merge_reference_moves_record
    ON merge_reference_moves (merge_record_id)
    """,
)

SCHEMA_STATEMENTS: tuple[str, ...] = DOMAIN_TABLES + MERGE_TABLES

DROP_ORDER: tuple[str, ...] = (
    "merge_reference_moves",
    "merge_records",
    "merge_proposals",
    "duplicate_candidates",
    "entity_signals",
    "person_user_links",
    "relationships",
    "entity_links",
    "media",
    "stories",
    "members",
    "people",
    "families",
)


def apply_schema(conn: Connection) -> None:
    """Create every kinmerge table and index if missing.

    Args:
        conn: SQLAlchemy connection inside a transaction.
    """
    for statement in SCHEMA_STATEMENTS:
        conn.execute(text(statement))
    logger.info("Applied kinmerge schema (%d statements)", len(SCHEMA_STATEMENTS))
