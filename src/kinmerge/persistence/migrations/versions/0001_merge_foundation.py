"""Merge foundation: domain tables, signals, candidates, proposals and merge records.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the tables the merge engine reads and writes:
- families, people and their dependent tables (members, stories, media,
  entity_links, relationships, person_user_links)
- entity_signals and duplicate_candidates (signal store output)
- merge_proposals with a partial unique index over open pairs
- merge_records and merge_reference_moves (undo provenance)
"""

from alembic import op

from kinmerge.persistence.schema import DROP_ORDER, SCHEMA_STATEMENTS

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Apply migration: create tables and indexes."""
    for statement in SCHEMA_STATEMENTS:
        op.execute(statement)


def downgrade() -> None:
    """Revert migration: drop every table in dependency order."""
    for table in DROP_ORDER:
        op.execute(f"DROP TABLE IF EXISTS {table}")
