"""Tests for the programmatic alembic migrations."""

from __future__ import annotations

import pytest
from sqlalchemy import inspect

from kinmerge.persistence.db import create_engine_for_url
from kinmerge.persistence.migrate import (
    get_current_revision,
    get_head_revision,
    run_downgrade,
    run_upgrade,
)

MERGE_TABLES = {
    "families",
    "people",
    "duplicate_candidates",
    "entity_signals",
    "merge_proposals",
    "merge_records",
    "merge_reference_moves",
}


@pytest.fixture
def file_engine(tmp_path):
    """Engine over an empty SQLite file."""
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'migrate.db'}")
    yield engine
    engine.dispose()


class TestMigrations:
    """Upgrade and downgrade of the merge schema."""

    def test_head_revision(self) -> None:
        assert get_head_revision() == "0001"

    def test_fresh_database_has_no_revision(self, file_engine) -> None:
        assert get_current_revision(file_engine) is None

    def test_upgrade_creates_tables(self, file_engine) -> None:
        run_upgrade(file_engine)

        assert get_current_revision(file_engine) == get_head_revision()
        tables = set(inspect(file_engine).get_table_names())
        assert MERGE_TABLES <= tables

    def test_upgrade_is_idempotent(self, file_engine) -> None:
        run_upgrade(file_engine)
        run_upgrade(file_engine)

        assert get_current_revision(file_engine) == "0001"

    def test_downgrade_drops_tables(self, file_engine) -> None:
        run_upgrade(file_engine)
        run_downgrade(file_engine)

        assert get_current_revision(file_engine) is None
        tables = set(inspect(file_engine).get_table_names())
        assert not (MERGE_TABLES & tables)
