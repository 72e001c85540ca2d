"""Pytest configuration and fixtures for kinmerge tests.

Every test gets a fresh in-memory SQLite database with the kinmerge schema
applied, an in-memory audit sink and a controllable clock.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine

from kinmerge.audit.sink import InMemoryAuditSink
from kinmerge.models.entity import EntityType
from kinmerge.persistence.db import create_engine_for_url
from kinmerge.persistence.schema import apply_schema
from kinmerge.services.merge.config import MergeSettings
from kinmerge.services.merge.service import MergeProposalService, ProposeMergeInput
from kinmerge.testing import (
    seed_entity_link,
    seed_family,
    seed_person,
    seed_person_user_link,
    seed_relationship,
)

FAMILY_ID = "fam-okafor"
TARGET_ID = "person-ngozi"
SOURCE_ID = "person-ngozi-dup"
CHILD_ID = "person-chidi"
PARENT_ID = "person-emeka"


class FakeClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass(frozen=True)
class SeededFamily:
    """Ids of the rows created by the seeded_family fixture."""

    family_id: str
    target_id: str
    source_id: str
    child_id: str
    parent_id: str


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory SQLite engine with the kinmerge schema applied."""
    engine = create_engine_for_url("sqlite://")
    with engine.begin() as conn:
        apply_schema(conn)
    yield engine
    engine.dispose()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    """Provide in-memory audit sink for testing."""
    return InMemoryAuditSink()


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at 2026-03-01T12:00:00Z."""
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def service(
    engine: Engine, audit_sink: InMemoryAuditSink, clock: FakeClock
) -> MergeProposalService:
    """MergeProposalService with default settings on the test engine."""
    return MergeProposalService(
        engine, audit_sink=audit_sink, settings=MergeSettings(), clock=clock
    )


@pytest.fixture
def seeded_family(engine: Engine) -> SeededFamily:
    """One family holding a duplicated person and two relatives.

    The duplicate (source) carries two story links, one relationship in each
    direction and one user claim. The canonical (target) is the more complete
    record; the duplicate adds a middle name and gender.
    """
    with engine.begin() as conn:
        seed_family(conn, name="Okafor Family", family_id=FAMILY_ID, locale="en-NG")
        seed_person(
            conn,
            FAMILY_ID,
            person_id=TARGET_ID,
            given_name="Ngozi",
            surname="Okafor",
            full_name="Ngozi Okafor",
            birth_date="1950-03-02",
            birth_place="Enugu",
            bio="Taught mathematics in Enugu for thirty years.",
        )
        seed_person(
            conn,
            FAMILY_ID,
            person_id=SOURCE_ID,
            given_name="Ngozi",
            middle_name="Adaeze",
            surname="Okafor",
            gender="female",
            birth_date="1950-03-02",
        )
        seed_person(
            conn,
            FAMILY_ID,
            person_id=CHILD_ID,
            given_name="Chidi",
            surname="Okafor",
            birth_date="1975-06-10",
        )
        seed_person(
            conn,
            FAMILY_ID,
            person_id=PARENT_ID,
            given_name="Emeka",
            surname="Nwosu",
            birth_date="1921-11-30",
        )
        seed_entity_link(conn, FAMILY_ID, SOURCE_ID, source_type="story")
        seed_entity_link(conn, FAMILY_ID, SOURCE_ID, source_type="media")
        seed_entity_link(conn, FAMILY_ID, TARGET_ID, source_type="story")
        seed_relationship(conn, FAMILY_ID, SOURCE_ID, CHILD_ID, "parent")
        seed_relationship(conn, FAMILY_ID, PARENT_ID, SOURCE_ID, "parent")
        seed_person_user_link(conn, SOURCE_ID, user_id="user-ngozi")

    return SeededFamily(
        family_id=FAMILY_ID,
        target_id=TARGET_ID,
        source_id=SOURCE_ID,
        child_id=CHILD_ID,
        parent_id=PARENT_ID,
    )


def make_propose_input(
    source_id: str = SOURCE_ID,
    target_id: str = TARGET_ID,
    entity_type: EntityType = EntityType.PERSON,
    **overrides: object,
) -> ProposeMergeInput:
    """Build a ProposeMergeInput with sensible defaults."""
    values: dict[str, object] = {
        "source_id": source_id,
        "target_id": target_id,
        "entity_type": entity_type,
        "confidence_score": 8.0,
        "reason": "same name and birth date",
        "proposed_by": "curator-1",
    }
    values.update(overrides)
    return ProposeMergeInput(**values)  # type: ignore[arg-type]


@pytest.fixture
def propose_input() -> Callable[..., ProposeMergeInput]:
    """Factory for ProposeMergeInput values targeting the seeded pair."""
    return make_propose_input
