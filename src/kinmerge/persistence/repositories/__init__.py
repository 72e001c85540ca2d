"""Persistence repositories for kinmerge.

Every repository wraps a SQLAlchemy connection that is already inside a
transaction and never commits on its own.
"""

from kinmerge.persistence.repositories.candidates import CandidatesRepository
from kinmerge.persistence.repositories.entities import (
    ENTITY_TABLES,
    RELATIONS,
    EntityRepository,
    RelationSpec,
    relations,
)
from kinmerge.persistence.repositories.merge_records import MergeRecordsRepository
from kinmerge.persistence.repositories.proposals import (
    OpenProposalExistsError,
    ProposalsRepository,
    ordered_pair,
)
from kinmerge.persistence.repositories.signals import SignalStore, SqlSignalStore

__all__ = [
    "CandidatesRepository",
    "ENTITY_TABLES",
    "EntityRepository",
    "MergeRecordsRepository",
    "OpenProposalExistsError",
    "ProposalsRepository",
    "RELATIONS",
    "RelationSpec",
    "SignalStore",
    "SqlSignalStore",
    "ordered_pair",
    "relations",
]
