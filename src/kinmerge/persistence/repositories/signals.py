"""Signal store: per-entity fuzzy-match features and the candidate pairs they yield.

The collision detector only depends on the SignalStore protocol. SqlSignalStore
is the bundled implementation: it scores every pair of live entities of a type
with the rapidfuzz-based scorer and writes one entity_signals row per entity plus
a duplicate candidate per pair at or above min_candidate_score.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from itertools import combinations
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy import text

from kinmerge.models.duplicate_candidate import DuplicateCandidate
from kinmerge.models.entity import MERGEABLE_FAMILY_STATUSES, Entity, EntityType
from kinmerge.persistence.repositories.candidates import CandidatesRepository
from kinmerge.persistence.repositories.entities import EntityRepository
from kinmerge.services.merge.matching import display_name, name_slug, score_pair

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

DEFAULT_MIN_CANDIDATE_SCORE = 30


@runtime_checkable
class SignalStore(Protocol):
    """Read interface the collision detector polls."""

    def recompute_signals(self) -> int:
        """Refresh per-entity signals and candidate pairs.

        Returns:
            Number of entities scanned.
        """
        ...

    def list_candidates(self, min_score: float, limit: int) -> list[DuplicateCandidate]:
        """Return pending candidates with score >= min_score, highest first."""
        ...


class SqlSignalStore:
    """SignalStore backed by the kinmerge tables."""

    def __init__(
        self,
        engine: Engine,
        entity_types: tuple[EntityType, ...] = (EntityType.PERSON, EntityType.FAMILY),
        min_candidate_score: int = DEFAULT_MIN_CANDIDATE_SCORE,
    ) -> None:
        """Initialize the store.

        Args:
            engine: SQLAlchemy engine; each call runs in its own transaction.
            entity_types: Entity types to scan.
            min_candidate_score: Lowest pair score recorded as a candidate.
        """
        self._engine = engine
        self._entity_types = entity_types
        self._min_candidate_score = min_candidate_score

    def recompute_signals(self) -> int:
        """Score all live entity pairs and persist signals and candidates."""
        now = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        scanned = 0

        with self._engine.begin() as conn:
            for entity_type in self._entity_types:
                entities = self._mergeable_entities(conn, entity_type)
                scanned += len(entities)
                self._recompute_type(conn, entity_type, entities, now)

        logger.info("Recomputed signals for %d entities", scanned)
        return scanned

    def list_candidates(self, min_score: float, limit: int) -> list[DuplicateCandidate]:
        """Return pending candidates with score >= min_score, highest first."""
        with self._engine.begin() as conn:
            return CandidatesRepository(conn).list(min_score=min_score, limit=limit)

    def _mergeable_entities(self, conn: Connection, entity_type: EntityType) -> list[Entity]:
        repo = EntityRepository(conn, entity_type)
        status_cache: dict[str, str | None] = {}
        result: list[Entity] = []
        for entity in repo.list_active():
            if entity.family_id not in status_cache:
                status_cache[entity.family_id] = repo.get_family_status(entity.family_id)
            if status_cache[entity.family_id] in MERGEABLE_FAMILY_STATUSES:
                result.append(entity)
        return result

    def _recompute_type(
        self,
        conn: Connection,
        entity_type: EntityType,
        entities: list[Entity],
        now: str,
    ) -> None:
        candidates_repo = CandidatesRepository(conn)
        risk: dict[str, int] = {entity.entity_id: 0 for entity in entities}
        related: dict[str, list[str]] = {entity.entity_id: [] for entity in entities}

        for a, b in combinations(entities, 2):
            score, reasons = score_pair(a, b)
            if score < self._min_candidate_score:
                continue

            risk[a.entity_id] = max(risk[a.entity_id], score)
            risk[b.entity_id] = max(risk[b.entity_id], score)
            related[a.entity_id].append(b.entity_id)
            related[b.entity_id].append(a.entity_id)

            candidates_repo.upsert(
                entity_type=entity_type.value,
                family_id=a.family_id if a.family_id == b.family_id else None,
                entity_a_id=a.entity_id,
                entity_b_id=b.entity_id,
                confidence_score=float(score),
                match_reasons=reasons,
                now=now,
            )

        conn.execute(
            text("DELETE FROM entity_signals WHERE entity_type = :entity_type"),
            {"entity_type": entity_type.value},
        )
        if not entities:
            return

        conn.execute(
            text(
                """
                INSERT INTO entity_signals (
                    entity_type, entity_id, family_id, name_slug, risk_score,
                    candidate_ids, last_computed_at
                ) VALUES (
                    :entity_type, :entity_id, :family_id, :name_slug, :risk_score,
                    :candidate_ids, :now
                )
                """
            ),
            [
                {
                    "entity_type": entity_type.value,
                    "entity_id": entity.entity_id,
                    "family_id": entity.family_id,
                    "name_slug": name_slug(display_name(entity), entity_type),
                    "risk_score": risk[entity.entity_id],
                    "candidate_ids": json.dumps(sorted(related[entity.entity_id])),
                    "now": now,
                }
                for entity in entities
            ],
        )
