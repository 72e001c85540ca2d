"""Tests for the collision detector and the bundled SQL signal store.

Covers proposal creation from high-risk candidates, threshold and batch limits,
skip-on-conflict, signal store failure, cancellation between candidates and the
run summary audit event.
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from kinmerge.models.duplicate_candidate import CandidateStatus, DuplicateCandidate
from kinmerge.models.entity import EntityType
from kinmerge.models.merge_proposal import ProposalStatus
from kinmerge.persistence.repositories.signals import SignalStore, SqlSignalStore
from kinmerge.services.merge.detector import CollisionDetector
from kinmerge.services.merge.errors import ExternalDependencyError


class FakeSignalStore:
    """SignalStore returning fixed candidates."""

    def __init__(
        self,
        candidates: list[DuplicateCandidate],
        scanned: int = 4,
        fail: bool = False,
    ) -> None:
        self.candidates = candidates
        self.scanned = scanned
        self.fail = fail
        self.list_calls: list[tuple[float, int]] = []

    def recompute_signals(self) -> int:
        if self.fail:
            raise RuntimeError("signal store unavailable")
        return self.scanned

    def list_candidates(self, min_score: float, limit: int) -> list[DuplicateCandidate]:
        self.list_calls.append((min_score, limit))
        matching = [c for c in self.candidates if c.confidence_score >= min_score]
        return matching[:limit]


def _candidate(a: str, b: str, score: float, candidate_id: str | None = None) -> DuplicateCandidate:
    return DuplicateCandidate(
        candidate_id=candidate_id or f"cand-{a}-{b}",
        entity_type=EntityType.PERSON,
        family_id="fam-okafor",
        entity_a_id=a,
        entity_b_id=b,
        confidence_score=score,
        match_reasons=["name_similarity"],
        created_at="2026-02-01T00:00:00.000000Z",
    )


class TestCollisionDetector:
    """Detector runs against a fake signal store."""

    def test_fake_store_satisfies_protocol(self) -> None:
        """The detector only needs the SignalStore protocol."""
        assert isinstance(FakeSignalStore([]), SignalStore)

    def test_run_creates_automated_proposal(self, service, audit_sink, seeded_family) -> None:
        """A high-risk candidate becomes one pending automated proposal."""
        store = FakeSignalStore(
            [_candidate(seeded_family.source_id, seeded_family.target_id, 82.0)]
        )
        detector = CollisionDetector(service, store)

        summary = detector.run()

        assert summary.entities_scanned == 4
        assert summary.candidates_found == 1
        assert summary.proposals_created == 1
        assert summary.cancelled is False
        assert store.list_calls == [(50, 50)]

        proposals, _ = service.list(status=ProposalStatus.PENDING)
        assert len(proposals) == 1
        proposal = proposals[0]
        assert proposal.proposal_type == "automated"
        assert proposal.proposed_by == "system:collision-detector"
        assert proposal.confidence_score == 8.2
        # The more complete record survives.
        assert proposal.target_id == seeded_family.target_id
        assert proposal.source_id == seeded_family.source_id

        run_event = audit_sink.of_type("collision_detector.run")[0]
        assert run_event["details"]["proposals_created"] == 1

    def test_existing_open_proposal_is_skipped(
        self, service, seeded_family, propose_input
    ) -> None:
        """Pairs with an open proposal are counted as skipped, not failed."""
        service.propose(propose_input())
        store = FakeSignalStore(
            [_candidate(seeded_family.target_id, seeded_family.source_id, 90.0)]
        )

        summary = CollisionDetector(service, store).run()

        assert summary.proposals_created == 0
        assert summary.proposals_skipped == 1
        assert summary.proposals_failed == 0

    def test_candidate_for_missing_entity_counts_as_failed(
        self, service, seeded_family
    ) -> None:
        """One bad candidate does not stop the run."""
        store = FakeSignalStore(
            [
                _candidate("person-gone", seeded_family.target_id, 95.0),
                _candidate(seeded_family.source_id, seeded_family.target_id, 82.0),
            ]
        )

        summary = CollisionDetector(service, store).run()

        assert summary.proposals_failed == 1
        assert summary.proposals_created == 1

    def test_threshold_and_batch_size_are_passed_through(self, service, seeded_family) -> None:
        """Explicit threshold and batch size override the settings."""
        store = FakeSignalStore([])

        CollisionDetector(service, store, threshold=75, batch_size=10).run()

        assert store.list_calls == [(75, 10)]

    def test_signal_store_failure_creates_nothing(self, service, seeded_family) -> None:
        """A failing store raises ExternalDependencyError before any proposal."""
        store = FakeSignalStore(
            [_candidate(seeded_family.source_id, seeded_family.target_id, 82.0)], fail=True
        )

        with pytest.raises(ExternalDependencyError) as exc_info:
            CollisionDetector(service, store).run()

        assert exc_info.value.http_status == 502
        proposals, _ = service.list()
        assert proposals == []

    def test_cancel_stops_between_candidates(
        self, service, seeded_family, monkeypatch
    ) -> None:
        """Cancelling mid-run keeps finished proposals and skips the rest."""
        store = FakeSignalStore(
            [
                _candidate(seeded_family.source_id, seeded_family.target_id, 90.0),
                _candidate(seeded_family.child_id, seeded_family.parent_id, 80.0),
            ]
        )
        detector = CollisionDetector(service, store)
        original_propose = service.propose

        def propose_then_cancel(input_data):
            proposal = original_propose(input_data)
            detector.cancel()
            return proposal

        monkeypatch.setattr(service, "propose", propose_then_cancel)

        summary = detector.run()

        assert summary.cancelled is True
        assert summary.proposals_created == 1
        proposals, _ = service.list()
        assert len(proposals) == 1

    def test_cancel_is_cleared_after_run(self, service, seeded_family) -> None:
        """A cancelled run does not cancel the next one."""
        store = FakeSignalStore(
            [_candidate(seeded_family.source_id, seeded_family.target_id, 90.0)]
        )
        detector = CollisionDetector(service, store)

        detector.cancel()
        first = detector.run()
        second = detector.run()

        assert first.cancelled is True
        assert first.proposals_created == 0
        assert second.cancelled is False
        assert second.proposals_created == 1


class TestSqlSignalStore:
    """The bundled signal store over the kinmerge tables."""

    def test_recompute_finds_seeded_duplicate(self, engine, seeded_family) -> None:
        """The duplicated person is the only candidate pair."""
        store = SqlSignalStore(engine)

        scanned = store.recompute_signals()
        candidates = store.list_candidates(min_score=50, limit=10)

        assert scanned == 5
        assert len(candidates) == 1
        candidate = candidates[0]
        assert {candidate.entity_a_id, candidate.entity_b_id} == {
            seeded_family.source_id,
            seeded_family.target_id,
        }
        assert "same_birth_date" in candidate.match_reasons
        assert "same_family" in candidate.match_reasons

        with engine.begin() as conn:
            risk = conn.execute(
                text(
                    "SELECT risk_score FROM entity_signals "
                    "WHERE entity_type = 'person' AND entity_id = :id"
                ),
                {"id": seeded_family.source_id},
            ).scalar()
        assert risk == int(candidate.confidence_score)

    def test_recompute_is_idempotent(self, engine, seeded_family) -> None:
        """Recomputing refreshes the existing candidate instead of adding one."""
        store = SqlSignalStore(engine)
        store.recompute_signals()
        store.recompute_signals()

        with engine.begin() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM duplicate_candidates")).scalar()
        assert count == 1

    def test_dismissed_pair_stays_dismissed(self, service, engine, seeded_family) -> None:
        """A dismissal survives later recomputation."""
        store = SqlSignalStore(engine)
        store.recompute_signals()
        candidate = store.list_candidates(min_score=0, limit=10)[0]

        dismissed = service.dismiss_candidate(candidate.candidate_id, "reviewer-1")
        store.recompute_signals()

        assert dismissed.status == CandidateStatus.DISMISSED
        assert store.list_candidates(min_score=0, limit=10) == []

    def test_end_to_end_detection(self, service, engine, seeded_family) -> None:
        """Detector plus SQL store proposes the seeded duplicate."""
        summary = CollisionDetector(service, SqlSignalStore(engine)).run()

        assert summary.proposals_created == 1
        proposals, _ = service.list()
        assert proposals[0].target_id == seeded_family.target_id
