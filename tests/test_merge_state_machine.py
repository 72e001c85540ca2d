"""Tests for the merge proposal lifecycle.

Covers:
- propose: snapshot capture, pair uniqueness, validation of the pair
- accept / reject: legal and illegal transitions, audit events
- proposal expiry: expired proposals cannot be accepted; expire_stale frees the pair
- listing with status filter and cursor pagination
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from kinmerge.models.merge_proposal import ProposalStatus, can_transition
from kinmerge.persistence.repositories.proposals import ProposalsRepository
from kinmerge.services.merge.errors import ConflictError, InvalidStateError, NotFoundError

EXPECTED_COUNTS = {
    "entity_links": 2,
    "relationships.from": 1,
    "relationships.to": 1,
    "person_user_links": 1,
}


class TestTransitionTable:
    """The allowed-transition table itself."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("pending", "accepted"),
            ("pending", "rejected"),
            ("accepted", "executed"),
            ("accepted", "failed"),
        ],
    )
    def test_allowed_transitions(self, current: str, target: str) -> None:
        """Only the four lifecycle edges are allowed."""
        assert can_transition(current, target) is True

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("pending", "executed"),
            ("accepted", "rejected"),
            ("rejected", "pending"),
            ("executed", "failed"),
            ("failed", "accepted"),
        ],
    )
    def test_disallowed_transitions(self, current: str, target: str) -> None:
        """Terminal states have no exits and no state skips a step."""
        assert can_transition(current, target) is False


class TestPropose:
    """Creating proposals."""

    def test_propose_creates_pending_proposal_with_snapshot(
        self, service, seeded_family, propose_input
    ) -> None:
        """A new proposal is pending and carries the affected-record counts."""
        proposal = service.propose(propose_input())

        assert proposal.status == ProposalStatus.PENDING
        assert proposal.source_id == seeded_family.source_id
        assert proposal.target_id == seeded_family.target_id
        assert proposal.analysis_snapshot is not None
        assert dict(proposal.analysis_snapshot.affected_counts) == EXPECTED_COUNTS
        assert proposal.analysis_snapshot.total_affected == 5
        assert proposal.expires_at == "2026-03-31T12:00:00.000000Z"

        stored = service.get(proposal.proposal_id)
        assert stored.analysis_snapshot == proposal.analysis_snapshot

    def test_propose_emits_audit_event(
        self, service, audit_sink, seeded_family, propose_input
    ) -> None:
        """merge.proposed carries ids, family and a 0-100 risk score."""
        proposal = service.propose(propose_input(request_id="req-123"))

        events = audit_sink.of_type("merge.proposed")
        assert len(events) == 1
        event = events[0]
        assert event["entity_id"] == seeded_family.target_id
        assert event["actor_id"] == "curator-1"
        assert event["family_id"] == seeded_family.family_id
        assert event["risk_score"] == 80.0
        assert event["request_id"] == "req-123"
        assert event["details"]["proposal_id"] == proposal.proposal_id
        assert event["details"]["affected_records"] == 5

    def test_second_proposal_for_same_pair_conflicts(
        self, service, seeded_family, propose_input
    ) -> None:
        """Two proposals for one pair while the first is pending: one Conflict."""
        first = service.propose(propose_input())

        with pytest.raises(ConflictError) as exc_info:
            service.propose(propose_input())

        assert exc_info.value.details["proposal_id"] == first.proposal_id

    def test_reversed_pair_also_conflicts(self, service, seeded_family, propose_input) -> None:
        """Pair uniqueness ignores direction."""
        service.propose(propose_input())

        with pytest.raises(ConflictError):
            service.propose(
                propose_input(source_id=seeded_family.target_id, target_id=seeded_family.source_id)
            )

    def test_pair_index_rejects_second_open_proposal(
        self, service, engine, seeded_family, propose_input, monkeypatch
    ) -> None:
        """Without the open-pair lookup the unique pair index still admits one proposal."""
        monkeypatch.setattr(
            ProposalsRepository, "find_open_for_pair", lambda self, *args, **kwargs: None
        )
        service.propose(propose_input())

        with pytest.raises(ConflictError) as exc_info:
            service.propose(
                propose_input(source_id=seeded_family.target_id, target_id=seeded_family.source_id)
            )

        assert exc_info.value.details == {
            "source_id": seeded_family.target_id,
            "target_id": seeded_family.source_id,
        }
        with engine.begin() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM merge_proposals")).scalar()
        assert count == 1

    def test_accepted_proposal_still_blocks_pair(
        self, service, seeded_family, propose_input
    ) -> None:
        """An accepted proposal is still open."""
        proposal = service.propose(propose_input())
        service.accept(proposal.proposal_id, "reviewer-1")

        with pytest.raises(ConflictError):
            service.propose(propose_input())

    def test_self_merge_is_invalid(self, service, seeded_family, propose_input) -> None:
        """An entity cannot be merged into itself."""
        with pytest.raises(InvalidStateError):
            service.propose(propose_input(source_id=seeded_family.target_id))

    def test_missing_entity_is_not_found(self, service, seeded_family, propose_input) -> None:
        """Unknown ids fail with NotFound and create nothing."""
        with pytest.raises(NotFoundError):
            service.propose(propose_input(source_id="person-missing"))

        proposals, _ = service.list()
        assert proposals == []

    def test_archived_family_is_invalid(
        self, service, engine, seeded_family, propose_input
    ) -> None:
        """Only active or provisional families take part in merges."""
        with engine.begin() as conn:
            conn.execute(
                text("UPDATE families SET status = 'archived' WHERE family_id = :id"),
                {"id": seeded_family.family_id},
            )

        with pytest.raises(InvalidStateError) as exc_info:
            service.propose(propose_input())

        assert exc_info.value.details["status"] == "archived"

    def test_invalid_proposal_type_rejected(self, propose_input) -> None:
        """proposal_type is manual or automated."""
        with pytest.raises(ValueError):
            propose_input(proposal_type="bulk")


class TestAcceptReject:
    """Reviewing proposals."""

    def test_accept_moves_to_accepted(
        self, service, audit_sink, seeded_family, propose_input
    ) -> None:
        """Accept records the reviewer and emits merge.accepted."""
        proposal = service.propose(propose_input())

        accepted = service.accept(proposal.proposal_id, "reviewer-1")

        assert accepted.status == ProposalStatus.ACCEPTED
        assert accepted.reviewed_by == "reviewer-1"
        assert accepted.reviewed_at == "2026-03-01T12:00:00.000000Z"
        assert accepted.analysis_snapshot == proposal.analysis_snapshot
        assert len(audit_sink.of_type("merge.accepted")) == 1

    def test_accept_twice_is_invalid(self, service, seeded_family, propose_input) -> None:
        """Only pending proposals can be accepted."""
        proposal = service.propose(propose_input())
        service.accept(proposal.proposal_id, "reviewer-1")

        with pytest.raises(InvalidStateError) as exc_info:
            service.accept(proposal.proposal_id, "reviewer-2")

        assert exc_info.value.details["status"] == "accepted"

    def test_accept_unknown_proposal_is_not_found(self, service) -> None:
        """Unknown proposal ids fail with NotFound."""
        with pytest.raises(NotFoundError):
            service.accept("no-such-proposal", "reviewer-1")

    def test_reject_records_reason_and_frees_pair(
        self, service, audit_sink, seeded_family, propose_input
    ) -> None:
        """A rejected proposal is terminal and no longer blocks its pair."""
        proposal = service.propose(propose_input())

        rejected = service.reject(proposal.proposal_id, "reviewer-1", reason="different people")

        assert rejected.status == ProposalStatus.REJECTED
        assert rejected.review_reason == "different people"
        assert rejected.is_terminal
        assert audit_sink.of_type("merge.rejected")[0]["details"]["review_reason"] == (
            "different people"
        )

        again = service.propose(propose_input())
        assert again.status == ProposalStatus.PENDING

    def test_reject_after_accept_is_invalid(self, service, seeded_family, propose_input) -> None:
        """accepted -> rejected is not a transition."""
        proposal = service.propose(propose_input())
        service.accept(proposal.proposal_id, "reviewer-1")

        with pytest.raises(InvalidStateError):
            service.reject(proposal.proposal_id, "reviewer-1")

        assert service.get(proposal.proposal_id).status == ProposalStatus.ACCEPTED


class TestExpiry:
    """Proposal TTL handling."""

    def test_expired_proposal_cannot_be_accepted(
        self, service, clock, seeded_family, propose_input
    ) -> None:
        """Accepting after expires_at fails and leaves the proposal pending."""
        proposal = service.propose(propose_input())
        clock.advance(days=31)

        with pytest.raises(InvalidStateError) as exc_info:
            service.accept(proposal.proposal_id, "reviewer-1")

        assert exc_info.value.details["expires_at"] == proposal.expires_at
        assert service.get(proposal.proposal_id).status == ProposalStatus.PENDING

    def test_expire_stale_rejects_expired_pending(
        self, service, clock, audit_sink, seeded_family, propose_input
    ) -> None:
        """expire_stale rejects with reason 'expired' and frees the pair."""
        proposal = service.propose(propose_input())
        clock.advance(days=30, seconds=1)

        expired = service.expire_stale()

        assert [p.proposal_id for p in expired] == [proposal.proposal_id]
        stored = service.get(proposal.proposal_id)
        assert stored.status == ProposalStatus.REJECTED
        assert stored.review_reason == "expired"
        assert stored.reviewed_by == "system:proposal-expiry"
        assert len(audit_sink.of_type("merge.expired")) == 1

        assert service.expire_stale() == []
        service.propose(propose_input())

    def test_expire_stale_ignores_live_and_accepted(
        self, service, clock, seeded_family, propose_input
    ) -> None:
        """Proposals inside their TTL, and accepted ones, are untouched."""
        accepted = service.propose(propose_input())
        service.accept(accepted.proposal_id, "reviewer-1")
        live = service.propose(
            propose_input(source_id=seeded_family.child_id, target_id=seeded_family.parent_id)
        )
        clock.advance(days=29)

        assert service.expire_stale() == []
        assert service.get(live.proposal_id).status == ProposalStatus.PENDING
        assert service.get(accepted.proposal_id).status == ProposalStatus.ACCEPTED


class TestListProposals:
    """Listing proposals."""

    def test_list_filters_and_paginates(self, service, seeded_family, propose_input) -> None:
        """Cursor pagination walks every proposal exactly once."""
        created = [
            service.propose(propose_input()),
            service.propose(
                propose_input(source_id=seeded_family.child_id, target_id=seeded_family.parent_id)
            ),
            service.propose(
                propose_input(source_id=seeded_family.child_id, target_id=seeded_family.target_id)
            ),
        ]
        service.accept(created[0].proposal_id, "reviewer-1")

        first_page, cursor = service.list(limit=2)
        assert len(first_page) == 2
        assert cursor is not None
        second_page, next_cursor = service.list(limit=2, cursor=cursor)
        assert next_cursor is None

        seen = {p.proposal_id for p in first_page + second_page}
        assert seen == {p.proposal_id for p in created}

        accepted, _ = service.list(status=ProposalStatus.ACCEPTED)
        assert [p.proposal_id for p in accepted] == [created[0].proposal_id]
