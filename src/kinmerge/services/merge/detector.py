"""Collision detector: turns high-risk duplicate candidates into merge proposals.

A run refreshes the signal store, then walks the highest-scoring pending
candidates. Each candidate becomes at most one proposal, inserted in its own
transaction, so a failure or cancellation between candidates never leaves a
partial proposal behind.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from kinmerge.audit.sink import AuditSink, InMemoryAuditSink
from kinmerge.models.duplicate_candidate import DuplicateCandidate
from kinmerge.observability.tracing import traced
from kinmerge.services.merge.errors import (
    ConflictError,
    ExternalDependencyError,
    MergeError,
)
from kinmerge.services.merge.matching import choose_canonical
from kinmerge.services.merge.service import (
    MergeProposalService,
    ProposeMergeInput,
    build_audit_event,
    emit_audit_event,
)

if TYPE_CHECKING:
    from kinmerge.persistence.repositories.signals import SignalStore

logger = logging.getLogger(__name__)

DETECTOR_ACTOR = "system:collision-detector"
DETECTOR_REASON = "automated collision detection"


@dataclass
class RunSummary:
    """Outcome of one collision detector run."""

    entities_scanned: int = 0
    candidates_found: int = 0
    proposals_created: int = 0
    proposals_skipped: int = 0
    proposals_failed: int = 0
    cancelled: bool = False


class CollisionDetector:
    """Converts high-risk candidate pairs into pending merge proposals."""

    def __init__(
        self,
        service: MergeProposalService,
        signal_store: SignalStore,
        threshold: int | None = None,
        batch_size: int | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            service: Merge proposal service used to create proposals.
            signal_store: Source of fuzzy-match candidates.
            threshold: Minimum candidate score (0-100). Defaults to the service's
                high_risk_threshold setting.
            batch_size: Maximum candidates per run. Defaults to the service's
                detector_batch_size setting.
            audit_sink: Sink for the run summary event. Defaults to the service's.
        """
        self._service = service
        self._signal_store = signal_store
        self._threshold = (
            threshold if threshold is not None else service.settings.high_risk_threshold
        )
        self._batch_size = (
            batch_size if batch_size is not None else service.settings.detector_batch_size
        )
        self._audit_sink = audit_sink or service.audit_sink or InMemoryAuditSink()
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Ask a running (or the next) run to stop before its next candidate."""
        self._cancel_event.set()

    def run(self) -> RunSummary:
        """Run one detection pass.

        Returns:
            RunSummary with per-run counters.

        Raises:
            ExternalDependencyError: If the signal store fails; no proposals are
                created in that case.
        """
        summary = RunSummary()

        with traced(
            "collision_detector.run",
            {"kinmerge.threshold": self._threshold, "kinmerge.batch_size": self._batch_size},
        ) as span:
            try:
                summary.entities_scanned = self._signal_store.recompute_signals()
                candidates = self._signal_store.list_candidates(
                    min_score=self._threshold, limit=self._batch_size
                )
            except Exception as e:
                logger.error("Signal store failed during collision detection: %s", e)
                raise ExternalDependencyError(
                    "Signal store failed during collision detection",
                    {"cause": type(e).__name__},
                ) from e

            summary.candidates_found = len(candidates)

            try:
                for candidate in candidates:
                    if self._cancel_event.is_set():
                        summary.cancelled = True
                        logger.info("Collision detector run cancelled")
                        break
                    self._process(candidate, summary)
            finally:
                self._cancel_event.clear()

            span.set_attribute("kinmerge.proposals_created", summary.proposals_created)

        logger.info(
            "Collision detector run: scanned=%d candidates=%d created=%d skipped=%d failed=%d",
            summary.entities_scanned,
            summary.candidates_found,
            summary.proposals_created,
            summary.proposals_skipped,
            summary.proposals_failed,
        )
        emit_audit_event(
            self._audit_sink,
            build_audit_event(
                "collision_detector.run",
                entity_id="collision-detector",
                actor_id=DETECTOR_ACTOR,
                details=asdict(summary),
            ),
        )
        return summary

    def _process(self, candidate: DuplicateCandidate, summary: RunSummary) -> None:
        """Propose a merge for one candidate, updating the summary counters."""
        try:
            a = self._service.get_entity(candidate.entity_type, candidate.entity_a_id)
            b = self._service.get_entity(candidate.entity_type, candidate.entity_b_id)
            canonical, duplicate = choose_canonical(a, b)

            self._service.propose(
                ProposeMergeInput(
                    source_id=duplicate.entity_id,
                    target_id=canonical.entity_id,
                    entity_type=candidate.entity_type,
                    confidence_score=min(candidate.confidence_score / 10, 10),
                    reason=DETECTOR_REASON,
                    proposed_by=DETECTOR_ACTOR,
                    proposal_type="automated",
                )
            )
            summary.proposals_created += 1
        except ConflictError:
            summary.proposals_skipped += 1
        except MergeError as e:
            summary.proposals_failed += 1
            logger.warning(
                "Collision detector could not propose candidate %s: %s",
                candidate.candidate_id,
                e.message,
            )
        except Exception:
            summary.proposals_failed += 1
            logger.exception(
                "Collision detector failed on candidate %s", candidate.candidate_id
            )
