"""Merge service package: proposals, preview, execution, undo and detection."""

from kinmerge.services.merge.config import MergeConfigError, MergeSettings
from kinmerge.services.merge.detector import CollisionDetector, RunSummary
from kinmerge.services.merge.errors import (
    AlreadyUndoneError,
    ConflictError,
    ExecutionError,
    ExternalDependencyError,
    InvalidStateError,
    MergeError,
    NotFoundError,
)
from kinmerge.services.merge.policy import (
    DEFAULT_CONFLICT_POLICY,
    ConflictPolicy,
    ConflictPolicyError,
    load_conflict_policy,
)
from kinmerge.services.merge.service import MergeProposalService, ProposeMergeInput

__all__ = [
    "AlreadyUndoneError",
    "CollisionDetector",
    "ConflictError",
    "ConflictPolicy",
    "ConflictPolicyError",
    "DEFAULT_CONFLICT_POLICY",
    "ExecutionError",
    "ExternalDependencyError",
    "InvalidStateError",
    "MergeConfigError",
    "MergeError",
    "MergeProposalService",
    "MergeSettings",
    "NotFoundError",
    "ProposeMergeInput",
    "RunSummary",
    "load_conflict_policy",
]
