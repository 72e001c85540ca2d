"""Merge service exceptions.

Every public merge operation fails with one of these. The API layer maps each
class to an error code and HTTP status via its class attributes.
"""

from __future__ import annotations

from typing import Any


class MergeError(Exception):
    """Base exception for merge service errors."""

    code = "MERGE_ERROR"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(MergeError):
    """Raised when a proposal, record, candidate or entity does not exist."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, kind: str, object_id: str) -> None:
        self.kind = kind
        self.object_id = object_id
        super().__init__(f"{kind} {object_id} not found", {"kind": kind, "id": object_id})


class ConflictError(MergeError):
    """Raised when the operation collides with existing state."""

    code = "CONFLICT"
    http_status = 409


class AlreadyUndoneError(ConflictError):
    """Raised when undoing a merge record that has already been undone."""

    code = "ALREADY_UNDONE"

    def __init__(self, merge_record_id: str) -> None:
        self.merge_record_id = merge_record_id
        super().__init__(
            f"Merge record {merge_record_id} has already been undone",
            {"merge_record_id": merge_record_id},
        )


class InvalidStateError(MergeError):
    """Raised when an operation is not allowed in the object's current state."""

    code = "INVALID_STATE"
    http_status = 409


class ExecutionError(MergeError):
    """Raised when a merge or undo fails part way; the transaction was rolled back.

    Attributes:
        stage: Name of the step that failed.
        cause: Short description of the underlying failure.
    """

    code = "EXECUTION_ERROR"
    http_status = 500

    def __init__(
        self,
        stage: str,
        cause: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        merged = {"stage": stage, "cause": cause}
        merged.update(details or {})
        super().__init__(f"Merge failed at stage {stage}: {cause}", merged)


class ExternalDependencyError(MergeError):
    """Raised when a collaborator such as the signal store fails."""

    code = "EXTERNAL_DEPENDENCY_ERROR"
    http_status = 502
