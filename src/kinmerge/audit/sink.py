"""Audit event sink implementations for kinmerge.

Merge state transitions are reported to a write-only sink. All sinks implement
the AuditSink protocol and raise AuditSinkError on failure; callers in the merge
service log that error and carry on, so a broken sink never undoes a merge.

Environment Variables:
    KINMERGE_AUDIT_LOG_PATH: JSONL file path (default: ./var/audit/merge_events.jsonl)
    KINMERGE_AUDIT_WEBHOOK_URL: When set, events are POSTed here instead
    KINMERGE_AUDIT_TIMEOUT_SECONDS: Webhook request timeout (default: 5)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

AUDIT_LOG_PATH_ENV = "KINMERGE_AUDIT_LOG_PATH"
AUDIT_WEBHOOK_URL_ENV = "KINMERGE_AUDIT_WEBHOOK_URL"
AUDIT_TIMEOUT_ENV = "KINMERGE_AUDIT_TIMEOUT_SECONDS"
DEFAULT_AUDIT_LOG_PATH = "./var/audit/merge_events.jsonl"
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_USER_AGENT = "kinmerge-audit/1.0"


class AuditSinkError(Exception):
    """Raised when audit event emission fails."""

    pass


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for audit event sinks."""

    def emit(self, event: dict[str, Any]) -> None:
        """Emit an audit event to the sink.

        Args:
            event: Audit event dict

        Raises:
            AuditSinkError: If emission fails for any reason
        """
        ...


def _serialize(event: dict[str, Any]) -> str:
    try:
        return json.dumps(event, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise AuditSinkError(f"Failed to serialize audit event: {e}") from e


class JsonlFileAuditSink:
    """Append-only JSONL file sink for audit events.

    Appends one line per event with sorted keys and creates parent directories
    if missing. Never truncates existing content.
    """

    def __init__(self, file_path: str | None = None) -> None:
        """Initialize the JSONL file sink.

        Args:
            file_path: Override path for the audit log file.
                       If None, reads from KINMERGE_AUDIT_LOG_PATH env var,
                       falling back to DEFAULT_AUDIT_LOG_PATH.
        """
        if file_path is None:
            file_path = os.environ.get(AUDIT_LOG_PATH_ENV) or DEFAULT_AUDIT_LOG_PATH
        self._file_path = Path(file_path)

    @property
    def file_path(self) -> Path:
        """Return the configured file path."""
        return self._file_path

    def emit(self, event: dict[str, Any]) -> None:
        """Append an audit event to the JSONL file.

        Raises:
            AuditSinkError: If serialization, directory creation or the write fails
        """
        line = _serialize(event) + "\n"

        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._file_path, mode="a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise AuditSinkError(f"Failed to write audit event to {self._file_path}: {e}") from e


class InMemoryAuditSink:
    """In-memory audit sink for testing (no disk writes)."""

    def __init__(self) -> None:
        """Initialize the in-memory sink."""
        self._events: list[dict[str, Any]] = []

    def emit(self, event: dict[str, Any]) -> None:
        """Store an audit event.

        Round-trips through JSON so tests see exactly what a real sink would write.
        """
        self._events.append(json.loads(_serialize(event)))

    @property
    def events(self) -> list[dict[str, Any]]:
        """Return all emitted events."""
        return list(self._events)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        """Return emitted events with the given event_type."""
        return [event for event in self._events if event.get("event_type") == event_type]

    def clear(self) -> None:
        """Clear all stored events."""
        self._events.clear()


class HttpAuditSink:
    """Webhook sink: POSTs each event as JSON to a collector URL.

    Every request carries a timeout; any transport error or non-2xx response
    raises AuditSinkError.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the webhook sink.

        Args:
            url: Collector endpoint.
            timeout_seconds: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def host(self) -> str:
        """Collector host, for logging without credentials or query strings."""
        return urlsplit(self._url).hostname or "unknown"

    def emit(self, event: dict[str, Any]) -> None:
        """POST an audit event to the collector.

        Raises:
            AuditSinkError: On timeout, connection failure or non-2xx status
        """
        body = _serialize(event)
        headers = {"Content-Type": "application/json", "User-Agent": DEFAULT_USER_AGENT}

        try:
            with httpx.Client(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = client.post(self._url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise AuditSinkError(f"Audit webhook to {self.host} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise AuditSinkError(
                f"Audit webhook to {self.host} failed: {type(e).__name__}"
            ) from e

        if not 200 <= response.status_code < 300:
            raise AuditSinkError(
                f"Audit webhook to {self.host} returned HTTP {response.status_code}"
            )


def get_audit_sink() -> AuditSink:
    """Factory function to get the configured audit sink.

    Returns:
        HttpAuditSink when KINMERGE_AUDIT_WEBHOOK_URL is set, otherwise
        JsonlFileAuditSink.
    """
    url = os.environ.get(AUDIT_WEBHOOK_URL_ENV, "").strip()
    if url:
        raw_timeout = os.environ.get(AUDIT_TIMEOUT_ENV, "").strip()
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT_SECONDS
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", AUDIT_TIMEOUT_ENV, raw_timeout)
            timeout = DEFAULT_TIMEOUT_SECONDS
        return HttpAuditSink(url, timeout_seconds=timeout)
    return JsonlFileAuditSink()
