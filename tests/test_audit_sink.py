"""Tests for audit sinks and audit emission from the merge service."""

from __future__ import annotations

import json

import httpx
import pytest

from kinmerge.audit.sink import (
    AuditSink,
    AuditSinkError,
    HttpAuditSink,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    get_audit_sink,
)
from kinmerge.models.merge_proposal import ProposalStatus
from kinmerge.services.merge.config import MergeSettings
from kinmerge.services.merge.service import MergeProposalService, build_audit_event

WEBHOOK_URL = "https://audit.example.org/hooks/merge?token=secret"


class FailingAuditSink:
    """Sink whose every emit fails."""

    def __init__(self) -> None:
        self.attempts = 0

    def emit(self, event):
        self.attempts += 1
        raise AuditSinkError("collector unavailable")


def _event(event_type: str = "merge.proposed") -> dict:
    return build_audit_event(
        event_type,
        entity_id="person-ngozi",
        actor_id="curator-1",
        family_id="fam-okafor",
        details={"proposal_id": "p-1"},
        request_id="req-1",
    )


class TestBuildAuditEvent:
    """Shape of emitted events."""

    def test_required_keys(self) -> None:
        event = _event()

        assert set(event) == {
            "event_id",
            "occurred_at",
            "event_type",
            "entity_id",
            "actor_id",
            "family_id",
            "details",
            "request_id",
        }
        assert event["occurred_at"].endswith("Z")
        assert event["request_id"] == "req-1"

    def test_risk_score_only_when_given(self) -> None:
        event = build_audit_event("merge.proposed", "e", "a", risk_score=80.0)

        assert event["risk_score"] == 80.0
        assert event["request_id"]


class TestJsonlFileAuditSink:
    """Append-only JSONL sink."""

    def test_appends_sorted_lines(self, tmp_path) -> None:
        path = tmp_path / "nested" / "audit.jsonl"
        sink = JsonlFileAuditSink(str(path))

        sink.emit(_event("merge.proposed"))
        sink.emit(_event("merge.accepted"))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["event_type"] for line in lines] == [
            "merge.proposed",
            "merge.accepted",
        ]
        assert lines[0] == json.dumps(json.loads(lines[0]), sort_keys=True, separators=(",", ":"))

    def test_path_from_environment(self, tmp_path, monkeypatch) -> None:
        path = tmp_path / "env.jsonl"
        monkeypatch.setenv("KINMERGE_AUDIT_LOG_PATH", str(path))

        sink = JsonlFileAuditSink()

        assert sink.file_path == path

    def test_unserializable_event_raises(self, tmp_path) -> None:
        sink = JsonlFileAuditSink(str(tmp_path / "audit.jsonl"))

        with pytest.raises(AuditSinkError):
            sink.emit({"event_type": "merge.proposed", "details": {"bad": object()}})

    def test_unwritable_path_raises(self, tmp_path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        sink = JsonlFileAuditSink(str(blocker / "audit.jsonl"))

        with pytest.raises(AuditSinkError):
            sink.emit(_event())


class TestInMemoryAuditSink:
    """Test double sink."""

    def test_filters_and_clears(self) -> None:
        sink = InMemoryAuditSink()
        sink.emit(_event("merge.proposed"))
        sink.emit(_event("merge.rejected"))

        assert len(sink.events) == 2
        assert len(sink.of_type("merge.rejected")) == 1

        sink.clear()
        assert sink.events == []

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryAuditSink(), AuditSink)
        assert isinstance(JsonlFileAuditSink("x.jsonl"), AuditSink)
        assert isinstance(HttpAuditSink(WEBHOOK_URL), AuditSink)


class TestHttpAuditSink:
    """Webhook sink over httpx."""

    def test_posts_json_event(self) -> None:
        received: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202)

        sink = HttpAuditSink(WEBHOOK_URL, transport=httpx.MockTransport(handler))
        sink.emit(_event())

        assert len(received) == 1
        request = received[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "kinmerge-audit/1.0"
        assert json.loads(request.content)["event_type"] == "merge.proposed"

    def test_non_2xx_raises(self) -> None:
        sink = HttpAuditSink(
            WEBHOOK_URL, transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )

        with pytest.raises(AuditSinkError) as exc_info:
            sink.emit(_event())

        assert "HTTP 500" in str(exc_info.value)
        assert "secret" not in str(exc_info.value)

    def test_connection_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sink = HttpAuditSink(WEBHOOK_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(AuditSinkError) as exc_info:
            sink.emit(_event())

        assert "ConnectError" in str(exc_info.value)
        assert sink.host == "audit.example.org"

    def test_timeout_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        sink = HttpAuditSink(WEBHOOK_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(AuditSinkError, match="timed out"):
            sink.emit(_event())


class TestGetAuditSink:
    """Environment-selected sink."""

    def test_defaults_to_jsonl(self, monkeypatch, tmp_path) -> None:
        monkeypatch.delenv("KINMERGE_AUDIT_WEBHOOK_URL", raising=False)
        monkeypatch.setenv("KINMERGE_AUDIT_LOG_PATH", str(tmp_path / "a.jsonl"))

        sink = get_audit_sink()

        assert isinstance(sink, JsonlFileAuditSink)
        assert sink.file_path == tmp_path / "a.jsonl"

    def test_webhook_when_url_set(self, monkeypatch) -> None:
        monkeypatch.setenv("KINMERGE_AUDIT_WEBHOOK_URL", WEBHOOK_URL)
        monkeypatch.setenv("KINMERGE_AUDIT_TIMEOUT_SECONDS", "not-a-number")

        sink = get_audit_sink()

        assert isinstance(sink, HttpAuditSink)
        assert sink.host == "audit.example.org"


class TestServiceAuditEmission:
    """Audit failures never undo merge work."""

    def test_failing_sink_does_not_break_propose(
        self, engine, clock, seeded_family, propose_input
    ) -> None:
        sink = FailingAuditSink()
        service = MergeProposalService(
            engine, audit_sink=sink, settings=MergeSettings(), clock=clock
        )

        proposal = service.propose(propose_input())

        assert sink.attempts == 1
        assert service.get(proposal.proposal_id).status == ProposalStatus.PENDING

    def test_events_carry_request_id(
        self, service, audit_sink, seeded_family, propose_input
    ) -> None:
        service.propose(propose_input(request_id="req-42"))

        event = audit_sink.of_type("merge.proposed")[0]
        assert event["request_id"] == "req-42"
        assert event["actor_id"] == "curator-1"
        assert event["family_id"] == seeded_family.family_id
        assert event["details"]["source_id"] == seeded_family.source_id
