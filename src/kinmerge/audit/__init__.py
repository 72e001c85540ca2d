"""kinmerge audit sinks."""

from kinmerge.audit.sink import (
    AuditSink,
    AuditSinkError,
    HttpAuditSink,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    get_audit_sink,
)

__all__ = [
    "AuditSink",
    "AuditSinkError",
    "HttpAuditSink",
    "InMemoryAuditSink",
    "JsonlFileAuditSink",
    "get_audit_sink",
]
