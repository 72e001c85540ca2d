"""kinmerge observability: OpenTelemetry tracing."""

from kinmerge.observability.tracing import (
    TracingConfigError,
    TracingSettings,
    configure_tracing,
    get_current_trace_id,
    instrument_fastapi,
    instrument_httpx,
    instrument_sqlalchemy,
    traced,
)

__all__ = [
    "TracingConfigError",
    "TracingSettings",
    "configure_tracing",
    "get_current_trace_id",
    "instrument_fastapi",
    "instrument_httpx",
    "instrument_sqlalchemy",
    "traced",
]
