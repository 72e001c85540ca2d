"""OpenTelemetry tracing for kinmerge.

Merge operations (propose, accept, reject, execute, undo) and collision detector
runs each open a span through traced(). Until configure_tracing() installs a
provider the OpenTelemetry API returns non-recording spans, so tracing is free
when disabled.

Environment Variables:
    KINMERGE_OTEL_ENABLED: "1" enables tracing (default: disabled)
    KINMERGE_REQUIRE_OTEL: "1" turns a failed setup into TracingConfigError
    KINMERGE_OTEL_SERVICE_NAME: service.name resource attribute (default: "kinmerge")
    KINMERGE_OTEL_EXPORTER: "otlp" or "console" (default: "otlp")
    KINMERGE_OTEL_EXPORTER_OTLP_ENDPOINT: collector endpoint (optional)
    KINMERGE_OTEL_EXPORTER_OTLP_PROTOCOL: "grpc" or "http" (default: "grpc")
    KINMERGE_OTEL_RESOURCE_ATTRS: extra resource attributes as "k=v,k2=v2"

Span attributes are ids, statuses and counters. Field values of people and
families never go into spans.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

logger = logging.getLogger(__name__)

TRACER_NAME = "kinmerge.merge"

_configured_provider: Any = None


class TracingConfigError(Exception):
    """Raised when tracing setup fails and KINMERGE_REQUIRE_OTEL=1."""


def _env_flag(key: str) -> bool:
    return os.environ.get(key, "").strip().lower() in ("1", "true", "yes")


def _parse_resource_attrs(raw: str) -> dict[str, str]:
    """Parse "k=v,k2=v2"; entries without '=' are ignored."""
    attrs: dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if sep:
            attrs[key.strip()] = value.strip()
    return attrs


@dataclass(frozen=True)
class TracingSettings:
    """Tracing options read from KINMERGE_OTEL_* variables."""

    enabled: bool = False
    required: bool = False
    service_name: str = "kinmerge"
    exporter: str = "otlp"
    endpoint: str | None = None
    protocol: str = "grpc"
    resource_attrs: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> TracingSettings:
        env = os.environ
        return cls(
            enabled=_env_flag("KINMERGE_OTEL_ENABLED"),
            required=_env_flag("KINMERGE_REQUIRE_OTEL"),
            service_name=env.get("KINMERGE_OTEL_SERVICE_NAME", "").strip() or "kinmerge",
            exporter=env.get("KINMERGE_OTEL_EXPORTER", "").strip() or "otlp",
            endpoint=env.get("KINMERGE_OTEL_EXPORTER_OTLP_ENDPOINT", "").strip() or None,
            protocol=env.get("KINMERGE_OTEL_EXPORTER_OTLP_PROTOCOL", "").strip() or "grpc",
            resource_attrs=_parse_resource_attrs(env.get("KINMERGE_OTEL_RESOURCE_ATTRS", "")),
        )


def _span_processor(settings: TracingSettings) -> Any:
    """Build the span processor for the configured exporter."""
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    if settings.exporter == "console":
        return SimpleSpanProcessor(ConsoleSpanExporter())

    kwargs = {"endpoint": settings.endpoint} if settings.endpoint else {}
    if settings.protocol == "http":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    else:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    return BatchSpanProcessor(OTLPSpanExporter(**kwargs))


def configure_tracing(settings: TracingSettings | None = None) -> bool:
    """Install a TracerProvider once per process.

    Returns:
        True if tracing is active after the call.

    Raises:
        TracingConfigError: If setup fails and tracing is required.
    """
    global _configured_provider

    settings = settings or TracingSettings.from_env()
    if not settings.enabled:
        logger.debug("OpenTelemetry tracing disabled")
        return False
    if _configured_provider is not None:
        return True

    try:
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider

        resource = Resource.create(
            {"service.name": settings.service_name, **settings.resource_attrs}
        )
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(_span_processor(settings))
        trace.set_tracer_provider(provider)
    except Exception as e:
        logger.error("OpenTelemetry tracing setup failed: %s", e)
        if settings.required:
            raise TracingConfigError(f"Tracing is required but setup failed: {e}") from e
        return False

    _configured_provider = provider
    logger.info(
        "OpenTelemetry tracing enabled: service=%s exporter=%s",
        settings.service_name,
        settings.exporter,
    )
    return True


def _instrument(target: str, install: Callable[[], None]) -> None:
    """Run an instrumentor when tracing is enabled; failures only log."""
    if not _env_flag("KINMERGE_OTEL_ENABLED"):
        return
    try:
        install()
        logger.debug("%s instrumented with OpenTelemetry", target)
    except Exception as e:
        logger.warning("Could not instrument %s: %s", target, e)


def instrument_fastapi(app: Any) -> None:
    """Trace incoming requests, except /health."""

    def install() -> None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app, excluded_urls="health")

    _instrument("FastAPI", install)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace statements on engine, without SQL comments."""

    def install() -> None:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=False)

    _instrument("SQLAlchemy", install)


def instrument_httpx() -> None:
    """Trace outgoing httpx calls (the audit webhook)."""

    def install() -> None:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()

    _instrument("httpx", install)


@contextmanager
def traced(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Run the enclosed block in a span named name.

    None-valued attributes are dropped and the rest are stringified. Exceptions
    are recorded on the span and re-raised.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    span_attributes = {k: str(v) for k, v in (attributes or {}).items() if v is not None}
    with tracer.start_as_current_span(name, attributes=span_attributes) as span:
        yield span


def get_current_trace_id() -> str | None:
    """Hex trace id of the active span, for log correlation."""
    context = trace.get_current_span().get_span_context()
    return format(context.trace_id, "032x") if context.is_valid else None


def reset_tracing() -> None:
    """Forget the configured provider (tests).

    OpenTelemetry keeps the first global TracerProvider, so this only lets
    configure_tracing() run its checks again.
    """
    global _configured_provider
    _configured_provider = None
