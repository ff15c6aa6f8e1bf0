"""Structured logging and tracing setup shared by tunnelgate entrypoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, MutableMapping, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

# Event keys whose values must never reach a log sink.
SECRET_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "session_token",
        "sessionToken",
        "adminSessionToken",
        "token",
        "github_token",
        "authorization",
        "cookie",
    }
)
REDACTED = "[redacted]"

_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level:
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Emit structlog events as JSON lines through the stdlib root logger.

    Every event carries ``service``, an ISO UTC timestamp and its level, and
    values under :data:`SECRET_KEYS` are replaced before rendering.
    """

    global _logging_configured
    numeric_level = _log_level(level)
    root = logging.getLogger()
    if _logging_configured:
        root.setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``key=value,key2=value2``; malformed pairs are dropped."""

    parsed: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, separator, value = item.partition("=")
        key, value = key.strip(), value.strip()
        if separator and key and value:
            parsed[key] = value
    return parsed


def build_span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the process-wide tracer provider and instrument outgoing httpx calls.

    Without an exporter endpoint spans stay in memory. Calling this again is
    a no-op, as is calling it after another provider was installed.
    """

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured or isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=TraceIdRatioBased(min(1.0, max(0.0, sampler_ratio))),
    )
    provider.add_span_processor(build_span_processor(endpoint, headers))
    trace.set_tracer_provider(provider)
    _tracer_configured = True

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def instrument_fastapi_app(app) -> None:
    """Wrap ``app`` in OpenTelemetry middleware; must run before the app starts."""

    if getattr(app, "_is_instrumented_by_opentelemetry", False):
        return
    FastAPIInstrumentor.instrument_app(app)
