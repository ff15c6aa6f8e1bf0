from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI

from tunnelgate.common import observability
from tunnelgate.common.metrics import Counter, Histogram, MetricsRegistry


def test_configure_logging_emits_json(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_logging_configured", False)

    observability.configure_logging("tunnelgate.test", "INFO")
    logger = structlog.get_logger("tunnelgate.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("structured-event", user_id=7)

    payload = json.loads(caplog.records[-1].message)
    assert payload["message"] == "structured-event"
    assert payload["user_id"] == 7
    assert payload["service"] == "tunnelgate.test"
    assert payload["level"] == "info"


def test_secret_values_are_redacted(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_logging_configured", False)
    observability.configure_logging("tunnelgate.test", "INFO")
    logger = structlog.get_logger("tunnelgate.test.redaction")

    with caplog.at_level(logging.INFO):
        logger.info("signin", username="alice", password="correct-horse", session_token="abc123", token=None)

    payload = json.loads(caplog.records[-1].message)
    assert payload["username"] == "alice"
    assert payload["password"] == observability.REDACTED
    assert payload["session_token"] == observability.REDACTED
    assert payload["token"] is None
    assert "correct-horse" not in caplog.records[-1].message


def test_parse_otlp_headers():
    headers = observability.parse_otlp_headers("authorization=Bearer token, custom=abc, broken")
    assert headers == {"authorization": "Bearer token", "custom": "abc"}
    assert observability.parse_otlp_headers(None) == {}


def test_instrument_fastapi_app_is_idempotent():
    app = FastAPI()
    observability.configure_tracing("tunnelgate.obs", None, None, 1.0)

    observability.instrument_fastapi_app(app)
    observability.instrument_fastapi_app(app)

    assert app._is_instrumented_by_opentelemetry is True


def test_labelled_counter_renders_each_series():
    counter = Counter("demo_total", "Demo counter", labels=("trigger", "outcome"))
    counter.inc(trigger="ttl", outcome="success")
    counter.inc(2, trigger="signout", outcome="partial")

    text = counter.render()

    assert 'demo_total{trigger="signout",outcome="partial"} 2.0' in text
    assert 'demo_total{trigger="ttl",outcome="success"} 1.0' in text
    assert counter.value(trigger="ttl", outcome="success") == 1.0
    assert counter.value(trigger="admin", outcome="success") == 0.0


def test_histogram_and_registry():
    registry = MetricsRegistry()
    histogram = registry.register(Histogram("latency_seconds", buckets=[0.1, 1.0], description="Latency"))
    assert registry.register(Histogram("latency_seconds", buckets=[5.0])) is histogram

    histogram.observe(0.05)
    histogram.observe(0.5)
    text = registry.render()

    assert 'latency_seconds_bucket{le="0.1"} 1' in text
    assert 'latency_seconds_bucket{le="1.0"} 2' in text
    assert 'latency_seconds_bucket{le="+Inf"} 2' in text
    assert "latency_seconds_count 2" in text
