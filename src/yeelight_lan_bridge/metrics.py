"""Prometheus metrics helpers."""

from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

_REGISTRY = CollectorRegistry()

COMMAND_RESULTS = Counter(
    "yeelight_commands_total",
    "Device command outcomes",
    ["method", "kind", "result"],
    registry=_REGISTRY,
)
COMMAND_ATTEMPTS = Counter(
    "yeelight_command_attempts_total",
    "Individual command transmission attempts",
    ["outcome"],
    registry=_REGISTRY,
)
COMMAND_DURATION = Histogram(
    "yeelight_command_duration_seconds",
    "Time from issuing a command until it resolved or gave up",
    ["kind", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
FLUSH_RESULTS = Counter(
    "yeelight_flushes_total",
    "Replays of cached desired state after reconnect",
    ["result"],
    registry=_REGISTRY,
)
MALFORMED_MESSAGES = Counter(
    "yeelight_malformed_messages_total",
    "Inbound control lines that could not be parsed",
    registry=_REGISTRY,
)
DISCOVERY_RESPONSES = Counter(
    "yeelight_discovery_responses_total",
    "Discovery advertisements parsed",
    ["outcome"],
    registry=_REGISTRY,
)
DISCOVERY_ERRORS = Counter(
    "yeelight_discovery_errors_total",
    "Discovery datagrams discarded",
    ["reason"],
    registry=_REGISTRY,
)
DISCOVERY_SEARCHES = Counter(
    "yeelight_discovery_searches_total",
    "Search requests broadcast",
    registry=_REGISTRY,
)
SESSIONS_ONLINE = Gauge(
    "yeelight_sessions_online",
    "Device sessions with a connected control socket",
    registry=_REGISTRY,
)
SESSIONS_TOTAL = Gauge(
    "yeelight_sessions_total",
    "Device sessions held by the registry",
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the bridge metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def start_metrics_server(port: int, address: str = "0.0.0.0") -> None:
    """Expose the bridge registry over HTTP."""

    start_http_server(port, addr=address, registry=_REGISTRY)


def record_command_result(method: str, kind: str, result: str, duration_seconds: Optional[float] = None) -> None:
    """Record the final outcome of a device command."""

    COMMAND_RESULTS.labels(method=method, kind=kind, result=result).inc()
    if duration_seconds is not None:
        COMMAND_DURATION.labels(kind=kind, result=result).observe(duration_seconds)


def record_command_attempt(outcome: str) -> None:
    """Record the outcome of a single transmission attempt."""

    COMMAND_ATTEMPTS.labels(outcome=outcome).inc()


def record_flush(result: str) -> None:
    FLUSH_RESULTS.labels(result=result).inc()


def record_malformed_message() -> None:
    MALFORMED_MESSAGES.inc()


def record_discovery_response(outcome: str) -> None:
    """Record a parsed advertisement and what it led to."""

    DISCOVERY_RESPONSES.labels(outcome=outcome).inc()


def record_discovery_error(reason: str) -> None:
    """Record a discarded discovery datagram."""

    DISCOVERY_ERRORS.labels(reason=reason).inc()


def record_discovery_search() -> None:
    DISCOVERY_SEARCHES.inc()


def adjust_sessions_online(delta: int) -> None:
    SESSIONS_ONLINE.inc(delta)


def set_sessions_total(count: int) -> None:
    SESSIONS_TOTAL.set(count)
