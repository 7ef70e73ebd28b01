"""Prometheus metrics for port discovery and the CDP connection lifecycle."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

CONNECTION_STATES: Final = ("disconnected", "connecting", "connected")

cdp_probe_total: Final = Counter(  # type: ignore[assignment]
    "cdp_probe_total",
    "Liveness probes issued against candidate ports",
    ["port", "outcome"],
)

cdp_discovery_total: Final = Counter(  # type: ignore[assignment]
    "cdp_discovery_total",
    "Full sweeps over the candidate port set",
    ["outcome"],
)

cdp_probe_latency_seconds: Final = Histogram(  # type: ignore[assignment]
    "cdp_probe_latency_seconds",
    "Single port probe latency in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

cdp_connect_attempts_total: Final = Counter(  # type: ignore[assignment]
    "cdp_connect_attempts_total",
    "Connect attempts made by the connection manager",
    ["outcome"],
)

cdp_connection_state: Final = Gauge(  # type: ignore[assignment]
    "cdp_connection_state",
    "Current connection state (1 for the active state, 0 otherwise)",
    ["state"],
)

cdp_connected_port: Final = Gauge(  # type: ignore[assignment]
    "cdp_connected_port",
    "TCP port of the active connection, 0 when disconnected",
)

cdp_disconnect_total: Final = Counter(  # type: ignore[assignment]
    "cdp_disconnect_total",
    "Established connections that were lost",
    ["reason"],
)

cdp_retry_delay_seconds: Final = Gauge(  # type: ignore[assignment]
    "cdp_retry_delay_seconds",
    "Backoff delay currently in effect",
)

cdp_last_sync_timestamp_seconds: Final = Gauge(  # type: ignore[assignment]
    "cdp_last_sync_timestamp_seconds",
    "Unix time of the last successful connect",
)

cdp_join_wait_total: Final = Counter(  # type: ignore[assignment]
    "cdp_join_wait_total",
    "Callers that waited on an in-flight connect",
    ["outcome"],
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_probe(port: int, outcome: str) -> None:
    """Record one port probe (outcome: ok, http_error, timeout, unreachable)."""
    cdp_probe_total.labels(port=str(port), outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_probe_latency(latency_seconds: float) -> None:
    cdp_probe_latency_seconds.observe(latency_seconds)  # type: ignore[no-untyped-call]


def record_discovery(outcome: str) -> None:
    """Record a sweep over the candidate ports (outcome: found, none)."""
    cdp_discovery_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_connect_attempt(outcome: str) -> None:
    """Record a connect attempt (outcome: success, no_target, open_failed)."""
    cdp_connect_attempts_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_connection_state(state: str, port: int | None = None) -> None:
    """Record connection state change."""
    for s in CONNECTION_STATES:
        cdp_connection_state.labels(state=s).set(1 if s == state else 0)  # type: ignore[no-untyped-call]
    cdp_connected_port.set(port or 0)  # type: ignore[no-untyped-call]


def record_disconnect(reason: str) -> None:
    cdp_disconnect_total.labels(reason=reason).inc()  # type: ignore[no-untyped-call]


def record_retry_delay(delay_seconds: float) -> None:
    cdp_retry_delay_seconds.set(delay_seconds)  # type: ignore[no-untyped-call]


def record_last_sync(timestamp: float) -> None:
    cdp_last_sync_timestamp_seconds.set(timestamp)  # type: ignore[no-untyped-call]


def record_join_wait(outcome: str) -> None:
    """Record how a caller's wait for a handle ended (outcome: handle, timeout, shutdown)."""
    cdp_join_wait_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]
