"""Prometheus metrics helpers for the session orchestrator."""
from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Gauge
from prometheus_client import Histogram
from prometheus_client import start_http_server as _start_http_server

SESSIONS_LAUNCHED_TOTAL = Counter(
    "task_agent_sessions_launched_total",
    "Number of agent sessions created",
)
SESSIONS_REJECTED_TOTAL = Counter(
    "task_agent_sessions_rejected_total",
    "Launch attempts rejected before a session was created",
    labelnames=("reason",),
)
SESSIONS_FINISHED_TOTAL = Counter(
    "task_agent_sessions_finished_total",
    "Agent sessions that reached a terminal status",
    labelnames=("status", "reason"),
)
SESSIONS_ACTIVE = Gauge(
    "task_agent_sessions_active",
    "Sessions currently in a non-terminal status",
)
SESSION_DURATION = Histogram(
    "task_agent_session_duration_seconds",
    "Wall-clock time from launch to terminal status",
    buckets=(30, 60, 300, 600, 1200, 1800, 3600, 7200, 14400),
)
STORE_WRITE_FAILURES_TOTAL = Counter(
    "task_agent_store_write_failures_total",
    "Session writes that failed after retries and were queued for re-sync",
)


def record_launch() -> None:
    SESSIONS_LAUNCHED_TOTAL.inc()
    SESSIONS_ACTIVE.inc()


def record_rejection(reason: str) -> None:
    SESSIONS_REJECTED_TOTAL.labels(reason=reason).inc()


def record_finished(
    status: str,
    reason: str,
    duration_seconds: float | None,
    *,
    tracked: bool = True,
) -> None:
    """Count a terminal session and drop it from the active gauge."""

    SESSIONS_FINISHED_TOTAL.labels(status=status, reason=reason).inc()
    if tracked:
        SESSIONS_ACTIVE.dec()
    if duration_seconds is not None:
        SESSION_DURATION.observe(duration_seconds)


def record_store_failure() -> None:
    STORE_WRITE_FAILURES_TOTAL.inc()


def start_server(port: int, host: str = "0.0.0.0") -> None:
    """Start the Prometheus metrics HTTP exporter."""

    _start_http_server(port, addr=host)
