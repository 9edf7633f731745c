from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

# Session lifecycle
PLUGIN_SESSIONS_TOTAL = Counter(
    "cfops_plugin_sessions_total", "Plugin sessions acquired", ["plugin", "outcome"]
)
PLUGIN_FAILURES_TOTAL = Counter(
    "cfops_plugin_failures_total", "Plugin failures by phase", ["plugin", "phase", "error"]
)
PLUGIN_ACTIVE_SESSIONS = Gauge("cfops_plugin_active_sessions", "Live plugin subprocesses", ["plugin"])

# Capability calls
PLUGIN_CALLS_TOTAL = Counter(
    "cfops_plugin_calls_total", "Capability calls sent to plugins", ["plugin", "function", "outcome"]
)
PLUGIN_CALL_DURATION = Histogram(
    "cfops_plugin_call_duration_seconds", "Capability call duration", ["plugin", "function"]
)


def record_session(plugin: str, outcome: str) -> None:
    PLUGIN_SESSIONS_TOTAL.labels(plugin=plugin, outcome=outcome).inc()


def record_failure(plugin: Optional[str], phase: Optional[str], error: str) -> None:
    PLUGIN_FAILURES_TOTAL.labels(plugin=plugin or "unknown", phase=phase or "unknown", error=error).inc()


def session_opened(plugin: str) -> None:
    PLUGIN_ACTIVE_SESSIONS.labels(plugin=plugin).inc()


def session_closed(plugin: str) -> None:
    PLUGIN_ACTIVE_SESSIONS.labels(plugin=plugin).dec()


def record_call(plugin: str, function: str, outcome: str, duration: float) -> None:
    PLUGIN_CALLS_TOTAL.labels(plugin=plugin, function=function, outcome=outcome).inc()
    PLUGIN_CALL_DURATION.labels(plugin=plugin, function=function).observe(max(0.0, duration))
