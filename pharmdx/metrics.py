"""Prometheus metrics for AI calls, request transitions and safety checks."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


AI_CALLS_TOTAL = _get_or_create_metric(
    Counter,
    "pharmdx_ai_calls_total",
    "Logical AI completion calls partitioned by final outcome",
    ("outcome",),
)
AI_RETRIES_TOTAL = _get_or_create_metric(
    Counter,
    "pharmdx_ai_retries_total",
    "AI completion attempts that were retried after a transient failure",
    ("reason",),
)
AI_CALL_LATENCY = _get_or_create_metric(
    Histogram,
    "pharmdx_ai_call_latency_seconds",
    "Wall-clock latency of logical AI completion calls including retries",
    ("model",),
)
REQUEST_TRANSITIONS_TOTAL = _get_or_create_metric(
    Counter,
    "pharmdx_request_transitions_total",
    "Diagnostic request status transitions",
    ("status",),
)
SAFETY_FINDINGS_TOTAL = _get_or_create_metric(
    Counter,
    "pharmdx_safety_findings_total",
    "Safety findings emitted by check type and severity",
    ("check_type", "severity"),
)
INTERACTION_LOOKUP_FAILURES = _get_or_create_metric(
    Counter,
    "pharmdx_interaction_lookup_failures_total",
    "Interaction lookups that failed and were skipped",
    ("source",),
)


__all__ = [
    "AI_CALLS_TOTAL",
    "AI_CALL_LATENCY",
    "AI_RETRIES_TOTAL",
    "INTERACTION_LOOKUP_FAILURES",
    "REQUEST_TRANSITIONS_TOTAL",
    "SAFETY_FINDINGS_TOTAL",
]
