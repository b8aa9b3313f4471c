"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# Queue metrics
queue_joins = Counter(
    'queue_joins_total',
    'Queue join attempts',
    ['result']  # joined, already_queued, rejected
)

queue_transitions = Counter(
    'queue_entry_transitions_total',
    'Queue entry status transitions',
    ['status']
)

# Admission metrics
admissions = Counter(
    'admissions_total',
    'Queue entries promoted to a purchase session',
    ['trigger']  # tick, manual
)

admission_tick_latency = Histogram(
    'admission_tick_latency_seconds',
    'Admission processor tick latency',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

active_processors = Gauge(
    'admission_processors_active',
    'Events with a running admission loop in this instance'
)

# Purchase session metrics
session_transitions = Counter(
    'purchase_session_transitions_total',
    'Purchase session terminal transitions',
    ['status', 'source']  # source: user, lazy, reconciler, enforcer, admin
)

session_extensions = Counter(
    'purchase_session_extensions_total',
    'Purchase session extension attempts',
    ['result']  # extended, limit_reached, not_active
)

# Background loop metrics
sweep_runs = Counter(
    'background_sweep_runs_total',
    'Background loop iterations',
    ['loop']
)

sweep_item_failures = Counter(
    'background_sweep_item_failures_total',
    'Per-item failures caught inside background loops',
    ['loop']
)

limit_evictions = Counter(
    'limit_enforcer_evictions_total',
    'Queue entries completed because the user exhausted every allowance'
)

# Side effects
notifications_sent = Counter(
    'notifications_total',
    'Notification dispatch results',
    ['kind', 'result']  # result: sent, failed, skipped
)

slot_signal_errors = Counter(
    'slot_signal_errors_total',
    'Redis slot-freed signal publish/subscribe errors'
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_join(result: str):
    """Record queue join. Result: joined, already_queued, rejected"""
    queue_joins.labels(result=result).inc()


def record_entry_transition(status: str):
    queue_transitions.labels(status=status).inc()


def record_admission(trigger: str):
    admissions.labels(trigger=trigger).inc()


def record_session_transition(status: str, source: str):
    session_transitions.labels(status=status, source=source).inc()


def record_notification(kind: str, result: str):
    notifications_sent.labels(kind=kind, result=result).inc()
