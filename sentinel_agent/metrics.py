"""Prometheus metrics for the agent.

Metrics goals:
- low-cardinality labels (never entity ids, owners, or signatures)
- visibility into cycles, submissions, decoded events, and alerts
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

CYCLES_TOTAL = Counter(
    "sentinel_cycles_total",
    "Monitoring cycles run",
    ["outcome"],
)
CYCLE_DURATION_SECONDS = Histogram(
    "sentinel_cycle_duration_seconds",
    "Monitoring cycle wall time in seconds",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
)
ENTITY_CHECKS_TOTAL = Counter(
    "sentinel_entity_checks_total",
    "Per-entity check sequences by outcome",
    ["outcome"],
)
SUBMISSIONS_TOTAL = Counter(
    "sentinel_submissions_total",
    "Transactions submitted",
    ["kind", "outcome"],
)
EVENTS_TOTAL = Counter(
    "sentinel_events_total",
    "Decoded program events",
    ["kind"],
)
ALERTS_TOTAL = Counter(
    "sentinel_alerts_total",
    "Alerts by severity and delivery",
    ["severity", "delivered"],
)
SUBSCRIPTION_ALIVE = Gauge(
    "sentinel_log_subscription_alive",
    "1 if the program log subscription is active",
)


def record_cycle(ok: bool, started_monotonic: float) -> None:
    CYCLES_TOTAL.labels(outcome="ok" if ok else "error").inc()
    CYCLE_DURATION_SECONDS.observe(max(0.0, time.monotonic() - started_monotonic))


def record_entity_check(outcome: str) -> None:
    ENTITY_CHECKS_TOTAL.labels(outcome=str(outcome)).inc()


def record_submission(kind: str, ok: bool) -> None:
    SUBMISSIONS_TOTAL.labels(kind=str(kind), outcome="ok" if ok else "error").inc()


def record_event(kind: str) -> None:
    EVENTS_TOTAL.labels(kind=str(kind)).inc()


def record_alert(severity: str, delivered: bool) -> None:
    ALERTS_TOTAL.labels(severity=str(severity), delivered="true" if delivered else "false").inc()


def set_subscription_alive(alive: bool) -> None:
    SUBSCRIPTION_ALIVE.set(1.0 if alive else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach a /metrics endpoint to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None:
            try:
                ok = authorize(request)
            except Exception:
                ok = False
            if not ok:
                return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
