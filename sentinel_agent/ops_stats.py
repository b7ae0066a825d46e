"""Operational statistics for the agent.

Lightweight in-memory counters plus a snapshot used by the status endpoint.

Notes
-----
- Counters reset on process restart.
- Counters only grow; the event consumer and the scheduler both write here,
  so every mutation holds the lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class _Counters:
    # Cycles
    cycles_total: int = 0
    cycles_failed: int = 0
    last_cycle_started_at: Optional[float] = None
    last_cycle_finished_at: Optional[float] = None
    last_cycle_ok: Optional[bool] = None
    last_cycle_entities: int = 0

    # Per-entity outcomes
    entity_checks_by_outcome: Dict[str, int] = field(default_factory=dict)
    submissions_total: int = 0
    submission_failures_total: int = 0

    # Events / alerts
    events_by_kind: Dict[str, int] = field(default_factory=dict)
    threats_detected: int = 0
    alerts_sent: int = 0
    alerts_suppressed: int = 0
    subscription_losses: int = 0


class AgentStats:
    def __init__(self, clock=time.time) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def cycle_started(self) -> int:
        with self._lock:
            self._c.cycles_total += 1
            self._c.last_cycle_started_at = self._clock()
            return self._c.cycles_total

    def cycle_finished(self, ok: bool, entities: int) -> None:
        with self._lock:
            if not ok:
                self._c.cycles_failed += 1
            self._c.last_cycle_ok = ok
            self._c.last_cycle_entities = entities
            self._c.last_cycle_finished_at = self._clock()

    def record_entity_check(self, outcome: str) -> None:
        with self._lock:
            self._inc_map(self._c.entity_checks_by_outcome, outcome or "unknown")

    def record_submission(self, ok: bool) -> None:
        with self._lock:
            self._c.submissions_total += 1
            if not ok:
                self._c.submission_failures_total += 1

    def record_event(self, kind: str) -> None:
        with self._lock:
            self._inc_map(self._c.events_by_kind, kind or "unknown")

    def record_threat(self) -> int:
        with self._lock:
            self._c.threats_detected += 1
            return self._c.threats_detected

    def record_alert(self, delivered: bool) -> None:
        with self._lock:
            if delivered:
                self._c.alerts_sent += 1
            else:
                self._c.alerts_suppressed += 1

    def record_subscription_lost(self) -> None:
        with self._lock:
            self._c.subscription_losses += 1

    @property
    def threats_detected(self) -> int:
        with self._lock:
            return self._c.threats_detected

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "cycles_total": c.cycles_total,
                "cycles_failed": c.cycles_failed,
                "last_cycle_started_at": c.last_cycle_started_at,
                "last_cycle_finished_at": c.last_cycle_finished_at,
                "last_cycle_ok": c.last_cycle_ok,
                "last_cycle_entities": c.last_cycle_entities,
                "entity_checks_by_outcome": dict(c.entity_checks_by_outcome),
                "submissions_total": c.submissions_total,
                "submission_failures_total": c.submission_failures_total,
                "events_by_kind": dict(c.events_by_kind),
                "threats_detected": c.threats_detected,
                "alerts_sent": c.alerts_sent,
                "alerts_suppressed": c.alerts_suppressed,
                "subscription_losses": c.subscription_losses,
            }
        if extra:
            snap.update(extra)
        return snap
