"""Periodic monitoring loop.

One cycle: fetch the owner's positions, sync the entity registry, and run the
check sequence for each entity in turn. A failure on one entity never stops
the others, and a failed cycle never stops the loop. Cycles never overlap:
the full interval elapses after a cycle finishes before the next one starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from . import metrics
from .alerts import AlertSink, Severity
from .errors import SENTINEL_E_CYCLE, SENTINEL_E_ENTITY_CHECK, CycleError, SentinelError, sentinel_error
from .events import EventDispatcher
from .ops_stats import AgentStats
from .orchestrator import CheckOutcome, MonitoredEntity, Orchestrator
from .positions import PositionSource

logger = logging.getLogger("sentinel_agent")

OUTCOME_ERROR = "error"


@dataclass
class CycleReport:
    cycle: int
    ok: bool = True
    outcomes: Dict[str, str] = field(default_factory=dict)
    errors: List[CycleError] = field(default_factory=list)

    @property
    def entities(self) -> int:
        return len(self.outcomes)


class MonitoringScheduler:
    def __init__(
        self,
        orchestrator: Orchestrator,
        positions: PositionSource,
        alerts: AlertSink,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        stats: Optional[AgentStats] = None,
        interval_s: float = 30.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.orchestrator = orchestrator
        self.positions = positions
        self.alerts = alerts
        self.dispatcher = dispatcher
        self.stats = stats or AgentStats()
        self.interval_s = float(interval_s)
        self._sleep = sleep
        self._stopped = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask the loop to exit before its next cycle."""
        self._stopped.set()

    async def _pause(self) -> None:
        if self._sleep is not None:
            await self._sleep(self.interval_s)
            return
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_s)
        except asyncio.TimeoutError:
            pass

    def _ensure_subscribed(self) -> None:
        if self.dispatcher is None or self.dispatcher.alive:
            return
        try:
            self.dispatcher.subscribe()
        except Exception as e:
            logger.error("Log resubscription failed: %s", e)
        metrics.set_subscription_alive(self.dispatcher.alive)

    async def run_cycle(self) -> CycleReport:
        cycle = self.stats.cycle_started()
        started = time.monotonic()
        report = CycleReport(cycle=cycle)
        logger.info("Cycle #%d: checking positions...", cycle)
        try:
            self._ensure_subscribed()
            snapshots = await self.positions.fetch_positions(self.orchestrator.owner)
            if not snapshots:
                logger.info("No positions found")
            self.orchestrator.retain((s.entity_id, s.protocol) for s in snapshots)

            for snapshot in snapshots:
                entity = self.orchestrator.track(snapshot)
                label = f"{snapshot.protocol}#{snapshot.entity_id}"
                try:
                    outcome = await self.orchestrator.check_entity(entity, snapshot)
                    report.outcomes[label] = outcome.value
                    if outcome is CheckOutcome.SUBMITTED:
                        self.stats.record_submission(True)
                        metrics.record_submission("check_health", True)
                        metrics.record_submission("reveal_risk", True)
                    elif outcome is CheckOutcome.SUBMISSION_FAILED:
                        self.stats.record_submission(False)
                        self._record_failed_submission(entity)
                except Exception as e:
                    err = self._wrap(e, SENTINEL_E_ENTITY_CHECK, f"Error checking {snapshot.protocol}", label)
                    logger.error("Error checking %s: %s", snapshot.protocol, err.message)
                    report.outcomes[label] = OUTCOME_ERROR
                    report.errors.append(err)
                    await self.alerts.send_alert(Severity.WARNING, f"Error checking {snapshot.protocol}: {err.message}")
                self.stats.record_entity_check(report.outcomes[label])
                metrics.record_entity_check(report.outcomes[label])
        except Exception as e:
            err = self._wrap(e, SENTINEL_E_CYCLE, "Monitoring cycle failed")
            report.ok = False
            report.errors.append(err)
            logger.error("Monitoring cycle error: %s", err.message)
            await self.alerts.send_alert(Severity.WARNING, f"Agent monitoring cycle error: {err.message}. Retrying...")

        self.stats.cycle_finished(report.ok, report.entities)
        metrics.record_cycle(report.ok, started)
        logger.info("Cycle #%d complete | Total threats: %d", cycle, self.stats.threats_detected)
        return report

    @staticmethod
    def _record_failed_submission(entity: MonitoredEntity) -> None:
        failure = entity.last_failure
        failed = failure.details.get("instruction", "check_health") if failure is not None else "check_health"
        if failed == "reveal_risk":
            metrics.record_submission("check_health", True)
        metrics.record_submission(failed, False)

    @staticmethod
    def _wrap(e: Exception, code: str, message: str, label: str = "") -> CycleError:
        if isinstance(e, CycleError):
            return e
        detail = e.message if isinstance(e, SentinelError) else (str(e) or type(e).__name__)
        err = sentinel_error(CycleError, code, detail, retryable=True, context=message)
        if label:
            err.details["entity"] = label
        err.__cause__ = e
        return err

    async def run(self, max_cycles: Optional[int] = None) -> int:
        """Run cycles until stop() or `max_cycles`. Returns cycles run."""
        self._running = True
        done = 0
        logger.info("Monitoring every %.0fs", self.interval_s)
        try:
            while not self._stopped.is_set():
                await self.run_cycle()
                done += 1
                if max_cycles is not None and done >= max_cycles:
                    break
                if self._stopped.is_set():
                    break
                await self._pause()
        finally:
            self._running = False
        return done
