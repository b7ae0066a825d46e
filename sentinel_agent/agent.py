"""Agent assembly and event reactions.

`AgentContext` holds every collaborator the agent needs; there is no module
level state. `SentinelAgent` wires them together:

- the scheduler drives monitoring cycles,
- a consumer task drains the event dispatcher and reacts to results,
- both run on the same event loop, so entity state has a single writer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from . import metrics
from .alerts import AlertRecord, AlertService, AlertSink, Severity
from .codec import ActionRequired, HealthCheckCompleted, PositionRegistered, RiskRevealed
from .config import AgentConfig
from .events import EventDelivery, EventDispatcher, SubscriptionLost
from .ops_stats import AgentStats
from .orchestrator import Orchestrator
from .positions import PositionSource, SimulatedPositionSource
from .scheduler import MonitoringScheduler
from .session import CipherFactory, EncryptionSession, negotiate
from .signing import Signer
from .transport import Transport

logger = logging.getLogger("sentinel_agent")


@dataclass
class AgentContext:
    config: AgentConfig
    signer: Signer
    transport: Transport
    session: EncryptionSession
    alerts: AlertSink
    positions: PositionSource
    stats: AgentStats = field(default_factory=AgentStats)


def alert_service_for(config: AgentConfig, stats: AgentStats, **kw: Any) -> AlertService:
    """AlertService whose deliveries are counted in `stats` and metrics."""

    def _record(rec: AlertRecord) -> None:
        stats.record_alert(rec.delivered)
        metrics.record_alert(rec.severity.value, rec.delivered)

    return AlertService(
        config.telegram_bot_token,
        config.telegram_chat_id,
        min_interval_s=config.alert_min_interval_s,
        on_record=_record,
        **kw,
    )


async def build_context(
    config: AgentConfig,
    signer: Signer,
    transport: Transport,
    cipher_factory: CipherFactory,
    *,
    positions: Optional[PositionSource] = None,
    alerts: Optional[AlertSink] = None,
    stats: Optional[AgentStats] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AgentContext:
    """Negotiate the encryption session and assemble the context.

    Raises KeyUnavailable when the network key cannot be fetched.
    """
    stats = stats or AgentStats()
    session = await negotiate(
        signer,
        transport,
        config.network_program,
        cipher_factory,
        domain_message=config.encryption_key_message,
        retry=config.key_retry_policy(),
        sleep=sleep,
    )
    return AgentContext(
        config=config,
        signer=signer,
        transport=transport,
        session=session,
        alerts=alerts or alert_service_for(config, stats),
        positions=positions or SimulatedPositionSource(sol_balance=config.simulated_sol_balance),
        stats=stats,
    )


class SentinelAgent:
    def __init__(
        self,
        ctx: AgentContext,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cycle_sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.ctx = ctx
        cfg = ctx.config
        self.dispatcher = EventDispatcher(ctx.transport, cfg.program)
        self.orchestrator = Orchestrator(
            transport=ctx.transport,
            signer=ctx.signer,
            session=ctx.session,
            program=cfg.program,
            network_program=cfg.network_program,
            cluster_offset=cfg.cluster_offset,
            settle_delay_s=cfg.settle_delay_s,
            request_timeout_s=float(cfg.request_timeout_seconds),
            sleep=sleep,
        )
        self.scheduler = MonitoringScheduler(
            self.orchestrator,
            ctx.positions,
            ctx.alerts,
            dispatcher=self.dispatcher,
            stats=ctx.stats,
            interval_s=cfg.interval_s,
            sleep=cycle_sleep,
        )
        self._consumer: Optional[asyncio.Task] = None

    @property
    def stats(self) -> AgentStats:
        return self.ctx.stats

    async def handle_delivery(self, delivery: EventDelivery) -> None:
        """React to one decoded program event."""
        event = delivery.event
        sig = delivery.signature[:12]
        self.stats.record_event(event.kind)
        metrics.record_event(event.kind)
        self.orchestrator.handle_event(event)

        if isinstance(event, RiskRevealed):
            if event.is_at_risk:
                threats = self.stats.record_threat()
                logger.warning(">> RISK DETECTED! (threats total: %d, tx: %s...)", threats, sig)
                await self.ctx.alerts.send_alert(
                    Severity.CRITICAL,
                    "Position at risk! Privacy-preserving health check detected a threat. "
                    f"Threats detected: {threats}. Check your positions immediately.",
                )
            else:
                logger.info(">> Position is safe (risk reveal: false, tx: %s...)", sig)
        elif isinstance(event, ActionRequired):
            logger.warning(">> Emergency action triggered: %s (tx: %s...)", event.action_type, sig)
            await self.ctx.alerts.send_alert(
                Severity.ACTION,
                "Emergency action triggered for position at risk. Executing pre-authorized protective measures.",
            )
        elif isinstance(event, HealthCheckCompleted):
            logger.info(">> Health check completed for entity %d (tx: %s...)", event.entity_id, sig)
        elif isinstance(event, PositionRegistered):
            logger.info(">> Position registered: entity %d (tx: %s...)", event.entity_id, sig)

    def _on_lost(self, item: SubscriptionLost) -> None:
        self.stats.record_subscription_lost()
        metrics.set_subscription_alive(False)
        logger.warning("Event subscription lost (%s); will resubscribe next cycle", item.error)

    def start(self) -> None:
        """Subscribe to program logs and start the event consumer. Needs a running loop."""
        self.dispatcher.subscribe()
        metrics.set_subscription_alive(self.dispatcher.alive)
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(
                self.dispatcher.pump(self.handle_delivery, on_lost=self._on_lost)
            )

    async def run(self, max_cycles: Optional[int] = None) -> int:
        self.start()
        try:
            return await self.scheduler.run(max_cycles=max_cycles)
        finally:
            await self.shutdown()

    def stop(self) -> None:
        logger.info("Shutting down Sentinel agent...")
        self.scheduler.stop()

    async def shutdown(self) -> None:
        self.dispatcher.unsubscribe()
        metrics.set_subscription_alive(False)
        if self._consumer is not None:
            # Let already-queued events reach their handlers first.
            for item in self.dispatcher.drain():
                if isinstance(item, EventDelivery):
                    try:
                        await self.handle_delivery(item)
                    except Exception:
                        logger.exception("Event handler failed for %s", item.event.kind)
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
