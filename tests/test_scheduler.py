import asyncio

import pytest
from prometheus_client import REGISTRY

from sentinel_agent.events import EventDispatcher
from sentinel_agent.ops_stats import AgentStats
from sentinel_agent.orchestrator import Orchestrator
from sentinel_agent.positions import PositionSnapshot
from sentinel_agent.scheduler import MonitoringScheduler

from conftest import NETWORK_PROGRAM, PROGRAM, no_sleep


class StaticPositions:
    def __init__(self, snapshots=None, error=None):
        self.snapshots = list(snapshots or [])
        self.error = error
        self.calls = 0

    async def fetch_positions(self, owner):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.snapshots)


def _snap(protocol, entity_id):
    return PositionSnapshot(protocol, 10000, 15000, 11000, 0, entity_id=entity_id)


@pytest.fixture
def orch(ledger, signer, session):
    return Orchestrator(
        transport=ledger,
        signer=signer,
        program=PROGRAM,
        network_program=NETWORK_PROGRAM,
        session=session,
        sleep=no_sleep,
    )


@pytest.mark.asyncio
async def test_one_failing_entity_does_not_stop_the_others(orch, ledger, signer, alerts):
    ledger.put_record(signer.public_key, 1)
    ledger.put_record(signer.public_key, 3)
    broken = orch.record_address(2)
    real_get = ledger.get_account_info

    async def flaky_get(address):
        if address == broken:
            raise RuntimeError("429 Too Many Requests")
        return await real_get(address)

    ledger.get_account_info = flaky_get
    positions = StaticPositions([_snap("A", 1), _snap("B", 2), _snap("C", 3)])
    stats = AgentStats()
    sched = MonitoringScheduler(orch, positions, alerts, stats=stats, sleep=no_sleep)

    report = await sched.run_cycle()
    assert report.ok
    assert report.outcomes == {"A#1": "submitted", "B#2": "error", "C#3": "submitted"}
    assert len(report.errors) == 1
    assert report.errors[0].details["entity"] == "B#2"
    assert ledger.names() == ["check_health", "reveal_risk", "check_health", "reveal_risk"]
    assert len(alerts.sent) == 1
    assert alerts.sent[0][0] == "WARNING"
    assert "429" in alerts.sent[0][1]

    snap = stats.snapshot()
    assert snap["entity_checks_by_outcome"] == {"submitted": 2, "error": 1}
    assert snap["submissions_total"] == 2
    assert snap["last_cycle_ok"] is True


@pytest.mark.asyncio
async def test_cycle_failure_is_reported_and_loop_continues(orch, alerts):
    positions = StaticPositions(error=ConnectionError("rpc down"))
    stats = AgentStats()
    sched = MonitoringScheduler(orch, positions, alerts, stats=stats, sleep=no_sleep)

    assert await sched.run(max_cycles=2) == 2
    assert positions.calls == 2
    assert stats.snapshot()["cycles_failed"] == 2
    assert [a[0] for a in alerts.sent] == ["WARNING", "WARNING"]
    assert alerts.sent[0][1] == "Agent monitoring cycle error: rpc down. Retrying..."


@pytest.mark.asyncio
async def test_stop_is_checked_before_each_cycle(orch, alerts):
    positions = StaticPositions([])
    sched = MonitoringScheduler(orch, positions, alerts, sleep=no_sleep)
    sched.stop()
    assert await sched.run() == 0
    assert positions.calls == 0


@pytest.mark.asyncio
async def test_stop_during_pause(orch, alerts):
    positions = StaticPositions([])
    sched = None

    async def sleep_then_stop(seconds):
        sched.stop()

    sched = MonitoringScheduler(orch, positions, alerts, sleep=sleep_then_stop)
    assert await sched.run() == 1
    assert not sched.running


@pytest.mark.asyncio
async def test_default_pause_wakes_on_stop(orch, alerts):
    positions = StaticPositions([])
    sched = MonitoringScheduler(orch, positions, alerts, interval_s=3600)
    task = asyncio.create_task(sched.run())
    await asyncio.sleep(0.05)
    sched.stop()
    assert await asyncio.wait_for(task, timeout=2) == 1


@pytest.mark.asyncio
async def test_unreported_entities_are_dropped(orch, alerts):
    positions = StaticPositions([_snap("A", 1), _snap("B", 1)])
    sched = MonitoringScheduler(orch, positions, alerts, sleep=no_sleep)
    await sched.run_cycle()
    assert set(orch.entities) == {(1, "A"), (1, "B")}

    positions.snapshots = [_snap("B", 1)]
    report = await sched.run_cycle()
    assert set(orch.entities) == {(1, "B")}
    assert report.outcomes == {"B#1": "not_registered"}


@pytest.mark.asyncio
async def test_dead_subscription_is_renewed_each_cycle(orch, ledger, alerts):
    dispatcher = EventDispatcher(ledger, PROGRAM)
    sched = MonitoringScheduler(orch, StaticPositions([]), alerts, dispatcher=dispatcher, sleep=no_sleep)
    await sched.run_cycle()
    assert dispatcher.alive

    ledger.fail_subscription(RuntimeError("ws closed"))
    assert not dispatcher.alive
    await sched.run_cycle()
    assert dispatcher.alive
    assert len(ledger.subscribers) == 1


def _submissions(kind, outcome):
    value = REGISTRY.get_sample_value("sentinel_submissions_total", {"kind": kind, "outcome": outcome})
    return value or 0.0


@pytest.mark.asyncio
async def test_failed_reveal_is_counted_against_reveal(orch, ledger, signer, alerts):
    ledger.put_record(signer.public_key, 1)
    ledger.reject = lambda ix: "blockhash not found" if ix.name == "reveal_risk" else None
    before = {
        key: _submissions(*key)
        for key in [("check_health", "ok"), ("check_health", "error"), ("reveal_risk", "error")]
    }
    sched = MonitoringScheduler(orch, StaticPositions([_snap("A", 1)]), alerts, sleep=no_sleep)

    report = await sched.run_cycle()
    assert report.outcomes == {"A#1": "submission_failed"}
    assert _submissions("reveal_risk", "error") == before[("reveal_risk", "error")] + 1
    assert _submissions("check_health", "ok") == before[("check_health", "ok")] + 1
    assert _submissions("check_health", "error") == before[("check_health", "error")]
