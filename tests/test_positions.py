import pytest

from sentinel_agent.positions import PositionSource, SimulatedPositionSource, fetch_oracle_prices
from sentinel_agent.signing import WalletSigner


@pytest.mark.asyncio
async def test_simulated_positions_follow_balance():
    owner = WalletSigner.generate().public_key
    src = SimulatedPositionSource(sol_balance=2.0, clock=lambda: 1.5)
    assert isinstance(src, PositionSource)
    positions = await src.fetch_positions(owner)
    assert [p.protocol for p in positions] == ["Kamino Lending", "MarginFi", "Jupiter LP (SOL/USDC)"]
    sol = fetch_oracle_prices()["SOL"]
    assert positions[0].value_cents == 2 * sol
    assert positions[1].value_cents == sol
    assert all(p.last_updated == 1500 for p in positions)
    assert all(p.entity_id == 1 for p in positions)
    assert positions[1].as_values() == [sol, 12000, 11000]


@pytest.mark.asyncio
async def test_empty_wallet_still_reports_lp_position():
    owner = WalletSigner.generate().public_key
    positions = await SimulatedPositionSource(sol_balance=0.0).fetch_positions(owner)
    assert [p.protocol for p in positions] == ["Jupiter LP (SOL/USDC)"]
