"""Position data sources.

A position source reports the owner's current positions as plain integers
(USD cents and basis points). Values leave this process only in encrypted
form.

`SimulatedPositionSource` produces demo positions with realistic values. A
production source would read lending/LP protocol state instead.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Protocol, runtime_checkable

from .addresses import Address

DEFAULT_ENTITY_ID = 1


@dataclass(frozen=True)
class PositionSnapshot:
    protocol: str
    value_cents: int
    collateral_ratio_bps: int
    liquidation_threshold_bps: int
    last_updated: int
    entity_id: int = DEFAULT_ENTITY_ID

    def as_values(self) -> List[int]:
        return [self.value_cents, self.collateral_ratio_bps, self.liquidation_threshold_bps]


@runtime_checkable
class PositionSource(Protocol):
    async def fetch_positions(self, owner: Address) -> List[PositionSnapshot]: ...


def fetch_oracle_prices() -> Dict[str, int]:
    """Reference prices in USD cents."""
    return {
        "SOL": 15000,
        "USDC": 100,
        "ETH": 350000,
        "BTC": 9500000,
    }


@dataclass
class SimulatedPositionSource:
    """Demo positions sized from a SOL balance."""

    sol_balance: float = 1.0
    entity_id: int = DEFAULT_ENTITY_ID
    clock: Callable[[], float] = field(default=time.time, repr=False)

    async def fetch_positions(self, owner: Address) -> List[PositionSnapshot]:
        now_ms = int(self.clock() * 1000)
        sol_cents = fetch_oracle_prices()["SOL"]
        positions: List[PositionSnapshot] = []

        if self.sol_balance > 0:
            positions.append(
                PositionSnapshot(
                    protocol="Kamino Lending",
                    value_cents=int(self.sol_balance * sol_cents),
                    collateral_ratio_bps=14500,
                    liquidation_threshold_bps=11000,
                    last_updated=now_ms,
                    entity_id=self.entity_id,
                )
            )
            # Closer to the liquidation threshold.
            positions.append(
                PositionSnapshot(
                    protocol="MarginFi",
                    value_cents=int(self.sol_balance * sol_cents / 2),
                    collateral_ratio_bps=12000,
                    liquidation_threshold_bps=11000,
                    last_updated=now_ms,
                    entity_id=self.entity_id,
                )
            )

        positions.append(
            PositionSnapshot(
                protocol="Jupiter LP (SOL/USDC)",
                value_cents=250000,
                collateral_ratio_bps=20000,
                liquidation_threshold_bps=10500,
                last_updated=now_ms,
                entity_id=self.entity_id,
            )
        )
        return positions
