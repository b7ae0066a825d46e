"""Ledger transport seam.

The agent never speaks the ledger's RPC protocol directly. Everything it needs
goes through a `Transport`: an object that can submit instructions, read raw
account data, list accounts by filter, stream program logs, and fetch the MPC
network's published encryption key.

Instructions are described with named accounts only. The transport is
responsible for resolving fixed accounts the program also requires (system
program, clock, fee pool, ...), serializing, signing, and sending.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .addresses import Address


@dataclass(frozen=True)
class AccountMeta:
    address: Address
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: Address
    name: str
    data: bytes
    accounts: Tuple[Tuple[str, AccountMeta], ...] = ()

    def account(self, name: str) -> Optional[AccountMeta]:
        for n, meta in self.accounts:
            if n == name:
                return meta
        return None


@dataclass(frozen=True)
class LogBatch:
    """One transaction's worth of program logs."""

    signature: str
    logs: Tuple[str, ...] = ()
    err: Any = None


@dataclass(frozen=True)
class MemcmpFilter:
    offset: int
    data: bytes


LogCallback = Callable[[LogBatch], None]
ErrorCallback = Callable[[BaseException], None]


@runtime_checkable
class Transport(Protocol):
    """Protocol implemented by ledger transports."""

    async def submit_transaction(self, instructions: Sequence[Instruction]) -> str: ...

    async def get_account_info(self, address: Address) -> Optional[bytes]: ...

    async def get_program_accounts(
        self,
        program: Address,
        data_size: int,
        memcmp: Sequence[MemcmpFilter] = (),
    ) -> List[Tuple[Address, bytes]]: ...

    async def fetch_network_public_key(self, program: Address) -> Optional[bytes]: ...

    def subscribe_logs(self, program: Address, callback: LogCallback, on_error: ErrorCallback) -> Any: ...

    def unsubscribe_logs(self, handle: Any) -> None: ...

