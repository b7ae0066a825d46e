"""Deterministic ledger addresses.

Program-derived addresses are computed as

    sha256(seed_1 || ... || seed_n || bump || program_id || "ProgramDerivedAddress")

for bump = 255, 254, ... 0, keeping the first candidate that does NOT decode
to a point on the Ed25519 curve (so that no private key can exist for it).

The same seed tuple always yields the same (address, bump) pair. The
orchestrator relies on this for its "already initialized" checks.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import base58

from .errors import (
    DerivationError,
    SENTINEL_E_KEY_INVALID,
    SENTINEL_E_NO_VIABLE_BUMP,
    SENTINEL_E_SEED_TOO_LONG,
    SentinelError,
    sentinel_error,
)

MAX_SEED_LEN = 32
MAX_SEEDS = 16
PDA_MARKER = b"ProgramDerivedAddress"

# Seeds used by the monitored program and the MPC network program.
ENTITY_SEED = b"position"
SIGN_PDA_SEED = b"ArciumSignerAccount"
MXE_ACCOUNT_SEED = b"MXEAccount"
MEMPOOL_SEED = b"MempoolAccount"
EXECUTING_POOL_SEED = b"ExecutingPool"
COMPUTATION_SEED = b"ComputationAccount"
CLUSTER_SEED = b"Cluster"
COMP_DEF_SEED = b"ComputationDefinitionAccount"


@dataclass(frozen=True)
class Address:
    """A 32-byte ledger identity, rendered as base58."""

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != 32:
            raise sentinel_error(
                SentinelError, SENTINEL_E_KEY_INVALID, "address must be 32 bytes", got=len(self.raw)
            )

    @classmethod
    def from_string(cls, text: str) -> "Address":
        try:
            raw = base58.b58decode(text.strip())
        except ValueError as e:
            raise sentinel_error(SentinelError, SENTINEL_E_KEY_INVALID, f"not base58: {e}") from e
        return cls(raw)

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return base58.b58encode(self.raw).decode("ascii")

    def short(self) -> str:
        s = str(self)
        return f"{s[:4]}...{s[-4:]}"


AddressLike = Union[Address, bytes]


def _raw(addr: AddressLike) -> bytes:
    return addr.raw if isinstance(addr, Address) else bytes(addr)


# ---------------------------
# Ed25519 curve membership
# ---------------------------

_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def is_on_curve(point: bytes) -> bool:
    """True if `point` decompresses to an Ed25519 curve point.

    The y coordinate is the low 255 bits (reduced mod p); the point exists iff
    (y^2 - 1) / (d*y^2 + 1) is a square mod p.
    """
    if len(point) != 32:
        return False
    y = (int.from_bytes(point, "little") & ((1 << 255) - 1)) % _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    if v == 0:
        return u == 0
    w = u * pow(v, _P - 2, _P) % _P
    if w == 0:
        return True
    return pow(w, (_P - 1) // 2, _P) == 1


# ---------------------------
# Derivation
# ---------------------------

def _check_seeds(seeds: Sequence[bytes]) -> None:
    if len(seeds) > MAX_SEEDS - 1:
        raise sentinel_error(DerivationError, SENTINEL_E_SEED_TOO_LONG, "too many seeds", count=len(seeds))
    for i, s in enumerate(seeds):
        if len(s) > MAX_SEED_LEN:
            raise sentinel_error(
                DerivationError, SENTINEL_E_SEED_TOO_LONG, "seed longer than 32 bytes", index=i, length=len(s)
            )


def create_address(seeds: Sequence[bytes], owner_program: AddressLike) -> Address | None:
    """Hash one candidate. Returns None if the candidate lies on the curve."""
    h = hashlib.sha256()
    for s in seeds:
        h.update(bytes(s))
    h.update(_raw(owner_program))
    h.update(PDA_MARKER)
    digest = h.digest()
    if is_on_curve(digest):
        return None
    return Address(digest)


def derive_address(seeds: Sequence[bytes], owner_program: AddressLike) -> Tuple[Address, int]:
    """Find the canonical (address, bump) for a seed tuple."""
    seeds = [bytes(s) for s in seeds]
    _check_seeds(seeds)
    for bump in range(255, -1, -1):
        addr = create_address([*seeds, bytes([bump])], owner_program)
        if addr is not None:
            return addr, bump
    raise sentinel_error(DerivationError, SENTINEL_E_NO_VIABLE_BUMP, "no off-curve address in bump search space")


def u32_le(n: int) -> bytes:
    return struct.pack("<I", n)


def u64_le(n: int) -> bytes:
    return struct.pack("<Q", n)


def circuit_offset(circuit_name: str) -> int:
    """Numeric circuit identifier: first four bytes of sha256(name), little-endian."""
    return struct.unpack("<I", hashlib.sha256(circuit_name.encode("utf-8")).digest()[:4])[0]


def entity_address(owner: AddressLike, entity_id: int, program: AddressLike) -> Tuple[Address, int]:
    return derive_address([ENTITY_SEED, _raw(owner), u32_le(entity_id)], program)


def sign_pda_address(program: AddressLike) -> Address:
    return derive_address([SIGN_PDA_SEED], program)[0]


def mxe_address(program: AddressLike, network_program: AddressLike) -> Address:
    return derive_address([MXE_ACCOUNT_SEED, _raw(program)], network_program)[0]


def comp_def_address(program: AddressLike, circuit_name: str, network_program: AddressLike) -> Address:
    seeds = [COMP_DEF_SEED, _raw(program), u32_le(circuit_offset(circuit_name))]
    return derive_address(seeds, network_program)[0]


def cluster_address(cluster_offset: int, network_program: AddressLike) -> Address:
    return derive_address([CLUSTER_SEED, u32_le(cluster_offset)], network_program)[0]


def mempool_address(cluster_offset: int, network_program: AddressLike) -> Address:
    return derive_address([MEMPOOL_SEED, u32_le(cluster_offset)], network_program)[0]


def executing_pool_address(cluster_offset: int, network_program: AddressLike) -> Address:
    return derive_address([EXECUTING_POOL_SEED, u32_le(cluster_offset)], network_program)[0]


def computation_address(cluster_offset: int, request_id: int, network_program: AddressLike) -> Address:
    seeds = [COMPUTATION_SEED, u32_le(cluster_offset), u64_le(request_id)]
    return derive_address(seeds, network_program)[0]
