"""Computation lifecycle orchestration.

Each monitored entity moves through

    IDLE -> SUBMITTING_CHECK -> AWAITING_CHECK_RESULT
         -> SUBMITTING_REVEAL -> AWAITING_REVEAL_RESULT -> RESOLVED -> IDLE

with at most one computation request in flight per entity. Submission goes
through the transport; results arrive asynchronously as program events and are
applied by `handle_event`. Nothing here ever sees a plaintext result other
than the revealed risk flag.

A reveal event carries no request id, so `risk_revealed` resolves the entity
that has been waiting for a reveal the longest.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .addresses import (
    Address,
    cluster_address,
    comp_def_address,
    computation_address,
    entity_address,
    executing_pool_address,
    mempool_address,
    mxe_address,
    sign_pda_address,
)
from .codec import (
    ENTITY_RECORD_SIZE,
    OWNER_OFFSET,
    EntityRecord,
    Event,
    RiskRevealed,
    decode_entity_record,
    encode_check_health,
    encode_init_comp_def,
    encode_register_position,
    encode_reveal_risk,
)
from .errors import (
    SENTINEL_E_KEY_UNAVAILABLE,
    SENTINEL_E_SIMULATION_FAILED,
    SENTINEL_E_SUBMISSION_REJECTED,
    KeyUnavailable,
    SubmissionFailure,
    sentinel_error,
)
from .positions import PositionSnapshot
from .session import NONCE_SIZE, EncryptionSession
from .signing import Signer
from .transport import AccountMeta, Instruction, MemcmpFilter, Transport

logger = logging.getLogger("sentinel_agent")

CIRCUIT_INIT_RISK_STATE = "init_risk_state"
CIRCUIT_CHECK_HEALTH = "check_position_health"
CIRCUIT_REVEAL_RISK = "reveal_risk"

# circuit name -> initializer instruction
CIRCUITS: Tuple[Tuple[str, str], ...] = (
    (CIRCUIT_INIT_RISK_STATE, "init_risk_state_comp_def"),
    (CIRCUIT_CHECK_HEALTH, "init_check_health_comp_def"),
    (CIRCUIT_REVEAL_RISK, "init_reveal_risk_comp_def"),
)


class Phase(str, Enum):
    IDLE = "idle"
    SUBMITTING_CHECK = "submitting_check"
    AWAITING_CHECK_RESULT = "awaiting_check_result"
    SUBMITTING_REVEAL = "submitting_reveal"
    AWAITING_REVEAL_RESULT = "awaiting_reveal_result"
    RESOLVED = "resolved"


_IN_FLIGHT = (
    Phase.SUBMITTING_CHECK,
    Phase.AWAITING_CHECK_RESULT,
    Phase.SUBMITTING_REVEAL,
    Phase.AWAITING_REVEAL_RESULT,
)


class CheckOutcome(str, Enum):
    SUBMITTED = "submitted"
    NOT_REGISTERED = "not_registered"
    INACTIVE = "inactive"
    IN_FLIGHT = "in_flight"
    SUBMISSION_FAILED = "submission_failed"


@dataclass
class ComputationRequest:
    request_id: int
    phase: Phase
    ciphertexts: Tuple[bytes, ...] = ()
    submitted_at: float = 0.0


@dataclass
class MonitoredEntity:
    entity_id: int
    owner: Address
    protocol: str
    last_check: Optional[float] = None
    phase: Phase = Phase.IDLE
    request: Optional[ComputationRequest] = None
    last_result: Optional[bool] = None
    last_failure: Optional[SubmissionFailure] = None

    @property
    def key(self) -> Tuple[int, str]:
        return (self.entity_id, self.protocol)

    @property
    def in_flight(self) -> bool:
        return self.phase in _IN_FLIGHT


@dataclass(frozen=True)
class CircuitStatus:
    name: str
    address: Address
    initialized: bool


def new_request_id() -> int:
    """Random u64 computation offset."""
    return secrets.randbits(64)


def _describe_failure(error: BaseException) -> str:
    msg = str(error) or type(error).__name__
    if "custom program error" in msg or "Transaction simulation" in msg:
        return "MPC computation queued (devnet nodes may be slow)"
    return f"On-chain submission error: {msg[:100]}"


@dataclass
class Orchestrator:
    transport: Transport
    signer: Signer
    program: Address
    network_program: Address
    session: Optional[EncryptionSession] = None
    cluster_offset: int = 456
    settle_delay_s: float = 5.0
    request_timeout_s: float = 120.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    entities: Dict[Tuple[int, str], MonitoredEntity] = field(default_factory=dict)

    @property
    def owner(self) -> Address:
        return self.signer.public_key

    # ---------------------------
    # Entity registry
    # ---------------------------

    def track(self, snapshot: PositionSnapshot) -> MonitoredEntity:
        key = (snapshot.entity_id, snapshot.protocol)
        entity = self.entities.get(key)
        if entity is None:
            entity = MonitoredEntity(entity_id=snapshot.entity_id, owner=self.owner, protocol=snapshot.protocol)
            self.entities[key] = entity
            logger.info("Tracking %s (entity %d)", snapshot.protocol, snapshot.entity_id)
        return entity

    def retain(self, keys: Iterable[Tuple[int, str]]) -> List[MonitoredEntity]:
        """Drop entities whose key is not in `keys`. Returns the dropped ones."""
        keep = set(keys)
        dropped = [e for k, e in self.entities.items() if k not in keep]
        for e in dropped:
            del self.entities[e.key]
            logger.info("No longer reported: %s (entity %d)", e.protocol, e.entity_id)
        return dropped

    def _set_phase(self, entity: MonitoredEntity, phase: Phase) -> None:
        logger.debug("%s: %s -> %s", entity.protocol, entity.phase.value, phase.value)
        entity.phase = phase
        if entity.request is not None:
            entity.request.phase = phase

    def _reset(self, entity: MonitoredEntity) -> None:
        self._set_phase(entity, Phase.IDLE)
        entity.request = None

    # ---------------------------
    # Accounts
    # ---------------------------

    def record_address(self, entity_id: int) -> Address:
        return entity_address(self.owner, entity_id, self.program)[0]

    async def fetch_entity_record(self, entity_id: int) -> Optional[EntityRecord]:
        data = await self.transport.get_account_info(self.record_address(entity_id))
        if data is None:
            return None
        return decode_entity_record(data)

    async def discover_entities(self, owner: Optional[Address] = None) -> List[Tuple[Address, EntityRecord]]:
        """List records owned by `owner` (default: the agent wallet)."""
        owner = owner or self.owner
        rows = await self.transport.get_program_accounts(
            self.program, ENTITY_RECORD_SIZE, [MemcmpFilter(offset=OWNER_OFFSET, data=owner.raw)]
        )
        out: List[Tuple[Address, EntityRecord]] = []
        for address, data in rows:
            record = decode_entity_record(data)
            if record is None:
                logger.debug("Skipping undecodable record at %s", address)
                continue
            out.append((address, record))
        out.sort(key=lambda row: row[1].entity_id)
        return out

    def _computation_accounts(
        self, signer_name: str, circuit: str, request_id: int, entity_id: int
    ) -> Tuple[Tuple[str, AccountMeta], ...]:
        np = self.network_program
        return (
            (signer_name, AccountMeta(self.owner, is_signer=True, is_writable=True)),
            ("sign_pda_account", AccountMeta(sign_pda_address(self.program), is_writable=True)),
            ("mxe_account", AccountMeta(mxe_address(self.program, np))),
            ("mempool_account", AccountMeta(mempool_address(self.cluster_offset, np), is_writable=True)),
            ("executing_pool", AccountMeta(executing_pool_address(self.cluster_offset, np), is_writable=True)),
            (
                "computation_account",
                AccountMeta(computation_address(self.cluster_offset, request_id, np), is_writable=True),
            ),
            ("comp_def_account", AccountMeta(comp_def_address(self.program, circuit, np))),
            ("cluster_account", AccountMeta(cluster_address(self.cluster_offset, np), is_writable=True)),
            ("position_acc", AccountMeta(self.record_address(entity_id), is_writable=True)),
        )

    async def _submit(self, ix: Instruction) -> str:
        try:
            return await self.transport.submit_transaction([ix])
        except Exception as e:
            msg = str(e) or type(e).__name__
            code = SENTINEL_E_SUBMISSION_REJECTED
            if "custom program error" in msg or "Transaction simulation" in msg:
                code = SENTINEL_E_SIMULATION_FAILED
            raise sentinel_error(
                SubmissionFailure, code, msg, retryable=True, instruction=ix.name
            ) from e

    # ---------------------------
    # Lifecycle
    # ---------------------------

    async def submit_check(self, entity: MonitoredEntity, snapshot: PositionSnapshot) -> ComputationRequest:
        """Encrypt the snapshot and submit check_health. Raises SubmissionFailure."""
        if self.session is None:
            raise sentinel_error(KeyUnavailable, SENTINEL_E_KEY_UNAVAILABLE, "no encryption session")
        request = ComputationRequest(request_id=new_request_id(), phase=Phase.SUBMITTING_CHECK)
        entity.request = request
        self._set_phase(entity, Phase.SUBMITTING_CHECK)

        payload = self.session.encrypt(snapshot.as_values())
        request.ciphertexts = tuple(payload.ciphertexts)
        logger.info("  Encrypted data -> submitting to MPC network...")

        data = encode_check_health(
            request.request_id,
            entity.entity_id,
            payload.ciphertexts,
            self.session.public_key,
            payload.nonce_int,
        )
        ix = Instruction(
            program_id=self.program,
            name="check_health",
            data=data,
            accounts=self._computation_accounts("owner", CIRCUIT_CHECK_HEALTH, request.request_id, entity.entity_id),
        )
        try:
            signature = await self._submit(ix)
        except SubmissionFailure:
            self._reset(entity)
            raise
        request.submitted_at = self.clock()
        self._set_phase(entity, Phase.AWAITING_CHECK_RESULT)
        logger.info("  Health check submitted on-chain (%s) - MPC nodes computing...", signature[:16])
        return request

    async def submit_reveal(self, entity: MonitoredEntity) -> ComputationRequest:
        """Wait for the check to settle, then submit reveal_risk. Raises SubmissionFailure."""
        await self.sleep(self.settle_delay_s)
        request = ComputationRequest(request_id=new_request_id(), phase=Phase.SUBMITTING_REVEAL)
        entity.request = request
        self._set_phase(entity, Phase.SUBMITTING_REVEAL)

        ix = Instruction(
            program_id=self.program,
            name="reveal_risk",
            data=encode_reveal_risk(request.request_id, entity.entity_id),
            accounts=self._computation_accounts("payer", CIRCUIT_REVEAL_RISK, request.request_id, entity.entity_id),
        )
        try:
            signature = await self._submit(ix)
        except SubmissionFailure:
            self._reset(entity)
            raise
        request.submitted_at = self.clock()
        self._set_phase(entity, Phase.AWAITING_REVEAL_RESULT)
        logger.info("  Risk reveal submitted (%s) - awaiting MPC result...", signature[:16])
        return request

    async def check_entity(self, entity: MonitoredEntity, snapshot: PositionSnapshot) -> CheckOutcome:
        """Run one check -> reveal sequence for an entity.

        Submission failures are logged and reported as an outcome; any other
        exception propagates to the caller.
        """
        if entity.in_flight and entity.request is not None:
            age = self.clock() - entity.request.submitted_at
            if age < self.request_timeout_s:
                logger.info("  %s: request still in flight (%s), skipping", entity.protocol, entity.phase.value)
                return CheckOutcome.IN_FLIGHT
            logger.warning("  %s: abandoning request after %.0fs in %s", entity.protocol, age, entity.phase.value)
            self._reset(entity)

        record = await self.fetch_entity_record(entity.entity_id)
        if record is None:
            logger.info("  %s: entity %d is not registered, skipping", entity.protocol, entity.entity_id)
            return CheckOutcome.NOT_REGISTERED
        if not record.is_active:
            logger.info("  %s: entity %d is inactive, skipping", entity.protocol, entity.entity_id)
            return CheckOutcome.INACTIVE

        logger.info("  Checking %s (encrypted - agent cannot see values)", entity.protocol)
        entity.last_check = time.time()
        entity.last_failure = None
        try:
            await self.submit_check(entity, snapshot)
            await self.submit_reveal(entity)
        except SubmissionFailure as e:
            entity.last_failure = e
            logger.info("  %s", _describe_failure(e.__cause__ or e))
            return CheckOutcome.SUBMISSION_FAILED
        return CheckOutcome.SUBMITTED

    def handle_event(self, event: Event) -> Optional[MonitoredEntity]:
        """Advance entity state from a program event. Returns the entity affected, if any.

        Only risk_revealed moves an entity; the other events are informational.
        """
        if isinstance(event, RiskRevealed):
            waiting = [e for e in self.entities.values() if e.phase is Phase.AWAITING_REVEAL_RESULT and e.request]
            if not waiting:
                return None
            entity = min(waiting, key=lambda e: e.request.submitted_at)
            self._set_phase(entity, Phase.RESOLVED)
            entity.last_result = bool(event.is_at_risk)
            self._reset(entity)
            return entity

        return None

    # ---------------------------
    # Setup
    # ---------------------------

    async def register_entity(self, entity_id: int) -> Optional[str]:
        """Create the on-chain record for `entity_id`. Returns None if it already exists."""
        address = self.record_address(entity_id)
        if await self.transport.get_account_info(address) is not None:
            logger.info("Entity %d already registered at %s", entity_id, address)
            return None
        request_id = new_request_id()
        nonce = int.from_bytes(secrets.token_bytes(NONCE_SIZE), "little")
        ix = Instruction(
            program_id=self.program,
            name="register_position",
            data=encode_register_position(request_id, entity_id, nonce),
            accounts=self._computation_accounts("payer", CIRCUIT_INIT_RISK_STATE, request_id, entity_id),
        )
        signature = await self._submit(ix)
        logger.info("Registered entity %d at %s (%s)", entity_id, address, signature[:16])
        return signature

    async def circuit_status(self) -> List[CircuitStatus]:
        out: List[CircuitStatus] = []
        for circuit, _ in CIRCUITS:
            address = comp_def_address(self.program, circuit, self.network_program)
            data = await self.transport.get_account_info(address)
            out.append(CircuitStatus(name=circuit, address=address, initialized=data is not None))
        return out

    async def ensure_computation_definitions(self) -> Dict[str, Optional[str]]:
        """Initialize missing computation definitions.

        Returns circuit -> signature, or None where it already existed.
        """
        results: Dict[str, Optional[str]] = {}
        mxe = mxe_address(self.program, self.network_program)
        for status, (_, instruction_name) in zip(await self.circuit_status(), CIRCUITS):
            if status.initialized:
                logger.info("Computation definition %s already initialized", status.name)
                results[status.name] = None
                continue
            ix = Instruction(
                program_id=self.program,
                name=instruction_name,
                data=encode_init_comp_def(instruction_name),
                accounts=(
                    ("payer", AccountMeta(self.owner, is_signer=True, is_writable=True)),
                    ("mxe_account", AccountMeta(mxe, is_writable=True)),
                    ("comp_def_account", AccountMeta(status.address, is_writable=True)),
                ),
            )
            results[status.name] = await self._submit(ix)
            logger.info("Initialized computation definition %s", status.name)
        return results

