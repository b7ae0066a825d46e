import hashlib
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from sentinel_agent.addresses import Address, entity_address
from sentinel_agent.codec import ENTITY_RECORD_DISCRIMINATOR, EntityRecord, encode_entity_record
from sentinel_agent.config import DEFAULT_NETWORK_PROGRAM_ID, DEFAULT_PROGRAM_ID
from sentinel_agent.session import EncryptionSession, derive_key_pair, derive_shared_secret
from sentinel_agent.signing import WalletSigner
from sentinel_agent.transport import Instruction, LogBatch, MemcmpFilter


PROGRAM = Address.from_string(DEFAULT_PROGRAM_ID)
NETWORK_PROGRAM = Address.from_string(DEFAULT_NETWORK_PROGRAM_ID)


class FakeCipher:
    """Deterministic stand-in for the MPC cipher: one 32-byte digest per value."""

    def __init__(self, shared_secret: bytes):
        self.shared_secret = shared_secret
        self.calls: List[Tuple[List[int], bytes]] = []

    def encrypt(self, values: Sequence[int], nonce: bytes) -> List[bytes]:
        self.calls.append((list(values), nonce))
        return [
            hashlib.sha256(self.shared_secret + nonce + int(v).to_bytes(8, "little")).digest()
            for v in values
        ]


class FakeLedger:
    """In-memory ledger transport."""

    def __init__(self, network_key: Optional[bytes] = None):
        self.accounts: Dict[bytes, bytes] = {}
        self.submitted: List[Instruction] = []
        self.network_key = network_key
        self.key_fetches = 0
        self.key_failures = 0
        self.reject: Optional[Callable[[Instruction], Optional[str]]] = None
        self.subscribers: Dict[int, Tuple[Any, Any]] = {}
        self._handles = 0
        self._sigs = 0

    async def submit_transaction(self, instructions: Sequence[Instruction]) -> str:
        for ix in instructions:
            if self.reject is not None:
                msg = self.reject(ix)
                if msg:
                    raise RuntimeError(msg)
        self.submitted.extend(instructions)
        self._sigs += 1
        return f"{self._sigs:08d}" + "x" * 80

    async def get_account_info(self, address: Address) -> Optional[bytes]:
        return self.accounts.get(address.raw)

    async def get_program_accounts(
        self, program: Address, data_size: int, memcmp: Sequence[MemcmpFilter] = ()
    ) -> List[Tuple[Address, bytes]]:
        out = []
        for raw, data in self.accounts.items():
            if len(data) != data_size:
                continue
            if all(data[f.offset:f.offset + len(f.data)] == f.data for f in memcmp):
                out.append((Address(raw), data))
        return out

    async def fetch_network_public_key(self, program: Address) -> Optional[bytes]:
        self.key_fetches += 1
        if self.key_fetches <= self.key_failures:
            raise ConnectionError("rpc unavailable")
        return self.network_key

    def subscribe_logs(self, program: Address, callback, on_error) -> int:
        self._handles += 1
        self.subscribers[self._handles] = (callback, on_error)
        return self._handles

    def unsubscribe_logs(self, handle: int) -> None:
        self.subscribers.pop(handle, None)

    # Test helpers

    def emit(self, logs: Sequence[str], signature: str = "5igTestSignature", err: Any = None) -> None:
        for callback, _ in list(self.subscribers.values()):
            callback(LogBatch(signature=signature, logs=tuple(logs), err=err))

    def fail_subscription(self, error: BaseException) -> None:
        subs, self.subscribers = self.subscribers, {}
        for _, on_error in subs.values():
            on_error(error)

    def put_record(self, owner: Address, entity_id: int, *, active: bool = True, last_check: int = 0) -> Address:
        address, bump = entity_address(owner, entity_id, PROGRAM)
        self.accounts[address.raw] = encode_entity_record(
            EntityRecord(
                discriminator=ENTITY_RECORD_DISCRIMINATOR,
                bump=bump,
                risk_state=(b"\x00" * 32, b"\x00" * 32),
                entity_id=entity_id,
                owner=owner.raw,
                nonce=12345,
                last_check=last_check,
                is_active=active,
            )
        )
        return address

    def names(self) -> List[str]:
        return [ix.name for ix in self.submitted]


class RecordingAlerts:
    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    async def send_alert(self, severity, message: str) -> None:
        self.sent.append((getattr(severity, "value", severity), message))


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def signer() -> WalletSigner:
    return WalletSigner(bytes(range(32)))


@pytest.fixture
def network_key() -> bytes:
    return X25519PrivateKey.generate().public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@pytest.fixture
def ledger(network_key) -> FakeLedger:
    return FakeLedger(network_key=network_key)


@pytest.fixture
def session(signer, network_key) -> EncryptionSession:
    private_key, public_key = derive_key_pair(signer)
    shared = derive_shared_secret(private_key, network_key)
    return EncryptionSession(private_key, public_key, shared, FakeCipher(shared))


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()
