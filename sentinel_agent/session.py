"""Encryption session with the MPC network.

Lifecycle:

1. `derive_key_pair(signer, domain_message)`: sign the domain message with the
   agent's wallet, SHA-256 the signature into an X25519 private key, derive
   the public key. Same wallet + message -> same key pair, so the session can
   be recovered after a restart without persisting any secret.
2. `negotiate(...)`: fetch the network's published X25519 key (bounded retry),
   compute the shared secret, and build the cipher.
3. `EncryptionSession.encrypt(values)`: encrypt a tuple of integers under a
   fresh random 16-byte nonce.

The cipher itself is an external primitive; this module only owns key
material, retry policy, and nonce freshness.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from .addresses import Address
from .errors import (
    KeyUnavailable,
    SENTINEL_E_KEY_INVALID,
    SENTINEL_E_KEY_UNAVAILABLE,
    SENTINEL_E_NONCE_REUSED,
    SentinelError,
    sentinel_error,
)
from .signing import Signer

logger = logging.getLogger("sentinel_agent")

DEFAULT_DOMAIN_MESSAGE = "fold-defi-encryption-key-v1"
NONCE_SIZE = 16
# Recently used nonce digests kept for the reuse check.
NONCE_WINDOW = 4096


@runtime_checkable
class Cipher(Protocol):
    """Keyed cipher over integer tuples (provided by the MPC network's client)."""

    def encrypt(self, values: Sequence[int], nonce: bytes) -> List[bytes]: ...


CipherFactory = Callable[[bytes], Cipher]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a delay function.

    max_attempts: total attempts, including the first
    delay_s: callable(attempt) -> seconds to wait after a failed attempt
    """

    max_attempts: int = 10
    delay_s: Callable[[int], float] = field(default=lambda attempt: 2.0)

    @classmethod
    def fixed(cls, max_attempts: int, delay_s: float) -> "RetryPolicy":
        d = max(0.0, float(delay_s))
        return cls(max_attempts=max(1, int(max_attempts)), delay_s=lambda attempt: d)

    async def run(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        what: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Tuple[Any, int, Optional[str]]:
        """Call `fn` until it returns a non-None value.

        Returns (value_or_None, attempts, last_error).
        """
        last_err: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await fn()
            except Exception as e:
                value = None
                last_err = str(e) or type(e).__name__
            if value is not None:
                return value, attempt, None
            if attempt < self.max_attempts:
                logger.info("Retrying %s (%d/%d)...", what, attempt, self.max_attempts)
                await sleep(self.delay_s(attempt))
        return None, self.max_attempts, last_err


def derive_key_pair(signer: Signer, domain_message: str = DEFAULT_DOMAIN_MESSAGE) -> Tuple[bytes, bytes]:
    """Deterministically derive (private_key, public_key) for X25519."""
    signature = signer.sign(domain_message.encode("utf-8"))
    private_key = hashlib.sha256(signature).digest()
    public_key = X25519PrivateKey.from_private_bytes(private_key).public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return private_key, public_key


def derive_shared_secret(private_key: bytes, peer_public_key: bytes) -> bytes:
    if len(peer_public_key) != 32:
        raise sentinel_error(
            KeyUnavailable, SENTINEL_E_KEY_INVALID, "network public key must be 32 bytes", got=len(peer_public_key)
        )
    try:
        peer = X25519PublicKey.from_public_bytes(bytes(peer_public_key))
        return X25519PrivateKey.from_private_bytes(bytes(private_key)).exchange(peer)
    except ValueError as e:
        # Raised for low-order peer points (all-zero shared secret).
        raise sentinel_error(KeyUnavailable, SENTINEL_E_KEY_INVALID, f"unusable network public key: {e}") from e


@dataclass
class EncryptedPayload:
    ciphertexts: List[bytes]
    nonce: bytes = field(repr=False)

    @property
    def nonce_int(self) -> int:
        return int.from_bytes(self.nonce, "little")


class EncryptionSession:
    """Key material and cipher for one agent run. Immutable after construction."""

    def __init__(
        self,
        private_key: bytes,
        public_key: bytes,
        shared_secret: bytes,
        cipher: Cipher,
        *,
        nonce_window: int = NONCE_WINDOW,
    ):
        self._private_key = bytes(private_key)
        self._public_key = bytes(public_key)
        self._shared_secret = bytes(shared_secret)
        self._cipher = cipher
        self._recent: "OrderedDict[bytes, None]" = OrderedDict()
        self._nonce_window = max(1, int(nonce_window))
        self._issued = 0

    def __repr__(self) -> str:
        return f"EncryptionSession(public_key={self.public_key_hex[:16]}...)"

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def public_key_hex(self) -> str:
        return self._public_key.hex()

    @property
    def nonces_issued(self) -> int:
        return self._issued

    def _claim_nonce(self, nonce: bytes) -> bool:
        digest = hashlib.sha256(nonce).digest()
        if digest in self._recent:
            return False
        self._recent[digest] = None
        if len(self._recent) > self._nonce_window:
            self._recent.popitem(last=False)
        self._issued += 1
        return True

    def fresh_nonce(self) -> bytes:
        while True:
            nonce = secrets.token_bytes(NONCE_SIZE)
            if self._claim_nonce(nonce):
                return nonce

    def encrypt(self, values: Sequence[int], nonce: Optional[bytes] = None) -> EncryptedPayload:
        """Encrypt `values`; a nonce is generated unless one is supplied.

        A supplied nonce matching one of the last `nonce_window` nonces of this
        session is refused.
        """
        if nonce is None:
            nonce = self.fresh_nonce()
        else:
            nonce = bytes(nonce)
            if len(nonce) != NONCE_SIZE:
                raise sentinel_error(SentinelError, SENTINEL_E_NONCE_REUSED, "nonce must be 16 bytes")
            if not self._claim_nonce(nonce):
                raise sentinel_error(SentinelError, SENTINEL_E_NONCE_REUSED, "nonce already used in this session")
        ciphertexts = [bytes(c) for c in self._cipher.encrypt([int(v) for v in values], nonce)]
        return EncryptedPayload(ciphertexts=ciphertexts, nonce=nonce)


async def negotiate(
    signer: Signer,
    transport: Any,
    network_program: Address,
    cipher_factory: CipherFactory,
    *,
    domain_message: str = DEFAULT_DOMAIN_MESSAGE,
    retry: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> EncryptionSession:
    """Establish the session. Raises KeyUnavailable when the key cannot be fetched."""
    retry = retry or RetryPolicy()
    private_key, public_key = derive_key_pair(signer, domain_message)

    async def _fetch() -> Optional[bytes]:
        return await transport.fetch_network_public_key(network_program)

    network_key, attempts, last_err = await retry.run(_fetch, what="network key fetch", sleep=sleep)
    if network_key is None:
        raise sentinel_error(
            KeyUnavailable,
            SENTINEL_E_KEY_UNAVAILABLE,
            "failed to fetch network public key",
            attempts=attempts,
            error=last_err,
            program=str(network_program),
        )

    shared_secret = derive_shared_secret(private_key, network_key)
    session = EncryptionSession(private_key, public_key, shared_secret, cipher_factory(shared_secret))
    logger.info("Encryption session established (agent x25519 pubkey: %s...)", session.public_key_hex[:16])
    return session
