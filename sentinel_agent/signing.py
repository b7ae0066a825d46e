"""
sentinel_agent.signing: the agent's signing credential.

The agent's identity is an Ed25519 keypair stored as a Solana-style JSON file:
a list of 64 integers, the 32-byte seed followed by the 32-byte public key.

The credential is used for one thing inside this package: signing the
encryption-key domain message from which the session key pair is derived
(see session.derive_key_pair). Ed25519 signatures are deterministic, so the
same wallet always yields the same session keys.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .addresses import Address
from .errors import SENTINEL_E_WALLET, WalletError, sentinel_error


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""

    @property
    def public_key(self) -> Address: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class WalletSigner:
    """Signer holding an in-process Ed25519 seed."""

    seed: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.seed) != 32:
            raise sentinel_error(WalletError, SENTINEL_E_WALLET, "seed must be 32 bytes", got=len(self.seed))
        self._key = Ed25519PrivateKey.from_private_bytes(bytes(self.seed))
        pub = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._public = Address(pub)

    @classmethod
    def generate(cls) -> "WalletSigner":
        key = Ed25519PrivateKey.generate()
        seed = key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cls(seed)

    @classmethod
    def from_secret_key(cls, secret_key: bytes) -> "WalletSigner":
        """Build from a 64-byte secret key (seed || public key)."""
        if len(secret_key) != 64:
            raise sentinel_error(
                WalletError, SENTINEL_E_WALLET, "secret key must be 64 bytes", got=len(secret_key)
            )
        signer = cls(bytes(secret_key[:32]))
        if signer.public_key.raw != bytes(secret_key[32:]):
            raise sentinel_error(WalletError, SENTINEL_E_WALLET, "public half does not match seed")
        return signer

    @classmethod
    def from_file(cls, path: str | Path) -> "WalletSigner":
        p = Path(path).expanduser()
        try:
            raw: Any = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise sentinel_error(WalletError, SENTINEL_E_WALLET, f"wallet file not found: {p}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise sentinel_error(WalletError, SENTINEL_E_WALLET, f"unreadable wallet file {p}: {e}") from e
        if not isinstance(raw, list) or not all(isinstance(b, int) and 0 <= b <= 255 for b in raw):
            raise sentinel_error(WalletError, SENTINEL_E_WALLET, "wallet file must hold a JSON list of bytes")
        return cls.from_secret_key(bytes(raw))

    @property
    def public_key(self) -> Address:
        return self._public

    def sign(self, message: bytes) -> bytes:
        return self._key.sign(bytes(message))

    def to_json(self) -> str:
        return json.dumps(list(self.seed + self._public.raw))
