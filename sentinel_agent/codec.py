"""Binary codec for ledger records, event payloads, and instruction data.

All multi-byte integers are little-endian.

Entity record layout (134 bytes):

    [0, 8)      discriminator
    [8, 9)      bump
    [9, 73)     risk state: two 32-byte ciphertexts (opaque)
    [73, 77)    u32 entity id
    [77, 109)   32-byte owner
    [109, 125)  u128 nonce (two u64 halves, low first)
    [125, 133)  i64 last check timestamp
    [133, 134)  bool active flag

Events arrive as log lines ``Program data: <base64(tag || payload)>``.
Decoding never touches the contents of ciphertext fields.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

from .errors import (
    DecodeError,
    SENTINEL_E_DECODE_TRUNCATED,
    SENTINEL_E_DECODE_UTF8,
    SENTINEL_E_ENCODE_RANGE,
    SentinelError,
    sentinel_error,
)

ENTITY_RECORD_SIZE = 134
ENTITY_RECORD_DISCRIMINATOR = bytes([60, 125, 250, 193, 181, 109, 238, 86])
OWNER_OFFSET = 77

LOG_DATA_PREFIX = "Program data: "

TAG_POSITION_REGISTERED = bytes([128, 82, 15, 99, 22, 150, 238, 103])
TAG_HEALTH_CHECK_COMPLETED = bytes([128, 134, 4, 255, 78, 88, 26, 87])
TAG_RISK_REVEALED = bytes([213, 255, 86, 151, 199, 125, 212, 169])
TAG_ACTION_REQUIRED = bytes([149, 55, 253, 113, 143, 63, 95, 88])

_U64_MASK = (1 << 64) - 1


# ---------------------------
# Entity record
# ---------------------------

@dataclass(frozen=True)
class EntityRecord:
    discriminator: bytes
    bump: int
    risk_state: Tuple[bytes, bytes]
    entity_id: int
    owner: bytes
    nonce: int
    last_check: int
    is_active: bool


def decode_entity_record(data: bytes) -> Optional[EntityRecord]:
    """Decode an entity account. Returns None for foreign or truncated data."""
    d = bytes(data)
    if len(d) < ENTITY_RECORD_SIZE:
        return None
    if d[0:8] != ENTITY_RECORD_DISCRIMINATOR:
        return None
    entity_id, = struct.unpack_from("<I", d, 73)
    nonce_lo, nonce_hi = struct.unpack_from("<QQ", d, 109)
    last_check, = struct.unpack_from("<q", d, 125)
    return EntityRecord(
        discriminator=d[0:8],
        bump=d[8],
        risk_state=(d[9:41], d[41:73]),
        entity_id=entity_id,
        owner=d[77:109],
        nonce=nonce_lo + (nonce_hi << 64),
        last_check=last_check,
        is_active=d[133] == 1,
    )


def encode_entity_record(record: EntityRecord) -> bytes:
    if len(record.discriminator) != 8 or len(record.owner) != 32:
        raise sentinel_error(SentinelError, SENTINEL_E_ENCODE_RANGE, "bad discriminator or owner length")
    if any(len(blob) != 32 for blob in record.risk_state) or len(record.risk_state) != 2:
        raise sentinel_error(SentinelError, SENTINEL_E_ENCODE_RANGE, "risk state must be two 32-byte blobs")
    if not 0 <= record.nonce < (1 << 128):
        raise sentinel_error(SentinelError, SENTINEL_E_ENCODE_RANGE, "nonce out of u128 range")
    return b"".join(
        [
            record.discriminator,
            bytes([record.bump]),
            record.risk_state[0],
            record.risk_state[1],
            struct.pack("<I", record.entity_id),
            record.owner,
            struct.pack("<QQ", record.nonce & _U64_MASK, record.nonce >> 64),
            struct.pack("<q", record.last_check),
            b"\x01" if record.is_active else b"\x00",
        ]
    )


# ---------------------------
# Events
# ---------------------------

@dataclass(frozen=True)
class PositionRegistered:
    owner: bytes
    entity_id: int
    timestamp: int
    kind = "position_registered"


@dataclass(frozen=True)
class HealthCheckCompleted:
    owner: bytes
    entity_id: int
    timestamp: int
    kind = "health_check_completed"


@dataclass(frozen=True)
class RiskRevealed:
    is_at_risk: bool
    timestamp: int
    kind = "risk_revealed"


@dataclass(frozen=True)
class ActionRequired:
    action_type: str
    timestamp: int
    kind = "action_required"


@dataclass(frozen=True)
class UnrecognizedEvent:
    tag: bytes
    payload: bytes
    kind = "unrecognized"


Event = Union[PositionRegistered, HealthCheckCompleted, RiskRevealed, ActionRequired, UnrecognizedEvent]


def decode_event_envelope(line: str) -> Optional[Tuple[bytes, bytes]]:
    """Split a ``Program data:`` log line into (tag, payload)."""
    if not line.startswith(LOG_DATA_PREFIX):
        return None
    try:
        raw = base64.b64decode(line[len(LOG_DATA_PREFIX):].strip(), validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) < 8:
        return None
    return raw[:8], raw[8:]


def _need(payload: bytes, n: int, kind: str) -> None:
    if len(payload) < n:
        raise sentinel_error(
            DecodeError, SENTINEL_E_DECODE_TRUNCATED, f"{kind} payload truncated", need=n, got=len(payload)
        )


def _decode_owner_event(payload: bytes, cls: type, kind: str):
    _need(payload, 44, kind)
    entity_id, timestamp = struct.unpack_from("<Iq", payload, 32)
    return cls(owner=payload[:32], entity_id=entity_id, timestamp=timestamp)


def _decode_registered(payload: bytes) -> PositionRegistered:
    return _decode_owner_event(payload, PositionRegistered, "position_registered")


def _decode_completed(payload: bytes) -> HealthCheckCompleted:
    return _decode_owner_event(payload, HealthCheckCompleted, "health_check_completed")


def _decode_risk(payload: bytes) -> RiskRevealed:
    _need(payload, 9, "risk_revealed")
    timestamp, = struct.unpack_from("<q", payload, 1)
    return RiskRevealed(is_at_risk=payload[0] == 1, timestamp=timestamp)


def _decode_action(payload: bytes) -> ActionRequired:
    _need(payload, 4, "action_required")
    n, = struct.unpack_from("<I", payload, 0)
    _need(payload, 4 + n + 8, "action_required")
    try:
        action_type = payload[4:4 + n].decode("utf-8")
    except UnicodeDecodeError as e:
        raise sentinel_error(DecodeError, SENTINEL_E_DECODE_UTF8, "action label is not UTF-8") from e
    timestamp, = struct.unpack_from("<q", payload, 4 + n)
    return ActionRequired(action_type=action_type, timestamp=timestamp)


_DECODERS: Dict[bytes, Callable[[bytes], Event]] = {
    TAG_POSITION_REGISTERED: _decode_registered,
    TAG_HEALTH_CHECK_COMPLETED: _decode_completed,
    TAG_RISK_REVEALED: _decode_risk,
    TAG_ACTION_REQUIRED: _decode_action,
}


def decode_event_payload(tag: bytes, payload: bytes) -> Event:
    """Decode a tagged payload. Unknown tags map to UnrecognizedEvent.

    Raises DecodeError when a known tag carries a truncated payload.
    """
    decoder = _DECODERS.get(bytes(tag))
    if decoder is None:
        return UnrecognizedEvent(tag=bytes(tag), payload=bytes(payload))
    return decoder(bytes(payload))


def encode_event_payload(event: Event) -> Tuple[bytes, bytes]:
    """Inverse of decode_event_payload: returns (tag, payload)."""
    if isinstance(event, PositionRegistered):
        return TAG_POSITION_REGISTERED, event.owner + struct.pack("<Iq", event.entity_id, event.timestamp)
    if isinstance(event, HealthCheckCompleted):
        return TAG_HEALTH_CHECK_COMPLETED, event.owner + struct.pack("<Iq", event.entity_id, event.timestamp)
    if isinstance(event, RiskRevealed):
        return TAG_RISK_REVEALED, bytes([1 if event.is_at_risk else 0]) + struct.pack("<q", event.timestamp)
    if isinstance(event, ActionRequired):
        label = event.action_type.encode("utf-8")
        return TAG_ACTION_REQUIRED, struct.pack("<I", len(label)) + label + struct.pack("<q", event.timestamp)
    return event.tag, event.payload


def encode_event_log_line(event: Event) -> str:
    tag, payload = encode_event_payload(event)
    return LOG_DATA_PREFIX + base64.b64encode(tag + payload).decode("ascii")


# ---------------------------
# Instruction data
# ---------------------------

def instruction_discriminator(name: str) -> bytes:
    """Anchor-style method selector: sha256("global:<name>")[:8]."""
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def _u128(n: int) -> bytes:
    if not 0 <= n < (1 << 128):
        raise sentinel_error(SentinelError, SENTINEL_E_ENCODE_RANGE, "value out of u128 range")
    return n.to_bytes(16, "little")


def encode_check_health(
    request_id: int,
    entity_id: int,
    ciphertexts: Sequence[bytes],
    public_key: bytes,
    nonce: int,
) -> bytes:
    if len(ciphertexts) != 3 or any(len(c) != 32 for c in ciphertexts):
        raise sentinel_error(SentinelError, SENTINEL_E_ENCODE_RANGE, "check_health expects three 32-byte ciphertexts")
    if len(public_key) != 32:
        raise sentinel_error(SentinelError, SENTINEL_E_ENCODE_RANGE, "public key must be 32 bytes")
    return b"".join(
        [
            instruction_discriminator("check_health"),
            struct.pack("<QI", request_id, entity_id),
            *[bytes(c) for c in ciphertexts],
            bytes(public_key),
            _u128(nonce),
        ]
    )


def encode_reveal_risk(request_id: int, entity_id: int) -> bytes:
    return instruction_discriminator("reveal_risk") + struct.pack("<QI", request_id, entity_id)


def encode_register_position(request_id: int, entity_id: int, nonce: int) -> bytes:
    return instruction_discriminator("register_position") + struct.pack("<QI", request_id, entity_id) + _u128(nonce)


def encode_init_comp_def(instruction_name: str) -> bytes:
    return instruction_discriminator(instruction_name)
