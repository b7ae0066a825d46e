import base64
import hashlib
import struct

import pytest

from sentinel_agent.codec import (
    ENTITY_RECORD_DISCRIMINATOR,
    ENTITY_RECORD_SIZE,
    LOG_DATA_PREFIX,
    TAG_ACTION_REQUIRED,
    TAG_HEALTH_CHECK_COMPLETED,
    TAG_POSITION_REGISTERED,
    TAG_RISK_REVEALED,
    ActionRequired,
    EntityRecord,
    HealthCheckCompleted,
    PositionRegistered,
    RiskRevealed,
    UnrecognizedEvent,
    decode_entity_record,
    decode_event_envelope,
    decode_event_payload,
    encode_check_health,
    encode_entity_record,
    encode_event_log_line,
    encode_register_position,
    encode_reveal_risk,
    instruction_discriminator,
)
from sentinel_agent.errors import (
    SENTINEL_E_DECODE_TRUNCATED,
    SENTINEL_E_DECODE_UTF8,
    DecodeError,
    SentinelError,
)


def _record(**kw) -> EntityRecord:
    base = dict(
        discriminator=ENTITY_RECORD_DISCRIMINATOR,
        bump=254,
        risk_state=(b"\x11" * 32, b"\x22" * 32),
        entity_id=7,
        owner=bytes(range(32)),
        nonce=(5 << 64) + 9,
        last_check=1_700_000_000,
        is_active=True,
    )
    base.update(kw)
    return EntityRecord(**base)


def test_entity_record_round_trip():
    rec = _record()
    data = encode_entity_record(rec)
    assert len(data) == ENTITY_RECORD_SIZE
    assert decode_entity_record(data) == rec


def test_hand_built_account_buffer_decodes():
    owner = bytes(range(100, 132))
    buf = (
        bytes([60, 125, 250, 193, 181, 109, 238, 86])
        + bytes([1])
        + b"\x00" * 64
        + (1).to_bytes(4, "little")
        + owner
        + b"\x00" * 16
        + b"\x00" * 8
        + b"\x01"
    )
    assert len(buf) == ENTITY_RECORD_SIZE
    rec = decode_entity_record(buf)
    assert rec is not None
    assert rec.bump == 1
    assert rec.entity_id == 1
    assert rec.owner == owner
    assert rec.nonce == 0
    assert rec.last_check == 0
    assert rec.is_active is True


def test_entity_record_field_offsets():
    data = encode_entity_record(_record(entity_id=0x01020304, is_active=False))
    assert data[:8] == ENTITY_RECORD_DISCRIMINATOR
    assert data[8] == 254
    assert data[73:77] == bytes([4, 3, 2, 1])
    assert data[77:109] == bytes(range(32))
    assert struct.unpack_from("<QQ", data, 109) == (9, 5)
    assert data[133] == 0


def test_nonce_is_low_plus_high_shifted():
    data = bytearray(encode_entity_record(_record()))
    struct.pack_into("<QQ", data, 109, 1, 2)
    assert decode_entity_record(bytes(data)).nonce == 1 + (2 << 64)


def test_decode_entity_record_rejects_bad_input():
    good = encode_entity_record(_record())
    assert decode_entity_record(b"") is None
    assert decode_entity_record(good[:-1]) is None
    foreign = b"\x00" * 8 + good[8:]
    assert decode_entity_record(foreign) is None


def test_decode_entity_record_ignores_trailing_bytes():
    good = encode_entity_record(_record())
    assert decode_entity_record(good + b"\xff" * 10) == _record()


def _line(raw: bytes) -> str:
    return LOG_DATA_PREFIX + base64.b64encode(raw).decode("ascii")


def test_envelope_requires_prefix_and_valid_base64():
    assert decode_event_envelope("Program log: hello") is None
    assert decode_event_envelope(LOG_DATA_PREFIX + "!!not base64!!") is None
    assert decode_event_envelope(_line(b"\x01" * 7)) is None
    assert decode_event_envelope(_line(TAG_RISK_REVEALED)) == (TAG_RISK_REVEALED, b"")


def test_risk_revealed_payload():
    payload = b"\x01" + struct.pack("<q", 1_700_000_123)
    tag, body = decode_event_envelope(_line(TAG_RISK_REVEALED + payload))
    ev = decode_event_payload(tag, body)
    assert ev == RiskRevealed(is_at_risk=True, timestamp=1_700_000_123)
    assert ev.kind == "risk_revealed"

    ev = decode_event_payload(TAG_RISK_REVEALED, b"\x00" + b"\x00" * 8)
    assert ev.is_at_risk is False


def test_owner_events_payload():
    owner = b"\xaa" * 32
    payload = owner + struct.pack("<Iq", 3, 42)
    assert decode_event_payload(TAG_POSITION_REGISTERED, payload) == PositionRegistered(owner, 3, 42)
    assert decode_event_payload(TAG_HEALTH_CHECK_COMPLETED, payload) == HealthCheckCompleted(owner, 3, 42)


def test_action_required_payload():
    label = "deleverage".encode("utf-8")
    payload = struct.pack("<I", len(label)) + label + struct.pack("<q", 99)
    assert decode_event_payload(TAG_ACTION_REQUIRED, payload) == ActionRequired("deleverage", 99)


def test_unknown_tag_is_unrecognized():
    ev = decode_event_payload(b"\x09" * 8, b"whatever")
    assert isinstance(ev, UnrecognizedEvent)
    assert ev.payload == b"whatever"


@pytest.mark.parametrize(
    "tag,payload",
    [
        (TAG_RISK_REVEALED, b"\x01" * 8),
        (TAG_POSITION_REGISTERED, b"\x00" * 43),
        (TAG_ACTION_REQUIRED, b"\x00\x00"),
        (TAG_ACTION_REQUIRED, struct.pack("<I", 10) + b"short"),
    ],
)
def test_truncated_known_payload_raises(tag, payload):
    with pytest.raises(DecodeError) as ei:
        decode_event_payload(tag, payload)
    assert ei.value.code == SENTINEL_E_DECODE_TRUNCATED


def test_action_label_must_be_utf8():
    payload = struct.pack("<I", 2) + b"\xff\xfe" + struct.pack("<q", 1)
    with pytest.raises(DecodeError) as ei:
        decode_event_payload(TAG_ACTION_REQUIRED, payload)
    assert ei.value.code == SENTINEL_E_DECODE_UTF8


def test_event_log_line_decodes_back():
    ev = ActionRequired("close_position", 1234)
    tag, body = decode_event_envelope(encode_event_log_line(ev))
    assert tag == TAG_ACTION_REQUIRED
    assert decode_event_payload(tag, body) == ev


def test_instruction_discriminator_is_anchor_selector():
    assert instruction_discriminator("check_health") == hashlib.sha256(b"global:check_health").digest()[:8]


def test_check_health_instruction_layout():
    cts = [b"\x01" * 32, b"\x02" * 32, b"\x03" * 32]
    data = encode_check_health(2**64 - 1, 1, cts, b"\x04" * 32, 2**128 - 1)
    assert len(data) == 8 + 8 + 4 + 96 + 32 + 16
    assert data[8:16] == b"\xff" * 8
    assert data[16:20] == b"\x01\x00\x00\x00"
    assert data[20:116] == b"".join(cts)
    assert data[116:148] == b"\x04" * 32
    assert data[148:] == b"\xff" * 16


def test_check_health_rejects_bad_shapes():
    with pytest.raises(SentinelError):
        encode_check_health(1, 1, [b"\x00" * 32] * 2, b"\x00" * 32, 0)
    with pytest.raises(SentinelError):
        encode_check_health(1, 1, [b"\x00" * 32] * 3, b"\x00" * 31, 0)
    with pytest.raises(SentinelError):
        encode_check_health(1, 1, [b"\x00" * 32] * 3, b"\x00" * 32, 1 << 128)


def test_reveal_and_register_layout():
    assert encode_reveal_risk(5, 1) == instruction_discriminator("reveal_risk") + struct.pack("<QI", 5, 1)
    data = encode_register_position(5, 2, 3)
    assert len(data) == 8 + 12 + 16
    assert data[20:] == (3).to_bytes(16, "little")
