import hashlib

import pytest

from sentinel_agent.errors import (
    SENTINEL_E_KEY_INVALID,
    SENTINEL_E_KEY_UNAVAILABLE,
    SENTINEL_E_NONCE_REUSED,
    KeyUnavailable,
    SentinelError,
)
from sentinel_agent.session import (
    DEFAULT_DOMAIN_MESSAGE,
    NONCE_SIZE,
    EncryptedPayload,
    EncryptionSession,
    RetryPolicy,
    derive_key_pair,
    derive_shared_secret,
    negotiate,
)
from sentinel_agent.signing import WalletSigner

from conftest import NETWORK_PROGRAM, FakeCipher, no_sleep


def test_key_pair_is_deterministic_per_wallet(signer):
    priv1, pub1 = derive_key_pair(signer)
    priv2, pub2 = derive_key_pair(WalletSigner(bytes(range(32))))
    assert (priv1, pub1) == (priv2, pub2)
    assert priv1 == hashlib.sha256(signer.sign(DEFAULT_DOMAIN_MESSAGE.encode("utf-8"))).digest()
    assert len(pub1) == 32

    other_priv, _ = derive_key_pair(WalletSigner(b"\x01" * 32))
    assert other_priv != priv1
    assert derive_key_pair(signer, "another-domain")[0] != priv1


def test_shared_secret_rejects_bad_peer_key(signer):
    priv, _ = derive_key_pair(signer)
    with pytest.raises(KeyUnavailable) as ei:
        derive_shared_secret(priv, b"\x01" * 31)
    assert ei.value.code == SENTINEL_E_KEY_INVALID
    with pytest.raises(KeyUnavailable):
        # Low-order point: all-zero shared secret.
        derive_shared_secret(priv, b"\x00" * 32)


@pytest.mark.asyncio
async def test_negotiate_builds_session(signer, ledger, network_key):
    sess = await negotiate(signer, ledger, NETWORK_PROGRAM, FakeCipher, sleep=no_sleep)
    priv, pub = derive_key_pair(signer)
    assert sess.public_key == pub
    assert ledger.key_fetches == 1
    payload = sess.encrypt([1, 2, 3])
    assert len(payload.ciphertexts) == 3


@pytest.mark.asyncio
async def test_negotiate_retries_transient_failures(signer, ledger):
    ledger.key_failures = 3
    slept = []

    async def _sleep(s):
        slept.append(s)

    await negotiate(signer, ledger, NETWORK_PROGRAM, FakeCipher, retry=RetryPolicy.fixed(5, 0.5), sleep=_sleep)
    assert ledger.key_fetches == 4
    assert slept == [0.5, 0.5, 0.5]


@pytest.mark.asyncio
async def test_negotiate_gives_up_after_policy(signer, ledger):
    ledger.network_key = None
    slept = []

    async def _sleep(s):
        slept.append(s)

    with pytest.raises(KeyUnavailable) as ei:
        await negotiate(signer, ledger, NETWORK_PROGRAM, FakeCipher, sleep=_sleep)
    assert ei.value.code == SENTINEL_E_KEY_UNAVAILABLE
    assert ei.value.details["attempts"] == 10
    assert ledger.key_fetches == 10
    assert slept == [2.0] * 9


def test_nonces_are_fresh(session):
    seen = set()
    for _ in range(200):
        payload = session.encrypt([100, 14500, 11000])
        assert len(payload.nonce) == NONCE_SIZE
        seen.add(payload.nonce)
    assert len(seen) == 200
    assert session.nonces_issued == 200


def test_supplied_nonce_reuse_is_refused(session):
    nonce = b"\x05" * NONCE_SIZE
    session.encrypt([1], nonce=nonce)
    with pytest.raises(SentinelError) as ei:
        session.encrypt([2], nonce=nonce)
    assert ei.value.code == SENTINEL_E_NONCE_REUSED
    with pytest.raises(SentinelError):
        session.encrypt([2], nonce=b"\x01" * 8)


def test_session_repr_hides_secrets(session):
    text = repr(session)
    assert session.public_key_hex[:16] in text
    assert session.public_key_hex not in text


def test_payload_nonce_is_little_endian():
    p = EncryptedPayload(ciphertexts=[], nonce=b"\x01" + b"\x00" * 15)
    assert p.nonce_int == 1
    assert "nonce" not in repr(p)


def test_nonce_memory_is_bounded(signer, network_key):
    private_key, public_key = derive_key_pair(signer)
    shared = derive_shared_secret(private_key, network_key)
    sess = EncryptionSession(private_key, public_key, shared, FakeCipher(shared), nonce_window=8)
    first = sess.encrypt([1]).nonce
    for _ in range(50):
        sess.encrypt([1, 2, 3])
    assert sess.nonces_issued == 51
    assert len(sess._recent) == 8

    # Recent nonces are still refused.
    last = sess.encrypt([1]).nonce
    with pytest.raises(SentinelError):
        sess.encrypt([2], nonce=last)
    # Nonces older than the window have been forgotten.
    sess.encrypt([2], nonce=first)
