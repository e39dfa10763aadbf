from __future__ import annotations

import pytest

from security.crypto import (
    ChunkAuthenticationError,
    derive_session_key,
    generate_keypair,
    open_chunk,
    seal_chunk,
)


@pytest.fixture
def session_keys():
    alice_priv, alice_pub = generate_keypair()
    bob_priv, bob_pub = generate_keypair()
    return (
        derive_session_key(alice_priv, bob_pub, "t-1"),
        derive_session_key(bob_priv, alice_pub, "t-1"),
    )


def test_both_sides_derive_the_same_key(session_keys):
    sender_key, receiver_key = session_keys
    assert sender_key == receiver_key
    assert len(sender_key) == 32


def test_key_is_bound_to_transfer():
    priv, _ = generate_keypair()
    _, peer_pub = generate_keypair()
    assert derive_session_key(priv, peer_pub, "t-1") != derive_session_key(priv, peer_pub, "t-2")


def test_chunk_is_bound_to_sequence(session_keys):
    key, _ = session_keys
    sealed = seal_chunk(key, 3, b"chunk data")
    assert open_chunk(key, 3, sealed) == b"chunk data"
    with pytest.raises(ChunkAuthenticationError):
        open_chunk(key, 4, sealed)


def test_tampered_or_truncated_chunk_is_rejected(session_keys):
    key, _ = session_keys
    sealed = bytearray(seal_chunk(key, 0, b"chunk data"))
    sealed[-1] ^= 0x01
    with pytest.raises(ChunkAuthenticationError):
        open_chunk(key, 0, bytes(sealed))
    with pytest.raises(ChunkAuthenticationError):
        open_chunk(key, 0, b"short")


def test_bad_peer_key_length():
    priv, _ = generate_keypair()
    with pytest.raises(ValueError):
        derive_session_key(priv, b"\x00" * 16, "t-1")
