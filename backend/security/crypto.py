"""
Live channel session crypto: X25519 key agreement + AES-256-GCM.

Keys are ephemeral (one pair per channel) and never persisted. Every data
chunk is sealed with its sequence number as associated data, so a receiver
rejects reordered or replayed chunks.
"""

import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

NONCE_SIZE = 12
KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32
HKDF_INFO = b"peerdrop-v1-channel-key"


class ChunkAuthenticationError(Exception):
    """A sealed chunk failed authentication."""


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """Returns (private_key, raw 32-byte public key)."""
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def derive_session_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
    transfer_id: str,
) -> bytes:
    """HKDF-SHA256 over the shared secret, salted with the transfer id."""
    if len(peer_public_bytes) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Peer public key must be {PUBLIC_KEY_SIZE} bytes")
    shared_secret = private_key.exchange(
        X25519PublicKey.from_public_bytes(peer_public_bytes)
    )
    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=transfer_id.encode("utf-8"),
        info=HKDF_INFO,
    ).derive(shared_secret)


def seal_chunk(key: bytes, seq: int, plaintext: bytes) -> bytes:
    """nonce (12) || ciphertext || tag (16), bound to ``seq``."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, struct.pack("!Q", seq))


def open_chunk(key: bytes, seq: int, sealed: bytes) -> bytes:
    if len(sealed) < NONCE_SIZE:
        raise ChunkAuthenticationError("Sealed chunk is truncated")
    nonce, ciphertext = sealed[:NONCE_SIZE], sealed[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, struct.pack("!Q", seq))
    except InvalidTag as e:
        raise ChunkAuthenticationError(f"Chunk {seq} failed authentication") from e
