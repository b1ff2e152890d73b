"""
Security module: ECDH key exchange, AES-256-GCM chunk encryption and
SHA-256 content checksums.

Channel keys are ephemeral (per-session) and never persisted.
"""

import hashlib
import os
import logging

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32
HKDF_INFO = b"peershare-v1-channel-key"


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for transmission.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def derive_shared_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
    context: bytes = b"",
) -> bytes:
    """
    Derive a 32-byte AES-256 channel key from the ECDH shared secret.

    ``context`` (e.g. the session id) is mixed into the HKDF info so a key
    is only valid for the channel it was negotiated on.
    """
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    shared_secret = private_key.exchange(peer_public_key)

    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=HKDF_INFO + context,
    ).derive(shared_secret)


def encrypt_chunk(key: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    """
    Encrypt a data chunk using AES-256-GCM.

    Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def decrypt_chunk(key: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    """
    Decrypt a data chunk encrypted with AES-256-GCM.

    Expects: nonce (12 bytes) || ciphertext || tag (16 bytes).
    Raises cryptography.exceptions.InvalidTag on tampering.
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    return AESGCM(key).decrypt(nonce, ciphertext, aad)


def new_digest():
    """Running hash used for file checksums."""
    return hashlib.sha256()


def checksum_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def checksum_file(path: str, chunk_size: int = 1024 * 1024) -> str:
    """Hex SHA-256 of a file on disk, read in chunks."""
    digest = new_digest()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()
