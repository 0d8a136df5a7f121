"""AES-256-GCM helpers.

Thin wrapper around :class:`cryptography.hazmat.primitives.ciphers.aead.AESGCM`
that keeps the authentication tag separate from the ciphertext, so fixed-size
wire fields can store ``(ciphertext, tag)`` pairs the same way everywhere.
"""

from __future__ import annotations

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LEN = 32
NONCE_LEN = 12
TAG_LEN = 16

__all__ = [
    "AesGcmEncryptor",
    "InvalidTag",
    "KEY_LEN",
    "NONCE_LEN",
    "TAG_LEN",
    "counter_nonce",
    "prefixed_nonce",
]


def counter_nonce(index: int) -> bytes:
    """Return a 96-bit nonce encoding ``index`` big-endian in the low 8 bytes."""

    if index < 0:
        raise ValueError("nonce counter must be non-negative")
    return bytes(4) + index.to_bytes(8, "big")


def prefixed_nonce(prefix: bytes, index: int = 0) -> bytes:
    """Build a nonce from a short domain prefix padded with ``index``."""

    if len(prefix) > NONCE_LEN - 4:
        raise ValueError("nonce prefix is too long")
    return prefix.ljust(NONCE_LEN - 4, b"\x00") + index.to_bytes(4, "big")


class AesGcmEncryptor:
    """Detached-tag AES-GCM encryption."""

    @staticmethod
    def encrypt(key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> tuple[bytes, bytes]:
        sealed = AESGCM(key).encrypt(nonce, plaintext, aad or None)
        return sealed[:-TAG_LEN], sealed[-TAG_LEN:]

    @staticmethod
    def decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes, aad: bytes) -> bytes:
        if len(tag) != TAG_LEN:
            raise InvalidTag()
        return AESGCM(key).decrypt(nonce, ciphertext + tag, aad or None)

    @staticmethod
    def seal(key: bytes, nonce: bytes, plaintext: bytes, aad: bytes = b"") -> bytes:
        """Encrypt and return ``ciphertext || tag``."""

        return AESGCM(key).encrypt(nonce, plaintext, aad or None)

    @staticmethod
    def open(key: bytes, nonce: bytes, sealed: bytes, aad: bytes = b"") -> bytes:
        """Inverse of :meth:`seal`; raises :class:`InvalidTag` on mismatch."""

        if len(sealed) < TAG_LEN:
            raise InvalidTag()
        return AESGCM(key).decrypt(nonce, sealed, aad or None)
