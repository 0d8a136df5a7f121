"""Device key pairs.

Every device holds an X25519 encryption key pair (its envelope recipient key)
and an Ed25519 signing key pair used to attest newly provisioned devices.
Public keys travel as 32 raw bytes; the raw encryption public key doubles as
the key id written into envelope recipient slots.
"""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519

PUBLIC_KEY_LEN = 32
SIGNATURE_LEN = 64


def short_kid(public_key: bytes) -> str:
    """Return a short hex fingerprint suitable for log lines."""

    return public_key[:8].hex()


def _raw_public(key: x25519.X25519PublicKey | ed25519.Ed25519PublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def _raw_private(key: x25519.X25519PrivateKey | ed25519.Ed25519PrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )


@dataclass(frozen=True)
class EncryptionKeyPair:
    """X25519 key pair of a device."""

    private_key: x25519.X25519PrivateKey

    @classmethod
    def generate(cls) -> EncryptionKeyPair:
        return cls(x25519.X25519PrivateKey.generate())

    @classmethod
    def from_private_bytes(cls, data: bytes) -> EncryptionKeyPair:
        return cls(x25519.X25519PrivateKey.from_private_bytes(data))

    @property
    def public_bytes(self) -> bytes:
        return _raw_public(self.private_key.public_key())

    @property
    def private_bytes(self) -> bytes:
        return _raw_private(self.private_key)

    def exchange(self, peer_public: bytes) -> bytes:
        """X25519 Diffie-Hellman with a raw 32-byte peer key."""

        return self.private_key.exchange(x25519.X25519PublicKey.from_public_bytes(peer_public))


@dataclass(frozen=True)
class SigningKeyPair:
    """Ed25519 key pair of a device."""

    private_key: ed25519.Ed25519PrivateKey

    @classmethod
    def generate(cls) -> SigningKeyPair:
        return cls(ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def from_private_bytes(cls, data: bytes) -> SigningKeyPair:
        return cls(ed25519.Ed25519PrivateKey.from_private_bytes(data))

    @property
    def public_bytes(self) -> bytes:
        return _raw_public(self.private_key.public_key())

    @property
    def private_bytes(self) -> bytes:
        return _raw_private(self.private_key)

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


def verify_signature(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Check an Ed25519 signature made with a raw 32-byte public key."""

    if len(public_key) != PUBLIC_KEY_LEN or len(signature) != SIGNATURE_LEN:
        return False
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except InvalidSignature:
        return False
    return True


def validate_public_key(data: bytes) -> bytes:
    """Reject anything that is not a loadable X25519 public key."""

    if len(data) != PUBLIC_KEY_LEN:
        raise ValueError(f"public key must be {PUBLIC_KEY_LEN} bytes, got {len(data)}")
    x25519.X25519PublicKey.from_public_bytes(data)
    return data


__all__ = [
    "EncryptionKeyPair",
    "PUBLIC_KEY_LEN",
    "SIGNATURE_LEN",
    "SigningKeyPair",
    "short_kid",
    "validate_public_key",
    "verify_signature",
]
