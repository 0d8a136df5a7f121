"""Key management for envelopes: recipient slots, sender box, MAC keys."""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass

from devseal.crypto.aead import TAG_LEN, AesGcmEncryptor, InvalidTag, prefixed_nonce
from devseal.crypto.kdf import hkdf_expand
from devseal.crypto.keys import EncryptionKeyPair
from devseal.envelope.format import CONTENT_KEY_LEN, WRAPPED_KEY_LEN
from devseal.errors import EnvelopeFormatError, IntegrityError

MAC_KEY_LEN = 32

_SLOT_KEY_INFO = b"devseal-slot-key-v1"
_MAC_KEY_INFO = b"devseal-mac-key-v1"
_SLOT_NONCE_PREFIX = b"dvslot"
_SENDER_NONCE_PREFIX = b"dvsndr"


@dataclass(frozen=True)
class WrappedKey:
    data: bytes
    tag: bytes

    def to_bytes(self) -> bytes:
        return self.data + self.tag

    @classmethod
    def from_bytes(cls, blob: bytes) -> WrappedKey:
        if len(blob) != WRAPPED_KEY_LEN:
            raise ValueError(f"wrapped key must be {WRAPPED_KEY_LEN} bytes")
        return cls(data=blob[:-TAG_LEN], tag=blob[-TAG_LEN:])


def new_content_key() -> bytes:
    return os.urandom(CONTENT_KEY_LEN)


def header_digest(header_bytes: bytes) -> bytes:
    """Digest binding payload chunks to the exact header they follow."""

    return hashlib.sha512(header_bytes).digest()


def _slot_key(shared: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    return hkdf_expand(shared, _SLOT_KEY_INFO, salt=ephemeral_public + recipient_public)


class RecipientKeyWrapper:
    """Wraps one content key to many recipient device keys.

    A fresh ephemeral X25519 key pair is generated per message; each slot key
    is derived from ``DH(ephemeral, recipient)``.
    """

    def __init__(self, content_key: bytes, ephemeral: EncryptionKeyPair | None = None) -> None:
        if len(content_key) != CONTENT_KEY_LEN:
            raise ValueError(f"content key must be {CONTENT_KEY_LEN} bytes")
        self.content_key = content_key
        self.ephemeral = ephemeral or EncryptionKeyPair.generate()

    @property
    def ephemeral_public(self) -> bytes:
        return self.ephemeral.public_bytes

    def wrap_for(self, recipient_public: bytes, index: int) -> WrappedKey:
        shared = self.ephemeral.exchange(recipient_public)
        key = _slot_key(shared, self.ephemeral_public, recipient_public)
        data, tag = AesGcmEncryptor.encrypt(key, prefixed_nonce(_SLOT_NONCE_PREFIX, index), self.content_key, b"")
        return WrappedKey(data=data, tag=tag)

    def seal_sender(self, sender_public: bytes) -> bytes:
        """Encrypt the sender's public key (or the anonymous placeholder)."""

        data, tag = AesGcmEncryptor.encrypt(
            self.content_key, prefixed_nonce(_SENDER_NONCE_PREFIX), sender_public, b""
        )
        return data + tag


def try_unwrap_content_key(
    keypair: EncryptionKeyPair,
    ephemeral_public: bytes,
    wrapped: WrappedKey,
    index: int,
) -> bytes | None:
    """Attempt to open one recipient slot; ``None`` if the key does not fit."""

    try:
        shared = keypair.exchange(ephemeral_public)
    except ValueError as exc:
        raise EnvelopeFormatError("Envelope ephemeral key is not a usable X25519 key") from exc
    key = _slot_key(shared, ephemeral_public, keypair.public_bytes)
    try:
        return AesGcmEncryptor.decrypt(key, prefixed_nonce(_SLOT_NONCE_PREFIX, index), wrapped.data, wrapped.tag, b"")
    except InvalidTag:
        return None


def open_sender_box(content_key: bytes, sender_box: bytes) -> bytes:
    try:
        return AesGcmEncryptor.open(content_key, prefixed_nonce(_SENDER_NONCE_PREFIX), sender_box)
    except InvalidTag as exc:
        raise IntegrityError("Sender field failed authentication") from exc


def derive_mac_key(shared: bytes, digest: bytes, index: int) -> bytes:
    """Per-recipient key authenticating the sender over every payload chunk.

    ``shared`` is ``DH(sender, recipient)``, computed by the sender with its
    private key and by the recipient with the boxed sender public key.
    """

    return hkdf_expand(shared, _MAC_KEY_INFO + index.to_bytes(4, "big"), salt=digest, length=MAC_KEY_LEN)


__all__ = [
    "MAC_KEY_LEN",
    "RecipientKeyWrapper",
    "WrappedKey",
    "derive_mac_key",
    "header_digest",
    "new_content_key",
    "open_sender_box",
    "try_unwrap_content_key",
]
