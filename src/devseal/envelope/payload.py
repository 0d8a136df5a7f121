"""Payload chunk framing and streaming encryption/decryption."""
from __future__ import annotations

import hashlib
import hmac
from struct import Struct
from typing import IO, Protocol, Sequence

from devseal.crypto.aead import TAG_LEN, AesGcmEncryptor, InvalidTag, counter_nonce
from devseal.envelope.format import _read_exact
from devseal.envelope.keymgmt import MAC_KEY_LEN
from devseal.errors import EnvelopeFormatError, IntegrityError

STREAM_CHUNK_SIZE = 1024 * 64
AUTHENTICATOR_LEN = 32
MAX_CHUNK_CIPHERTEXT_LEN = STREAM_CHUNK_SIZE + TAG_LEN

_CHUNK_PREFIX_STRUCT = Struct("<IB")


class PayloadSink(Protocol):
    def write(self, data: bytes) -> int | None: ...


def _chunk_aad(digest: bytes, index: int, final: bool) -> bytes:
    return digest + index.to_bytes(8, "big") + (b"\x01" if final else b"\x00")


def _authenticator(mac_key: bytes, aad: bytes, ciphertext: bytes) -> bytes:
    return hmac.new(mac_key, aad + hashlib.sha512(ciphertext).digest(), hashlib.sha256).digest()


def _encrypt_stream(
    in_file: IO[bytes],
    out_file: PayloadSink,
    content_key: bytes,
    digest: bytes,
    mac_keys: Sequence[bytes],
) -> int:
    """Encrypt ``in_file`` chunk by chunk; returns the number of chunks.

    One chunk is read ahead so the last record can carry the final flag. An
    empty input still produces a single, empty, final chunk.
    """

    if any(len(key) != MAC_KEY_LEN for key in mac_keys):
        raise ValueError("invalid MAC key length")

    index = 0
    current = in_file.read(STREAM_CHUNK_SIZE)
    while True:
        upcoming = in_file.read(STREAM_CHUNK_SIZE) if current else b""
        final = not upcoming
        aad = _chunk_aad(digest, index, final)
        ciphertext = AesGcmEncryptor.seal(content_key, counter_nonce(index), current, aad)
        out_file.write(_CHUNK_PREFIX_STRUCT.pack(len(ciphertext), 1 if final else 0))
        out_file.write(ciphertext)
        out_file.write(b"".join(_authenticator(key, aad, ciphertext) for key in mac_keys))
        index += 1
        if final:
            return index
        current = upcoming


def _decrypt_stream(
    in_file: IO[bytes],
    writer: PayloadSink,
    content_key: bytes,
    digest: bytes,
    mac_key: bytes,
    slot_index: int,
    slot_count: int,
) -> int:
    """Verify and decrypt every chunk into ``writer``; returns bytes written."""

    written = 0
    index = 0
    while True:
        prefix = _read_exact(in_file, _CHUNK_PREFIX_STRUCT.size)
        if len(prefix) != _CHUNK_PREFIX_STRUCT.size:
            raise EnvelopeFormatError("Envelope truncated before final payload chunk")
        ciphertext_len, final_flag = _CHUNK_PREFIX_STRUCT.unpack(prefix)
        if final_flag not in (0, 1):
            raise EnvelopeFormatError("Invalid chunk flags")
        if not (TAG_LEN <= ciphertext_len <= MAX_CHUNK_CIPHERTEXT_LEN):
            raise EnvelopeFormatError("Invalid chunk length")
        final = final_flag == 1

        ciphertext = _read_exact(in_file, ciphertext_len)
        authenticators = _read_exact(in_file, AUTHENTICATOR_LEN * slot_count)
        if len(ciphertext) != ciphertext_len or len(authenticators) != AUTHENTICATOR_LEN * slot_count:
            raise EnvelopeFormatError("Envelope truncated inside a payload chunk")

        aad = _chunk_aad(digest, index, final)
        mine = authenticators[slot_index * AUTHENTICATOR_LEN : (slot_index + 1) * AUTHENTICATOR_LEN]
        if not hmac.compare_digest(mine, _authenticator(mac_key, aad, ciphertext)):
            raise IntegrityError("Payload chunk failed sender authentication")
        try:
            plaintext = AesGcmEncryptor.open(content_key, counter_nonce(index), ciphertext, aad)
        except InvalidTag as exc:
            raise IntegrityError("Payload chunk failed integrity check") from exc

        if plaintext:
            writer.write(plaintext)
            written += len(plaintext)
        index += 1

        if final:
            if in_file.read(1):
                raise EnvelopeFormatError("Unexpected data after final payload chunk")
            return written


__all__ = [
    "AUTHENTICATOR_LEN",
    "MAX_CHUNK_CIPHERTEXT_LEN",
    "PayloadSink",
    "STREAM_CHUNK_SIZE",
    "_decrypt_stream",
    "_encrypt_stream",
]
