"""Envelope header format helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from struct import Struct
from typing import IO

from devseal.crypto.aead import TAG_LEN
from devseal.crypto.keys import PUBLIC_KEY_LEN
from devseal.errors import EnvelopeFormatError, FormatMismatch, UnsupportedFeatureError

MAGIC = b"DVSEAL"
MAGIC_LEN = 6
VERSION = 1

FORMAT_TAG_ENCRYPTED = 0x01
FORMAT_TAG_SIGNED = 0x02
FORMAT_TAG_DETACHED = 0x03

FLAG_HIDE_RECIPIENTS = 0x0001
KNOWN_FLAGS = FLAG_HIDE_RECIPIENTS

SLOT_MARKER_KEY_ID = 0
SLOT_MARKER_ANONYMOUS = 1

CONTENT_KEY_LEN = 32
WRAPPED_KEY_LEN = CONTENT_KEY_LEN + TAG_LEN
SENDER_BOX_LEN = PUBLIC_KEY_LEN + TAG_LEN
MAX_RECIPIENTS = 1024

SNIFF_LEN = 64
MAX_LEADING_WHITESPACE = 64 * 1024

_HEADER_PREFIX_STRUCT = Struct("<6sBBHI")
_HEADER_BODY_STRUCT = Struct(f"<{PUBLIC_KEY_LEN}s{SENDER_BOX_LEN}sH")
_SLOT_STRUCT = Struct(f"<B{PUBLIC_KEY_LEN}s{WRAPPED_KEY_LEN}s")

MIN_HEADER_LEN = _HEADER_PREFIX_STRUCT.size + _HEADER_BODY_STRUCT.size + _SLOT_STRUCT.size
MAX_HEADER_LEN = _HEADER_PREFIX_STRUCT.size + _HEADER_BODY_STRUCT.size + MAX_RECIPIENTS * _SLOT_STRUCT.size

# First byte of a binary OpenPGP packet: bit 7 set, then either the old
# (bit 6 clear) or new (bit 6 set) packet header layout.
_PGP_PACKET_TAGS = {1, 2, 3, 4, 5, 6, 8, 11, 18}


class MessageFormat(enum.Enum):
    DEVSEAL_ENCRYPTED = "devseal encrypted message"
    DEVSEAL_SIGNED = "devseal signed message"
    DEVSEAL_DETACHED = "devseal detached signature"
    PGP = "OpenPGP message"
    UNKNOWN = "unknown format"

    @property
    def label(self) -> str:
        return self.value


FORMAT_TAGS = {
    FORMAT_TAG_ENCRYPTED: MessageFormat.DEVSEAL_ENCRYPTED,
    FORMAT_TAG_SIGNED: MessageFormat.DEVSEAL_SIGNED,
    FORMAT_TAG_DETACHED: MessageFormat.DEVSEAL_DETACHED,
}
_TAG_FOR_FORMAT = {fmt: tag for tag, fmt in FORMAT_TAGS.items()}

ARMOR_NAMES = {
    MessageFormat.DEVSEAL_ENCRYPTED: "ENCRYPTED MESSAGE",
    MessageFormat.DEVSEAL_SIGNED: "SIGNED MESSAGE",
    MessageFormat.DEVSEAL_DETACHED: "DETACHED SIGNATURE",
}
ARMOR_PREFIX = b"BEGIN DEVSEAL "


@dataclass(frozen=True)
class RecipientSlot:
    key_id: bytes | None
    wrapped_key: bytes

    @property
    def anonymous(self) -> bool:
        return self.key_id is None


@dataclass(frozen=True)
class EnvelopeHeader:
    format: MessageFormat
    flags: int
    ephemeral_key: bytes
    sender_box: bytes
    slots: tuple[RecipientSlot, ...]
    version: int = VERSION

    @property
    def hide_recipients(self) -> bool:
        return bool(self.flags & FLAG_HIDE_RECIPIENTS)

    @property
    def recipient_key_ids(self) -> list[bytes]:
        return [slot.key_id for slot in self.slots if slot.key_id is not None]

    def to_bytes(self) -> bytes:
        return build_header(self)


def build_header(header: EnvelopeHeader) -> bytes:
    """Serialize ``header``; the total length is stored in the prefix."""

    tag = _TAG_FOR_FORMAT.get(header.format)
    if tag is None:
        raise EnvelopeFormatError(f"Cannot write a header for {header.format.label}")
    if header.flags & ~KNOWN_FLAGS:
        raise UnsupportedFeatureError("Header flags set for unsupported features")
    if len(header.ephemeral_key) != PUBLIC_KEY_LEN:
        raise EnvelopeFormatError(f"ephemeral_key must be {PUBLIC_KEY_LEN} bytes")
    if len(header.sender_box) != SENDER_BOX_LEN:
        raise EnvelopeFormatError(f"sender_box must be {SENDER_BOX_LEN} bytes")
    if not header.slots:
        raise EnvelopeFormatError("At least one recipient slot is required")
    if len(header.slots) > MAX_RECIPIENTS:
        raise EnvelopeFormatError(f"Envelope has too many recipients (max {MAX_RECIPIENTS})")

    slot_blobs = []
    for slot in header.slots:
        if len(slot.wrapped_key) != WRAPPED_KEY_LEN:
            raise EnvelopeFormatError(f"wrapped_key must be {WRAPPED_KEY_LEN} bytes")
        if slot.key_id is None:
            slot_blobs.append(_SLOT_STRUCT.pack(SLOT_MARKER_ANONYMOUS, bytes(PUBLIC_KEY_LEN), slot.wrapped_key))
        else:
            if len(slot.key_id) != PUBLIC_KEY_LEN:
                raise EnvelopeFormatError(f"key_id must be {PUBLIC_KEY_LEN} bytes")
            slot_blobs.append(_SLOT_STRUCT.pack(SLOT_MARKER_KEY_ID, slot.key_id, slot.wrapped_key))

    header_len = _HEADER_PREFIX_STRUCT.size + _HEADER_BODY_STRUCT.size + _SLOT_STRUCT.size * len(slot_blobs)
    prefix = _HEADER_PREFIX_STRUCT.pack(MAGIC, header.version, tag, header.flags, header_len)
    body = _HEADER_BODY_STRUCT.pack(header.ephemeral_key, header.sender_box, len(slot_blobs))
    return b"".join([prefix, body, *slot_blobs])


def _parse_prefix(data: bytes) -> tuple[int, MessageFormat, int, int]:
    magic, version, tag, flags, header_len = _HEADER_PREFIX_STRUCT.unpack(data[: _HEADER_PREFIX_STRUCT.size])
    if magic != MAGIC:
        raise EnvelopeFormatError("Invalid magic")
    return version, FORMAT_TAGS.get(tag, MessageFormat.UNKNOWN), flags, header_len


def parse_header(data: bytes) -> EnvelopeHeader:
    """Parse and validate complete header bytes."""

    if len(data) < _HEADER_PREFIX_STRUCT.size:
        raise EnvelopeFormatError("Header too short")

    version, fmt, flags, header_len = _parse_prefix(data)
    if version != VERSION:
        raise EnvelopeFormatError(f"Unsupported envelope version {version}")
    if fmt is not MessageFormat.DEVSEAL_ENCRYPTED:
        raise EnvelopeFormatError(f"Header describes a {fmt.label}, not an encrypted message")
    if flags & ~KNOWN_FLAGS:
        raise UnsupportedFeatureError("Header flags set for unsupported features")
    if header_len != len(data):
        raise EnvelopeFormatError("Invalid header length")
    if len(data) < MIN_HEADER_LEN:
        raise EnvelopeFormatError("Header too short for a recipient slot")

    offset = _HEADER_PREFIX_STRUCT.size
    ephemeral_key, sender_box, slot_count = _HEADER_BODY_STRUCT.unpack(
        data[offset : offset + _HEADER_BODY_STRUCT.size]
    )
    offset += _HEADER_BODY_STRUCT.size

    if slot_count == 0:
        raise EnvelopeFormatError("Envelope has no recipients")
    if slot_count > MAX_RECIPIENTS:
        raise EnvelopeFormatError(f"Envelope has too many recipients (max {MAX_RECIPIENTS})")
    if offset + slot_count * _SLOT_STRUCT.size != len(data):
        raise EnvelopeFormatError("Recipient table length does not match header length")

    hide_recipients = bool(flags & FLAG_HIDE_RECIPIENTS)
    slots = []
    for _ in range(slot_count):
        marker, key_id, wrapped_key = _SLOT_STRUCT.unpack(data[offset : offset + _SLOT_STRUCT.size])
        offset += _SLOT_STRUCT.size
        if marker == SLOT_MARKER_ANONYMOUS:
            if any(key_id):
                raise EnvelopeFormatError("Anonymous recipient slot carries a key id")
            slots.append(RecipientSlot(key_id=None, wrapped_key=wrapped_key))
        elif marker == SLOT_MARKER_KEY_ID:
            if hide_recipients:
                raise EnvelopeFormatError("Recipient key id present in a hidden-recipient envelope")
            slots.append(RecipientSlot(key_id=key_id, wrapped_key=wrapped_key))
        else:
            raise EnvelopeFormatError(f"Unknown recipient slot marker {marker}")

    return EnvelopeHeader(
        format=fmt,
        flags=flags,
        ephemeral_key=ephemeral_key,
        sender_box=sender_box,
        slots=tuple(slots),
        version=version,
    )


def _read_exact(file_obj: IO[bytes], size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = file_obj.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)



def read_sniff(file_obj: IO[bytes]) -> bytes:
    """Read the bytes :func:`detect_format` needs from the start of a stream.

    Leading whitespace, such as the blank lines in front of pasted armor, does
    not count towards the ``SNIFF_LEN`` bytes that are inspected.
    """

    data = _read_exact(file_obj, SNIFF_LEN)
    while len(data) < MAX_LEADING_WHITESPACE + SNIFF_LEN:
        missing = SNIFF_LEN - len(data.lstrip())
        if missing <= 0:
            break
        more = _read_exact(file_obj, missing)
        if not more:
            break
        data += more
    return data

def read_header_from_stream(
    file_obj: IO[bytes],
    *,
    expected: MessageFormat = MessageFormat.DEVSEAL_ENCRYPTED,
    operation: str = "decrypt",
) -> tuple[EnvelopeHeader, bytes]:
    """Read and parse an envelope header from a binary stream.

    The format tag is checked as soon as the fixed prefix is available, so a
    foreign message is rejected before the rest of the header is consumed.
    """

    prefix = _read_exact(file_obj, _HEADER_PREFIX_STRUCT.size)
    if len(prefix) < _HEADER_PREFIX_STRUCT.size:
        raise EnvelopeFormatError("Envelope too small for header")

    version, fmt, _flags, header_len = _parse_prefix(prefix)
    if fmt is not expected:
        raise FormatMismatch(expected, fmt, operation)
    if version != VERSION:
        raise EnvelopeFormatError(f"Unsupported envelope version {version}")
    if header_len < MIN_HEADER_LEN or header_len > MAX_HEADER_LEN:
        raise EnvelopeFormatError("Invalid header length")

    rest = _read_exact(file_obj, header_len - len(prefix))
    header_bytes = prefix + rest
    if len(header_bytes) != header_len:
        raise EnvelopeFormatError("Envelope missing header bytes")
    return parse_header(header_bytes), header_bytes


def _looks_like_openpgp_packet(first: int) -> bool:
    if not first & 0x80:
        return False
    if first & 0x40:
        tag = first & 0x3F
    else:
        tag = (first >> 2) & 0x0F
    return tag in _PGP_PACKET_TAGS


def detect_format(prefix: bytes) -> tuple[MessageFormat, bool]:
    """Classify the first bytes of a message.

    Returns the detected format and whether the input is ASCII-armored.
    """

    if prefix.startswith(MAGIC):
        if len(prefix) <= MAGIC_LEN + 1:
            return MessageFormat.UNKNOWN, False
        return FORMAT_TAGS.get(prefix[MAGIC_LEN + 1], MessageFormat.UNKNOWN), False

    text = prefix.lstrip()
    if text.startswith(ARMOR_PREFIX):
        end = text.find(b".")
        if end < 0:
            return MessageFormat.UNKNOWN, True
        name = text[len(ARMOR_PREFIX) : end].decode("ascii", "replace")
        for fmt, armor_name in ARMOR_NAMES.items():
            if name == armor_name:
                return fmt, True
        return MessageFormat.UNKNOWN, True
    if text.startswith(b"-----BEGIN PGP "):
        return MessageFormat.PGP, True

    if prefix and _looks_like_openpgp_packet(prefix[0]):
        return MessageFormat.PGP, False
    return MessageFormat.UNKNOWN, False


class PushbackReader:
    """Binary reader that replays already-consumed bytes before the stream."""

    def __init__(self, prefix: bytes, stream: IO[bytes]) -> None:
        self._prefix = prefix
        self._stream = stream

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            data = self._prefix + self._stream.read()
            self._prefix = b""
            return data
        if self._prefix:
            data = self._prefix[:size]
            self._prefix = self._prefix[size:]
            if len(data) < size:
                data += self._stream.read(size - len(data))
            return data
        return self._stream.read(size)


__all__ = [
    "ARMOR_NAMES",
    "CONTENT_KEY_LEN",
    "EnvelopeHeader",
    "FLAG_HIDE_RECIPIENTS",
    "FORMAT_TAGS",
    "MAGIC",
    "MAX_HEADER_LEN",
    "MAX_LEADING_WHITESPACE",
    "MAX_RECIPIENTS",
    "MessageFormat",
    "PushbackReader",
    "RecipientSlot",
    "SENDER_BOX_LEN",
    "SNIFF_LEN",
    "VERSION",
    "WRAPPED_KEY_LEN",
    "build_header",
    "detect_format",
    "parse_header",
    "read_header_from_stream",
    "read_sniff",
]
