"""Envelope encryption and decryption over binary streams."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import IO, Iterable, Sequence

from devseal.crypto.keys import EncryptionKeyPair, short_kid, validate_public_key
from devseal.devices.model import Device, DeviceType
from devseal.envelope.armor import ArmorReader, ArmorWriter
from devseal.envelope.format import (
    FLAG_HIDE_RECIPIENTS,
    EnvelopeHeader,
    MessageFormat,
    PushbackReader,
    RecipientSlot,
    build_header,
    detect_format,
    read_header_from_stream,
    read_sniff,
)
from devseal.envelope.keymgmt import (
    RecipientKeyWrapper,
    WrappedKey,
    derive_mac_key,
    header_digest,
    new_content_key,
    open_sender_box,
    try_unwrap_content_key,
)
from devseal.envelope.payload import PayloadSink, _decrypt_stream, _encrypt_stream
from devseal.errors import FormatMismatch, IntegrityError, NoDecryptionKey, UnsupportedFeatureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    name: str
    type: DeviceType
    encryption_key: bytes

    @classmethod
    def from_device(cls, device: Device) -> DeviceInfo:
        return cls(id=device.id, name=device.name, type=device.type, encryption_key=device.encryption_key)


@dataclass(frozen=True)
class MessageInfo:
    """What is known about an envelope after the recipient search.

    ``devices`` lists the caller's devices the header addresses, minus the
    one that opened it. On the :class:`NoDecryptionKey` path the sender is
    unknown, so ``sender_key`` is ``None`` and ``anonymous_sender`` is false.
    """

    sender_key: bytes | None
    anonymous_sender: bool
    devices: tuple[DeviceInfo, ...]
    receiver_key: bytes | None = None
    recipient_count: int = 0
    hidden_recipients: bool = False


def addressed_devices(
    header: EnvelopeHeader,
    known_devices: Iterable[Device],
    exclude: Iterable[bytes] = (),
) -> tuple[DeviceInfo, ...]:
    """Devices from ``known_devices`` that have a slot in ``header``."""

    addressed = set(header.recipient_key_ids)
    skipped = set(exclude)
    return tuple(
        DeviceInfo.from_device(device)
        for device in known_devices
        if device.encryption_key in addressed and device.encryption_key not in skipped
    )


def encrypt_envelope(
    source: IO[bytes],
    sink: IO[bytes],
    recipients: Sequence[bytes],
    sender: EncryptionKeyPair | None,
    *,
    hide_sender: bool = False,
    hide_recipients: bool = False,
    armor: bool = True,
) -> EnvelopeHeader:
    """Encrypt ``source`` to every key in ``recipients`` and write to ``sink``.

    With ``hide_sender`` (or no ``sender``) the ephemeral key stands in for
    the sender and the real sender key never appears in the envelope.
    """

    keys = list(dict.fromkeys(validate_public_key(bytes(key)) for key in recipients))
    if not keys:
        raise UnsupportedFeatureError("At least one recipient key is required")

    wrapper = RecipientKeyWrapper(new_content_key())
    sender_secret = sender if sender is not None and not hide_sender else wrapper.ephemeral
    anonymous = sender_secret is wrapper.ephemeral

    slots = tuple(
        RecipientSlot(
            key_id=None if hide_recipients else key,
            wrapped_key=wrapper.wrap_for(key, index).to_bytes(),
        )
        for index, key in enumerate(keys)
    )
    header = EnvelopeHeader(
        format=MessageFormat.DEVSEAL_ENCRYPTED,
        flags=FLAG_HIDE_RECIPIENTS if hide_recipients else 0,
        ephemeral_key=wrapper.ephemeral_public,
        sender_box=wrapper.seal_sender(sender_secret.public_bytes),
        slots=slots,
    )
    header_bytes = build_header(header)
    digest = header_digest(header_bytes)
    mac_keys = [derive_mac_key(sender_secret.exchange(key), digest, index) for index, key in enumerate(keys)]

    out: PayloadSink = ArmorWriter(sink) if armor else sink
    out.write(header_bytes)
    chunks = _encrypt_stream(source, out, wrapper.content_key, digest, mac_keys)
    if isinstance(out, ArmorWriter):
        out.close()

    logger.debug(
        "sealed envelope: %d recipient(s), %d chunk(s), sender %s",
        len(keys),
        chunks,
        "hidden" if anonymous else short_kid(sender_secret.public_bytes),
    )
    return header


class EnvelopeReader:
    """An envelope whose header is parsed and whose content key is known.

    The payload has not been read yet; :meth:`decrypt_to` streams it out.
    """

    def __init__(
        self,
        stream: IO[bytes],
        header: EnvelopeHeader,
        header_bytes: bytes,
        *,
        content_key: bytes,
        slot_index: int,
        keypair: EncryptionKeyPair,
        sender_public: bytes,
        info: MessageInfo,
    ) -> None:
        self._stream = stream
        self.header = header
        self._header_bytes = header_bytes
        self._content_key = content_key
        self._slot_index = slot_index
        self._keypair = keypair
        self._sender_public = sender_public
        self.info = info
        self._consumed = False

    def decrypt_to(self, sink: PayloadSink) -> int:
        if self._consumed:
            raise RuntimeError("envelope payload was already consumed")
        self._consumed = True
        digest = header_digest(self._header_bytes)
        try:
            shared = self._keypair.exchange(self._sender_public)
        except ValueError as exc:
            raise IntegrityError("Sender key is not a usable X25519 key") from exc
        mac_key = derive_mac_key(shared, digest, self._slot_index)
        return _decrypt_stream(
            self._stream,
            sink,
            self._content_key,
            digest,
            mac_key,
            self._slot_index,
            len(self.header.slots),
        )


@dataclass(frozen=True)
class ParsedEnvelope:
    """Header of an encrypted envelope, positioned at the start of the payload."""

    stream: IO[bytes]
    header: EnvelopeHeader
    header_bytes: bytes
    armored: bool


def parse_envelope(source: IO[bytes], *, operation: str = "decrypt") -> ParsedEnvelope:
    """Detect the format and parse the header; no key material is involved.

    Foreign or non-encryption formats raise :class:`FormatMismatch`.
    """

    sniffed = read_sniff(source)
    detected, armored = detect_format(sniffed)
    if detected is not MessageFormat.DEVSEAL_ENCRYPTED:
        raise FormatMismatch(MessageFormat.DEVSEAL_ENCRYPTED, detected, operation)

    stream: IO[bytes] = PushbackReader(sniffed, source)  # type: ignore[assignment]
    if armored:
        stream = ArmorReader(stream)  # type: ignore[assignment]
    header, header_bytes = read_header_from_stream(stream, operation=operation)
    return ParsedEnvelope(stream=stream, header=header, header_bytes=header_bytes, armored=armored)


def find_recipient(
    parsed: ParsedEnvelope,
    candidate_keys: Sequence[EncryptionKeyPair],
    known_devices: Sequence[Device] = (),
) -> EnvelopeReader:
    """Try each candidate key against each slot; the first that opens wins."""

    stream, header, header_bytes = parsed.stream, parsed.header, parsed.header_bytes
    for keypair in candidate_keys:
        public = keypair.public_bytes
        for index, slot in enumerate(header.slots):
            if slot.key_id is not None and slot.key_id != public:
                continue
            content_key = try_unwrap_content_key(
                keypair, header.ephemeral_key, WrappedKey.from_bytes(slot.wrapped_key), index
            )
            if content_key is None:
                continue

            sender_public = open_sender_box(content_key, header.sender_box)
            anonymous = sender_public == header.ephemeral_key
            info = MessageInfo(
                sender_key=None if anonymous else sender_public,
                anonymous_sender=anonymous,
                devices=addressed_devices(header, known_devices, exclude=[public]),
                receiver_key=public,
                recipient_count=len(header.slots),
                hidden_recipients=header.hide_recipients,
            )
            logger.debug("opened recipient slot %d with key %s", index, short_kid(public))
            return EnvelopeReader(
                stream,
                header,
                header_bytes,
                content_key=content_key,
                slot_index=index,
                keypair=keypair,
                sender_public=sender_public,
                info=info,
            )

    info = MessageInfo(
        sender_key=None,
        anonymous_sender=False,
        devices=addressed_devices(header, known_devices),
        recipient_count=len(header.slots),
        hidden_recipients=header.hide_recipients,
    )
    logger.debug(
        "no candidate key among %d opened any of %d slot(s)", len(candidate_keys), len(header.slots)
    )
    raise NoDecryptionKey(info)


def open_envelope(
    source: IO[bytes],
    candidate_keys: Sequence[EncryptionKeyPair],
    known_devices: Sequence[Device] = (),
    *,
    operation: str = "decrypt",
) -> EnvelopeReader:
    return find_recipient(parse_envelope(source, operation=operation), candidate_keys, known_devices)


def decrypt_envelope(
    source: IO[bytes],
    sink: PayloadSink,
    candidate_keys: Sequence[EncryptionKeyPair],
    known_devices: Sequence[Device] = (),
) -> MessageInfo:
    """Decrypt a whole envelope without any sender policy."""

    reader = open_envelope(source, candidate_keys, known_devices)
    reader.decrypt_to(sink)
    return reader.info


__all__ = [
    "DeviceInfo",
    "EnvelopeReader",
    "MessageInfo",
    "ParsedEnvelope",
    "addressed_devices",
    "decrypt_envelope",
    "encrypt_envelope",
    "find_recipient",
    "open_envelope",
    "parse_envelope",
]
