"""Public envelope API re-exported for external users.

The objects listed in ``__all__`` form the supported surface of the message
codec. Chunk framing and slot derivation helpers in the submodules are
internal.
"""
from __future__ import annotations

from devseal.envelope.armor import ArmorReader, ArmorWriter
from devseal.envelope.codec import (
    DeviceInfo,
    EnvelopeReader,
    MessageInfo,
    ParsedEnvelope,
    decrypt_envelope,
    encrypt_envelope,
    find_recipient,
    open_envelope,
    parse_envelope,
)
from devseal.envelope.format import (
    MAX_RECIPIENTS,
    EnvelopeHeader,
    MessageFormat,
    RecipientSlot,
    build_header,
    detect_format,
    parse_header,
)
from devseal.envelope.overview import EnvelopeOverview, inspect_envelope
from devseal.envelope.payload import STREAM_CHUNK_SIZE

__all__ = [
    "ArmorReader",
    "ArmorWriter",
    "DeviceInfo",
    "EnvelopeHeader",
    "EnvelopeOverview",
    "EnvelopeReader",
    "MAX_RECIPIENTS",
    "MessageFormat",
    "MessageInfo",
    "ParsedEnvelope",
    "RecipientSlot",
    "STREAM_CHUNK_SIZE",
    "build_header",
    "decrypt_envelope",
    "detect_format",
    "encrypt_envelope",
    "find_recipient",
    "inspect_envelope",
    "open_envelope",
    "parse_envelope",
    "parse_header",
]
