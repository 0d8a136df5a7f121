"""Envelope overview helpers (header inspection without any keys)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import IO

from devseal.envelope.codec import parse_envelope
from devseal.envelope.format import EnvelopeHeader, MessageFormat


@dataclass(frozen=True)
class EnvelopeOverview:
    format: MessageFormat
    armored: bool
    header: EnvelopeHeader
    header_len: int

    @property
    def recipient_count(self) -> int:
        return len(self.header.slots)

    @property
    def hidden_recipients(self) -> bool:
        return self.header.hide_recipients

    @property
    def recipient_key_ids(self) -> list[bytes]:
        return self.header.recipient_key_ids


def inspect_envelope(source: IO[bytes]) -> EnvelopeOverview:
    """Parse the header of an encrypted envelope; the payload is not read."""

    parsed = parse_envelope(source, operation="inspect")
    return EnvelopeOverview(
        format=parsed.header.format,
        armored=parsed.armored,
        header=parsed.header,
        header_len=len(parsed.header_bytes),
    )


__all__ = ["EnvelopeOverview", "inspect_envelope"]
