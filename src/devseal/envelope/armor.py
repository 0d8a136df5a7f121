"""ASCII armor for envelopes.

Armored messages look like::

    BEGIN DEVSEAL ENCRYPTED MESSAGE.
    <base64, 64 columns per line>.
    END DEVSEAL ENCRYPTED MESSAGE.

The base64 alphabet has no ``.``, so the header, body and footer are each
terminated by a period and line breaks are insignificant. Both directions
stream: neither side holds more than a block of text in memory.
"""
from __future__ import annotations

import base64
import binascii
from typing import IO

from devseal.envelope.format import ARMOR_NAMES, MessageFormat
from devseal.errors import EnvelopeFormatError

ARMOR_LINE_LEN = 64
_RAW_PER_LINE = ARMOR_LINE_LEN // 4 * 3
_READ_BLOCK = 4096
_MAX_FRAME_LEN = 128
_WHITESPACE = b" \t\r\n"


def armor_header(fmt: MessageFormat) -> str:
    return f"BEGIN DEVSEAL {ARMOR_NAMES[fmt]}."


def armor_footer(fmt: MessageFormat) -> str:
    return f"END DEVSEAL {ARMOR_NAMES[fmt]}."


class ArmorWriter:
    """Binary sink that writes armored text to ``sink``."""

    def __init__(self, sink: IO[bytes], fmt: MessageFormat = MessageFormat.DEVSEAL_ENCRYPTED) -> None:
        self._sink = sink
        self._fmt = fmt
        self._pending = bytearray()
        self._closed = False
        self._sink.write(armor_header(fmt).encode("ascii") + b"\n")

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed armor writer")
        self._pending.extend(data)
        full = len(self._pending) // _RAW_PER_LINE * _RAW_PER_LINE
        for start in range(0, full, _RAW_PER_LINE):
            line = base64.b64encode(bytes(self._pending[start : start + _RAW_PER_LINE]))
            self._sink.write(line + b"\n")
        del self._pending[:full]
        return len(data)

    def close(self) -> None:
        """Flush the final partial line and write the footer."""

        if self._closed:
            return
        self._closed = True
        tail = base64.b64encode(bytes(self._pending))
        self._pending.clear()
        self._sink.write(tail + b".\n" + armor_footer(self._fmt).encode("ascii") + b"\n")

    def __enter__(self) -> ArmorWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class ArmorReader:
    """Decoding reader over an armored binary stream."""

    def __init__(self, stream: IO[bytes], fmt: MessageFormat = MessageFormat.DEVSEAL_ENCRYPTED) -> None:
        self._stream = stream
        self._fmt = fmt
        self._raw = bytearray()
        self._b64 = bytearray()
        self._decoded = bytearray()
        self._header_done = False
        self._body_done = False
        self._eof = False

    def _fill_raw(self) -> bool:
        if self._eof:
            return False
        block = self._stream.read(_READ_BLOCK)
        if not block:
            self._eof = True
            return False
        self._raw.extend(block)
        return True

    def _read_frame(self) -> str:
        while True:
            end = self._raw.find(b".")
            if end >= 0:
                frame = bytes(self._raw[:end])
                del self._raw[: end + 1]
                return frame.strip(_WHITESPACE).decode("ascii", "replace")
            if len(self._raw) > _MAX_FRAME_LEN or not self._fill_raw():
                raise EnvelopeFormatError("Armor frame is missing or too long")

    def _consume_header(self) -> None:
        header = self._read_frame()
        if header != armor_header(self._fmt)[:-1]:
            raise EnvelopeFormatError(f"Unexpected armor header {header!r}")
        self._header_done = True

    def _decode_available(self, final: bool) -> None:
        usable = len(self._b64) if final else len(self._b64) // 4 * 4
        if not usable:
            return
        try:
            self._decoded.extend(base64.b64decode(bytes(self._b64[:usable]), validate=True))
        except binascii.Error as exc:
            raise EnvelopeFormatError("Armor body is not valid base64") from exc
        del self._b64[:usable]

    def _pump(self) -> None:
        if not self._raw and not self._fill_raw():
            raise EnvelopeFormatError("Armored message truncated before end of body")
        end = self._raw.find(b".")
        body = self._raw if end < 0 else self._raw[:end]
        self._b64.extend(bytes(body).translate(None, _WHITESPACE))
        if end < 0:
            self._raw.clear()
            self._decode_available(final=False)
            return
        del self._raw[: end + 1]
        self._decode_available(final=True)
        footer = self._read_frame()
        if footer != armor_footer(self._fmt)[:-1]:
            raise EnvelopeFormatError(f"Unexpected armor footer {footer!r}")
        self._body_done = True

    def read(self, size: int = -1) -> bytes:
        if not self._header_done:
            self._consume_header()
        while not self._body_done and (size is None or size < 0 or len(self._decoded) < size):
            self._pump()
        if size is None or size < 0:
            size = len(self._decoded)
        data = bytes(self._decoded[:size])
        del self._decoded[:size]
        return data


__all__ = ["ARMOR_LINE_LEN", "ArmorReader", "ArmorWriter", "armor_footer", "armor_header"]
