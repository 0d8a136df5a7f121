"""Decrypting anything but a native encrypted envelope is a format mismatch."""

from __future__ import annotations

import io

import pytest
from hypothesis import given, strategies as st

from devseal.engine import DecryptState, DecryptionEngine
from devseal.envelope import inspect_envelope, open_envelope
from devseal.envelope.format import FORMAT_TAG_DETACHED, FORMAT_TAG_SIGNED, MAGIC, VERSION, MessageFormat
from devseal.errors import EnvelopeFormatError, FormatMismatch

PGP_ARMOR = b"""-----BEGIN PGP MESSAGE-----

hQEMA0RVnFkZ5m1WAQf/ZJbXq7r8mX3m3oU2r0xGg8p4l7b0m5Xy
=Nn0r
-----END PGP MESSAGE-----
"""

SIGNED_ARMOR = b"""BEGIN DEVSEAL SIGNED MESSAGE.
RFZTRUFMAQIAAAAA.
END DEVSEAL SIGNED MESSAGE.
"""


class KeyThatMustNotBeUsed:
    """Candidate key that fails the test if any key agreement is attempted."""

    public_bytes = bytes(32)

    def exchange(self, peer_public: bytes) -> bytes:
        raise AssertionError("key material touched before the format was checked")


@pytest.mark.parametrize(
    ("payload", "received"),
    [
        (PGP_ARMOR, MessageFormat.PGP),
        (b"\x85\x01\x0c\x03" + bytes(300), MessageFormat.PGP),
        (SIGNED_ARMOR, MessageFormat.DEVSEAL_SIGNED),
        (MAGIC + bytes([VERSION, FORMAT_TAG_SIGNED]) + bytes(300), MessageFormat.DEVSEAL_SIGNED),
        (MAGIC + bytes([VERSION, FORMAT_TAG_DETACHED]) + bytes(300), MessageFormat.DEVSEAL_DETACHED),
        (b"just some text that is not a message", MessageFormat.UNKNOWN),
    ],
)
def test_foreign_formats_are_rejected_before_key_use(payload: bytes, received: MessageFormat) -> None:
    with pytest.raises(FormatMismatch) as excinfo:
        open_envelope(io.BytesIO(payload), [KeyThatMustNotBeUsed()])  # type: ignore[list-item]

    error = excinfo.value
    assert error.wanted is MessageFormat.DEVSEAL_ENCRYPTED
    assert error.received is received
    assert error.operation == "decrypt"
    assert received.label in str(error)


@given(st.binary(max_size=256))
def test_any_signed_message_is_a_mismatch(body: bytes) -> None:
    payload = MAGIC + bytes([VERSION, FORMAT_TAG_SIGNED]) + body
    with pytest.raises(FormatMismatch) as excinfo:
        open_envelope(io.BytesIO(payload), [KeyThatMustNotBeUsed()])  # type: ignore[list-item]
    assert excinfo.value.received is MessageFormat.DEVSEAL_SIGNED


def test_engine_ends_in_format_mismatch(alice, context_for) -> None:
    session, _ = alice
    engine = DecryptionEngine(context_for(session))
    out = io.BytesIO()

    with pytest.raises(FormatMismatch):
        engine.decrypt(io.BytesIO(PGP_ARMOR), out)

    assert engine.state is DecryptState.FORMAT_MISMATCH
    assert engine.history == [DecryptState.START, DecryptState.FORMAT_MISMATCH]
    assert out.getvalue() == b""


def test_inspect_names_its_operation() -> None:
    with pytest.raises(FormatMismatch) as excinfo:
        inspect_envelope(io.BytesIO(PGP_ARMOR))
    assert excinfo.value.operation == "inspect"


def test_corrupt_native_envelope_is_a_format_error() -> None:
    payload = MAGIC + bytes([VERSION, 0x01]) + b"\x00\x00" + (5).to_bytes(4, "little")
    with pytest.raises(EnvelopeFormatError):
        open_envelope(io.BytesIO(payload), [KeyThatMustNotBeUsed()])  # type: ignore[list-item]
