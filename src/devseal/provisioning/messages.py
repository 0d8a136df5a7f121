"""Provisioning protocol frames and their JSON encoding."""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Union

from devseal.errors import ProvisioningFailed, ProvisioningFailure

MAX_FRAME_LEN = 16 * 1024

REJECT_SECRET_MISMATCH = "secret_mismatch"


@dataclass(frozen=True)
class Hello:
    session_id: str
    nonce: str
    device_name: str
    device_type: str
    encryption_key: str
    signing_key: str
    mac: str


@dataclass(frozen=True)
class Reject:
    reason: str


@dataclass(frozen=True)
class Activation:
    nonce: str
    ciphertext: str


@dataclass(frozen=True)
class Ack:
    device_id: str
    mac: str


@dataclass(frozen=True)
class Confirm:
    device_id: str
    mac: str


Frame = Union[Hello, Reject, Activation, Ack, Confirm]

_KINDS: dict[str, type] = {"hello": Hello, "reject": Reject, "activation": Activation, "ack": Ack, "confirm": Confirm}
_NAMES = {cls: name for name, cls in _KINDS.items()}


def encode_frame(frame: Frame) -> bytes:
    return json.dumps({"type": _NAMES[type(frame)], **asdict(frame)}, separators=(",", ":")).encode("utf-8")


def decode_frame(data: bytes) -> Frame:
    """Parse a frame; anything malformed is a transport error."""

    if len(data) > MAX_FRAME_LEN:
        raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "frame too large")
    try:
        document: Any = json.loads(data.decode("utf-8"))
        kind = _KINDS[document.pop("type")]
        frame = kind(**document)
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
        raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "undecodable frame") from exc
    if not all(isinstance(value, str) for value in asdict(frame).values()):
        raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "frame fields must be strings")
    return frame


__all__ = [
    "Ack",
    "Activation",
    "Confirm",
    "Frame",
    "Hello",
    "MAX_FRAME_LEN",
    "REJECT_SECRET_MISMATCH",
    "Reject",
    "decode_frame",
    "encode_frame",
]
