"""Device and user records."""
from __future__ import annotations

import enum
import json
import os
import re
from dataclasses import dataclass
from typing import Any


class DeviceType(enum.Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    BACKUP = "backup"


USERNAME_RE = re.compile(r"[a-z0-9][a-z0-9_.-]{0,63}")


def new_device_id() -> str:
    return os.urandom(16).hex()


def valid_username(username: str) -> bool:
    return USERNAME_RE.fullmatch(username) is not None


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    type: DeviceType
    encryption_key: bytes
    signing_key: bytes | None = None

    def attestation_payload(self, username: str) -> bytes:
        """Canonical bytes an existing device signs to vouch for this one."""

        body = {
            "ctx": "devseal-device-attestation-v1",
            "username": username,
            "device_id": self.id,
            "type": self.type.value,
            "encryption_key": self.encryption_key.hex(),
            "signing_key": self.signing_key.hex() if self.signing_key else None,
        }
        return json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "encryption_key": self.encryption_key.hex(),
            "signing_key": self.signing_key.hex() if self.signing_key else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Device:
        signing = data.get("signing_key")
        return cls(
            id=data["id"],
            name=data["name"],
            type=DeviceType(data["type"]),
            encryption_key=bytes.fromhex(data["encryption_key"]),
            signing_key=bytes.fromhex(signing) if signing else None,
        )


@dataclass(frozen=True)
class Attestation:
    """Signature by one of the user's active devices over a new device."""

    signer_device_id: str
    signature: bytes


@dataclass(frozen=True)
class User:
    username: str
    devices: tuple[Device, ...] = ()
    revoked: tuple[Device, ...] = ()

    def device(self, device_id: str) -> Device | None:
        return next((d for d in self.devices if d.id == device_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "revoked": [d.to_dict() for d in self.revoked],
        }

    @classmethod
    def from_dict(cls, username: str, data: dict[str, Any]) -> User:
        return cls(
            username=username,
            devices=tuple(Device.from_dict(d) for d in data.get("devices", [])),
            revoked=tuple(Device.from_dict(d) for d in data.get("revoked", [])),
        )
