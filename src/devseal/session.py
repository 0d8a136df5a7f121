"""Device sessions and their passphrase-locked storage.

A session is what a logged-in device knows about itself: the username, its
device record, both private keys and the session token handed out when the
device was activated.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from devseal.crypto.aead import NONCE_LEN, AesGcmEncryptor, InvalidTag
from devseal.crypto.kdf import SALT_LEN, Argon2Params, derive_key_from_password, resolve_argon_params
from devseal.crypto.keys import EncryptionKeyPair, SigningKeyPair
from devseal.devices.model import Device, DeviceType, new_device_id, valid_username
from devseal.devices.registry import DeviceRegistry
from devseal.errors import DeviceError, InvalidPassphrase, UnsupportedFeatureError

logger = logging.getLogger(__name__)

SESSION_FILE_VERSION = 1
SESSION_SUFFIX = ".session"


def new_session_token() -> str:
    return secrets.token_hex(16)


@dataclass(frozen=True)
class DeviceSession:
    username: str
    device: Device
    encryption_key: EncryptionKeyPair
    signing_key: SigningKeyPair
    token: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "device": self.device.to_dict(),
            "encryption_key": self.encryption_key.private_bytes.hex(),
            "signing_key": self.signing_key.private_bytes.hex(),
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceSession:
        return cls(
            username=data["username"],
            device=Device.from_dict(data["device"]),
            encryption_key=EncryptionKeyPair.from_private_bytes(bytes.fromhex(data["encryption_key"])),
            signing_key=SigningKeyPair.from_private_bytes(bytes.fromhex(data["signing_key"])),
            token=data["token"],
        )


def new_device_keys(name: str, device_type: DeviceType) -> tuple[Device, EncryptionKeyPair, SigningKeyPair]:
    """Generate key pairs and an unregistered device record for them."""

    encryption_key = EncryptionKeyPair.generate()
    signing_key = SigningKeyPair.generate()
    device = Device(
        id=new_device_id(),
        name=name,
        type=device_type,
        encryption_key=encryption_key.public_bytes,
        signing_key=signing_key.public_bytes,
    )
    return device, encryption_key, signing_key


def sign_up(
    registry: DeviceRegistry,
    username: str,
    device_name: str,
    device_type: DeviceType = DeviceType.DESKTOP,
    *,
    backup: bool = True,
) -> tuple[DeviceSession, DeviceSession | None]:
    """Create an account with its first device and, optionally, a backup device.

    The backup device's session is returned so its keys can be written down;
    it is not meant to be stored next to the primary session.
    """

    primary, primary_enc, primary_sig = new_device_keys(device_name, device_type)
    devices = [primary]
    backup_keys = None
    if backup:
        backup_keys = new_device_keys(f"{device_name} backup", DeviceType.BACKUP)
        devices.append(backup_keys[0])

    registry.signup(username, devices)
    session = DeviceSession(username, primary, primary_enc, primary_sig, new_session_token())
    backup_session = None
    if backup_keys is not None:
        backup_session = DeviceSession(username, *backup_keys, token=new_session_token())
    return session, backup_session


class SessionStore(Protocol):
    def save(self, session: DeviceSession) -> None: ...

    def load(self, username: str) -> DeviceSession | None: ...


class MemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, DeviceSession] = {}

    def save(self, session: DeviceSession) -> None:
        self._sessions[session.username] = session

    def load(self, username: str) -> DeviceSession | None:
        return self._sessions.get(username)


class FileSessionStore:
    """One file per user, sealed with AES-GCM under an Argon2id passphrase key.

    ``passphrase`` is called whenever a session is written or read; it is the
    secret-retrieval hook (a prompt, an environment variable, a helper).
    """

    def __init__(
        self,
        directory: Path,
        passphrase: Callable[[], str],
        params: Argon2Params | None = None,
    ) -> None:
        self.directory = Path(directory)
        self._passphrase = passphrase
        self.params = params or resolve_argon_params()

    def path_for(self, username: str) -> Path:
        if not valid_username(username):
            raise DeviceError(f"Invalid username {username!r}")
        return self.directory / f"{username}{SESSION_SUFFIX}"

    def usernames(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name[: -len(SESSION_SUFFIX)] for p in self.directory.glob(f"*{SESSION_SUFFIX}"))

    def save(self, session: DeviceSession) -> None:
        path = self.path_for(session.username)
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        key = derive_key_from_password(self._passphrase(), salt, self.params)
        plaintext = json.dumps(session.to_dict()).encode("utf-8")
        sealed = AesGcmEncryptor.seal(key, nonce, plaintext, session.username.encode("utf-8"))
        document = {
            "version": SESSION_FILE_VERSION,
            "kdf": {
                "mem_cost_kib": self.params.mem_cost_kib,
                "time_cost": self.params.time_cost,
                "parallelism": self.params.parallelism,
            },
            "salt": salt.hex(),
            "nonce": nonce.hex(),
            "ciphertext": sealed.hex(),
        }

        self.directory.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=self.directory, prefix=".session-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.debug("stored session for %s device %s", session.username, session.device.id)

    def load(self, username: str) -> DeviceSession | None:
        path = self.path_for(username)
        if not path.exists():
            return None
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise DeviceError(f"Session file {path} is corrupted") from exc
        if not isinstance(document, dict) or document.get("version") != SESSION_FILE_VERSION:
            raise UnsupportedFeatureError(f"Unsupported session file format in {path}")

        kdf = document["kdf"]
        params = resolve_argon_params(
            mem_kib=kdf["mem_cost_kib"], time_cost=kdf["time_cost"], parallelism=kdf["parallelism"]
        )
        key = derive_key_from_password(self._passphrase(), bytes.fromhex(document["salt"]), params)
        try:
            plaintext = AesGcmEncryptor.open(
                key,
                bytes.fromhex(document["nonce"]),
                bytes.fromhex(document["ciphertext"]),
                username.encode("utf-8"),
            )
        except InvalidTag as exc:
            raise InvalidPassphrase(f"Cannot unlock session for {username!r}") from exc
        return DeviceSession.from_dict(json.loads(plaintext))


__all__ = [
    "DeviceSession",
    "FileSessionStore",
    "MemorySessionStore",
    "SessionStore",
    "new_device_keys",
    "new_session_token",
    "sign_up",
]
