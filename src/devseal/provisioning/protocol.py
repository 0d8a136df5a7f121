"""Ephemeral-secret device provisioning.

The provisioner is an already-active device; the provisionee is a new device
with freshly generated keys. Both hold the same short secret, obtained out of
band, and it is the only thing that authenticates one side to the other.

Flow::

    provisionee                          provisioner
        HELLO{session_id, keys, mac} ->
                                     <- REJECT{secret_mismatch}   (wrong secret)
                                     <- ACTIVATION{sealed attestation, token}
        (checks the attestation)
        ACK{device_id, mac}          ->
                                     <- CONFIRM{device_id, mac}
        (activates itself, saves session)

Every wait is bounded by one deadline per run. On any failure the party
raises :class:`~devseal.errors.ProvisioningFailed`, closes its endpoint and
drops its ephemeral state. The provisionee writes to the registry only after
CONFIRM and sends nothing afterwards, so whenever either party raises
:class:`~devseal.errors.ProvisioningFailed`, no device has been added. A provisioner that sent CONFIRM returns the attested
device; it is active once the provisionee has installed it.
"""
from __future__ import annotations

import hmac
import hashlib
import json
import logging
import os
import queue
import secrets
import time
from dataclasses import dataclass, field, replace

from devseal.crypto.aead import NONCE_LEN, AesGcmEncryptor, InvalidTag
from devseal.crypto.kdf import Argon2Params, derive_key, resolve_argon_params
from devseal.devices.model import Attestation, Device, DeviceType
from devseal.devices.registry import DeviceRegistry
from devseal.errors import DeviceError, DevsealError, ProvisioningFailed, ProvisioningFailure, UnsupportedFeatureError
from devseal.provisioning.channel import Endpoint
from devseal.provisioning.messages import (
    REJECT_SECRET_MISMATCH,
    Ack,
    Activation,
    Confirm,
    Hello,
    Reject,
    decode_frame,
    encode_frame,
)
from devseal.session import DeviceSession, SessionStore, new_device_keys, new_session_token

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
MAX_TIMEOUT = 3600.0
SECRET_BYTES = 16

_SECRET_SALT = b"devseal-provisioning-v1"
_HELLO_LABEL = b"devseal-provision-hello"
_ACTIVATION_LABEL = b"devseal-provision-activation"
_ACK_LABEL = b"devseal-provision-ack"
_CONFIRM_LABEL = b"devseal-provision-confirm"


@dataclass(frozen=True)
class ProvisioningConfig:
    timeout: float = DEFAULT_TIMEOUT
    argon_params: Argon2Params = field(default_factory=lambda: resolve_argon_params(mem_kib=16 * 1024, time_cost=2))


def resolve_provisioning_config(
    *,
    timeout: float | None = None,
    argon_params: Argon2Params | None = None,
) -> ProvisioningConfig:
    defaults = ProvisioningConfig()
    candidate = ProvisioningConfig(
        timeout=timeout if timeout is not None else defaults.timeout,
        argon_params=argon_params if argon_params is not None else defaults.argon_params,
    )
    if not (0 < candidate.timeout <= MAX_TIMEOUT):
        raise UnsupportedFeatureError(f"Provisioning timeout must be between 0 and {MAX_TIMEOUT:.0f} seconds")
    return candidate


def new_provisioning_secret() -> str:
    """Random secret suitable for showing to the user (hex, 32 characters)."""

    return secrets.token_hex(SECRET_BYTES)


@dataclass(frozen=True)
class _SecretKeys:
    session_id: bytes
    channel_key: bytes


def _stretch_secret(secret: str, params: Argon2Params) -> _SecretKeys:
    normalized = "".join(secret.split()).lower()
    if not normalized:
        raise UnsupportedFeatureError("Provisioning secret must not be empty")
    material = derive_key(normalized.encode("utf-8"), _SECRET_SALT, params, length=64)
    return _SecretKeys(session_id=material[:32], channel_key=material[32:])


def _mac(key: bytes, *parts: bytes) -> bytes:
    mac = hmac.new(key, digestmod=hashlib.sha256)
    for part in parts:
        mac.update(len(part).to_bytes(4, "big"))
        mac.update(part)
    return mac.digest()


def _unhex(value: object) -> bytes:
    try:
        return bytes.fromhex(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "malformed frame field") from exc


def _hello_mac(keys: _SecretKeys, hello: Hello) -> bytes:
    return _mac(
        keys.channel_key,
        _HELLO_LABEL,
        keys.session_id,
        _unhex(hello.nonce),
        hello.device_name.encode("utf-8"),
        hello.device_type.encode("utf-8"),
        _unhex(hello.encryption_key),
        _unhex(hello.signing_key),
    )


def _activation_aad(keys: _SecretKeys, hello_nonce: bytes) -> bytes:
    return _ACTIVATION_LABEL + keys.session_id + hello_nonce


class _Party:
    """Shared plumbing: deadline bookkeeping and the secret handoff slot."""

    role = "party"

    def __init__(self, secret: str | None, config: ProvisioningConfig | None) -> None:
        self.config = config or ProvisioningConfig()
        self._secrets: queue.Queue[str] = queue.Queue(maxsize=1)
        if secret is not None:
            self.add_secret(secret)

    def add_secret(self, secret: str) -> None:
        """Hand the secret to this party, whether or not it is already waiting.

        Never blocks; a second secret for the same run is rejected.
        """

        try:
            self._secrets.put_nowait(secret)
        except queue.Full as exc:
            raise DevsealError(f"{self.role} already has a provisioning secret") from exc

    def _await_secret(self, deadline: float) -> _SecretKeys:
        try:
            secret = self._secrets.get(timeout=max(deadline - time.monotonic(), 0.0))
        except queue.Empty as exc:
            raise ProvisioningFailed(ProvisioningFailure.TIMEOUT, f"{self.role}: secret was never supplied") from exc
        return _stretch_secret(secret, self.config.argon_params)

    def _deadline(self) -> float:
        return time.monotonic() + self.config.timeout

    def _fail(self, endpoint: Endpoint, exc: ProvisioningFailed) -> None:
        logger.warning("%s: provisioning failed (%s) %s", self.role, exc.reason.value, exc.detail)
        endpoint.close()


class Provisioner(_Party):
    """Existing device that vouches for a new one."""

    role = "provisioner"

    def __init__(
        self,
        session: DeviceSession,
        secret: str | None = None,
        config: ProvisioningConfig | None = None,
    ) -> None:
        super().__init__(secret, config)
        self.session = session

    def run(self, endpoint: Endpoint) -> Device:
        """Wait for a provisionee, attest its keys and return the new device.

        Returns once CONFIRM is sent; the provisionee activates the device
        in its registry after receiving it.
        """

        deadline = self._deadline()
        try:
            return self._run(endpoint, deadline)
        except ProvisioningFailed as exc:
            self._fail(endpoint, exc)
            raise

    def _run(self, endpoint: Endpoint, deadline: float) -> Device:
        keys = self._await_secret(deadline)
        logger.debug("provisioner: secret available, waiting for hello")

        hello = decode_frame(endpoint.receive(deadline))
        if not isinstance(hello, Hello):
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "expected hello")
        matches = hmac.compare_digest(_unhex(hello.session_id), keys.session_id) and hmac.compare_digest(
            _unhex(hello.mac), _hello_mac(keys, hello)
        )
        if not matches:
            endpoint.send(encode_frame(Reject(REJECT_SECRET_MISMATCH)), deadline)
            raise ProvisioningFailed(ProvisioningFailure.SECRET_MISMATCH)

        try:
            device_type = DeviceType(hello.device_type)
        except ValueError as exc:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "unknown device type") from exc
        if device_type is DeviceType.BACKUP:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "backup devices are not provisioned")

        device = Device(
            id=os.urandom(16).hex(),
            name=hello.device_name,
            type=device_type,
            encryption_key=_unhex(hello.encryption_key),
            signing_key=_unhex(hello.signing_key),
        )
        signature = self.session.signing_key.sign(device.attestation_payload(self.session.username))
        payload = {
            "username": self.session.username,
            "device_id": device.id,
            "signer_device_id": self.session.device.id,
            "signature": signature.hex(),
            "token": new_session_token(),
        }
        nonce = os.urandom(NONCE_LEN)
        sealed = AesGcmEncryptor.seal(
            keys.channel_key,
            nonce,
            json.dumps(payload).encode("utf-8"),
            _activation_aad(keys, _unhex(hello.nonce)),
        )
        endpoint.send(encode_frame(Activation(nonce=nonce.hex(), ciphertext=sealed.hex())), deadline)
        logger.debug("provisioner: sent activation for device %s", device.id)

        ack = decode_frame(endpoint.receive(deadline))
        if not isinstance(ack, Ack) or ack.device_id != device.id:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "expected ack")
        if not hmac.compare_digest(
            _unhex(ack.mac), _mac(keys.channel_key, _ACK_LABEL, keys.session_id, device.id.encode("ascii"))
        ):
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "ack failed authentication")

        confirm_mac = _mac(keys.channel_key, _CONFIRM_LABEL, keys.session_id, device.id.encode("ascii"))
        endpoint.send(encode_frame(Confirm(device_id=device.id, mac=confirm_mac.hex())), deadline)
        logger.info("provisioned %s device %s for %s", device.type.value, device.id, self.session.username)
        return device


class Provisionee(_Party):
    """New device joining an existing account."""

    role = "provisionee"

    def __init__(
        self,
        registry: DeviceRegistry,
        device_name: str,
        device_type: DeviceType = DeviceType.DESKTOP,
        secret: str | None = None,
        config: ProvisioningConfig | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        super().__init__(secret, config)
        if device_type is DeviceType.BACKUP:
            raise UnsupportedFeatureError("Backup devices are created at signup, not provisioned")
        self.registry = registry
        self.device_name = device_name
        self.device_type = device_type
        self.session_store = session_store

    def run(self, endpoint: Endpoint) -> DeviceSession:
        """Present new keys, install the attested device and return its session."""

        deadline = self._deadline()
        try:
            session = self._run(endpoint, deadline)
        except ProvisioningFailed as exc:
            self._fail(endpoint, exc)
            raise
        endpoint.close()
        return session

    def _run(self, endpoint: Endpoint, deadline: float) -> DeviceSession:
        keys = self._await_secret(deadline)
        proposed, encryption_key, signing_key = new_device_keys(self.device_name, self.device_type)

        hello_nonce = os.urandom(16)
        unsigned = Hello(
            session_id=keys.session_id.hex(),
            nonce=hello_nonce.hex(),
            device_name=self.device_name,
            device_type=self.device_type.value,
            encryption_key=proposed.encryption_key.hex(),
            signing_key=proposed.signing_key.hex() if proposed.signing_key else "",
            mac="",
        )
        hello = replace(unsigned, mac=_hello_mac(keys, unsigned).hex())
        endpoint.send(encode_frame(hello), deadline)
        logger.debug("provisionee: sent hello")

        reply = decode_frame(endpoint.receive(deadline))
        if isinstance(reply, Reject):
            if reply.reason == REJECT_SECRET_MISMATCH:
                raise ProvisioningFailed(ProvisioningFailure.SECRET_MISMATCH)
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, f"rejected: {reply.reason}")
        if not isinstance(reply, Activation):
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "expected activation")

        try:
            opened = AesGcmEncryptor.open(
                keys.channel_key,
                _unhex(reply.nonce),
                _unhex(reply.ciphertext),
                _activation_aad(keys, hello_nonce),
            )
            payload = json.loads(opened)
            username = payload["username"]
            device = Device(
                id=payload["device_id"],
                name=proposed.name,
                type=proposed.type,
                encryption_key=proposed.encryption_key,
                signing_key=proposed.signing_key,
            )
            attestation = Attestation(
                signer_device_id=payload["signer_device_id"],
                signature=_unhex(payload["signature"]),
            )
            token = payload["token"]
        except (InvalidTag, ValueError, KeyError, TypeError) as exc:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "activation failed authentication") from exc

        try:
            self.registry.check_activation(username, device, attestation)
        except DeviceError as exc:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, str(exc)) from exc

        ack_mac = _mac(keys.channel_key, _ACK_LABEL, keys.session_id, device.id.encode("ascii"))
        endpoint.send(encode_frame(Ack(device_id=device.id, mac=ack_mac.hex())), deadline)

        confirm = decode_frame(endpoint.receive(deadline))
        if not isinstance(confirm, Confirm) or confirm.device_id != device.id:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "expected confirm")
        if not hmac.compare_digest(
            _unhex(confirm.mac), _mac(keys.channel_key, _CONFIRM_LABEL, keys.session_id, device.id.encode("ascii"))
        ):
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "confirm failed authentication")

        try:
            self.registry.activate_device(username, device, attestation)
        except DeviceError as exc:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, str(exc)) from exc

        session = DeviceSession(username, device, encryption_key, signing_key, token)
        if self.session_store is not None:
            self.session_store.save(session)
        logger.info("provisionee: joined %s as %s device %s", username, device.type.value, device.id)
        return session


__all__ = [
    "DEFAULT_TIMEOUT",
    "ProvisioningConfig",
    "Provisionee",
    "Provisioner",
    "new_provisioning_secret",
    "resolve_provisioning_config",
]
