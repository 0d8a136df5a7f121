"""Explicit context and per-call options for engine operations."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from devseal.crypto.keys import EncryptionKeyPair, SigningKeyPair
from devseal.devices.model import Device
from devseal.devices.registry import DeviceRegistry
from devseal.envelope.codec import DeviceInfo, MessageInfo
from devseal.errors import UnsupportedFeatureError
from devseal.session import DeviceSession
from devseal.trust.model import SenderClassification
from devseal.trust.resolver import SenderTrustResolver


@dataclass(frozen=True)
class EngineContext:
    """Everything an encrypt or decrypt call needs about the current device.

    ``encryption_keys`` are tried in order when decrypting; the first one is
    the sending key when encrypting.
    """

    username: str
    encryption_keys: tuple[EncryptionKeyPair, ...]
    registry: DeviceRegistry
    trust: SenderTrustResolver | None = None
    device: Device | None = None
    signing_key: SigningKeyPair | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("devseal.engine"))

    def __post_init__(self) -> None:
        if not self.encryption_keys:
            raise UnsupportedFeatureError("An engine context needs at least one device key")

    @classmethod
    def from_session(
        cls,
        session: DeviceSession,
        registry: DeviceRegistry,
        trust: SenderTrustResolver | None = None,
        *,
        extra_keys: tuple[EncryptionKeyPair, ...] = (),
    ) -> EngineContext:
        return cls(
            username=session.username,
            encryption_keys=(session.encryption_key, *extra_keys),
            registry=registry,
            trust=trust,
            device=session.device,
            signing_key=session.signing_key,
        )

    @property
    def sender_key(self) -> EncryptionKeyPair:
        return self.encryption_keys[0]


@dataclass(frozen=True)
class EncryptOptions:
    recipients: tuple[str, ...] = ()
    suppress_self_encryption: bool = False
    hide_sender: bool = False
    hide_recipients: bool = False
    armor: bool = True


@dataclass(frozen=True)
class DecryptOptions:
    force_remote_check: bool = False


@dataclass(frozen=True)
class SenderInfo:
    """Sender metadata handed to the decrypt policy callback."""

    sender_key: bytes | None
    username: str | None
    device: DeviceInfo | None
    message: MessageInfo

    @property
    def anonymous(self) -> bool:
        return self.sender_key is None


# Returns None to accept. Rejection is an exception, raised or returned; the
# engine re-raises that very object.
PolicyCallback = Callable[[SenderClassification, SenderInfo], Optional[BaseException]]


def resolve_encrypt_options(
    recipients: tuple[str, ...] | list[str] = (),
    *,
    suppress_self_encryption: bool = False,
    hide_sender: bool = False,
    hide_recipients: bool = False,
    armor: bool = True,
) -> EncryptOptions:
    """Build encrypt options, rejecting a request with nobody to encrypt to."""

    names = tuple(dict.fromkeys(name.strip() for name in recipients if name.strip()))
    if suppress_self_encryption and not names:
        raise UnsupportedFeatureError("Nothing to encrypt to: no recipients and self-encryption suppressed")
    return EncryptOptions(
        recipients=names,
        suppress_self_encryption=suppress_self_encryption,
        hide_sender=hide_sender,
        hide_recipients=hide_recipients,
        armor=armor,
    )


__all__ = [
    "DecryptOptions",
    "EncryptOptions",
    "EngineContext",
    "PolicyCallback",
    "SenderInfo",
    "resolve_encrypt_options",
]
