"""Custom exceptions for devseal."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from devseal.envelope.codec import MessageInfo
    from devseal.envelope.format import MessageFormat
    from devseal.trust.model import IdentityProof


class DevsealError(Exception):
    """Base exception for devseal."""


class UnsupportedFeatureError(DevsealError):
    """Requested option or value is outside the supported range."""


class EnvelopeFormatError(DevsealError):
    """Native envelope is malformed or truncated."""


class IntegrityError(DevsealError):
    """Envelope data failed authentication."""


class FormatMismatch(DevsealError):
    """Input is a recognised message format, but not the one the operation needs."""

    def __init__(self, wanted: MessageFormat, received: MessageFormat, operation: str) -> None:
        self.wanted = wanted
        self.received = received
        self.operation = operation
        super().__init__(
            f"Wrong message format for {operation}: wanted {wanted.label}, received {received.label}"
        )


class UnknownRecipient(DevsealError):
    """A requested recipient has no active devices."""

    def __init__(self, username: str) -> None:
        self.username = username
        super().__init__(f"No active devices for recipient {username!r}")


class NoDecryptionKey(DevsealError):
    """None of the local device keys can open the envelope."""

    def __init__(self, info: MessageInfo) -> None:
        self.info = info
        if info.devices:
            names = ", ".join(f"{d.name} ({d.type.value})" for d in info.devices)
            message = f"This message was not encrypted for this device; it was encrypted for: {names}"
        else:
            message = "This message was not encrypted for any of your devices"
        super().__init__(message)

    @property
    def devices(self):
        return self.info.devices


class PolicyRejected(DevsealError):
    """Convenience error for decrypt policy callbacks that decline a sender."""


class VerificationFailure(DevsealError):
    """An identity proof could not be checked."""

    def __init__(self, message: str, proof: IdentityProof | None = None) -> None:
        self.proof = proof
        super().__init__(message)


class ProvisioningFailure(enum.Enum):
    TIMEOUT = "timeout"
    SECRET_MISMATCH = "secret mismatch"
    TRANSPORT_ERROR = "transport error"


class ProvisioningFailed(DevsealError):
    """Device provisioning did not complete; no device was activated."""

    def __init__(self, reason: ProvisioningFailure, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"Provisioning failed ({reason.value})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DeviceError(DevsealError):
    """Device registry rejected an operation."""


class InvalidPassphrase(DevsealError):
    """Passphrase cannot unlock the stored device keys."""
