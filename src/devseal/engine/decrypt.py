"""Decryption engine and its state machine.

``START -> HEADER_PARSED -> RECIPIENT_SEARCH -> KEY_FOUND -> SENDER_CLASSIFIED
-> PLAINTEXT_READY``, with the terminal error states ``FORMAT_MISMATCH``,
``NO_DECRYPTION_KEY`` and ``POLICY_REJECTED``. Plaintext reaches the sink only
after the policy callback accepted the sender.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import IO

from devseal.crypto.keys import short_kid
from devseal.engine.context import DecryptOptions, EngineContext, PolicyCallback, SenderInfo
from devseal.envelope.codec import DeviceInfo, MessageInfo, find_recipient, parse_envelope
from devseal.envelope.payload import PayloadSink
from devseal.errors import FormatMismatch, NoDecryptionKey
from devseal.trust.model import SenderClassification


class DecryptState(enum.Enum):
    START = "start"
    HEADER_PARSED = "header parsed"
    FORMAT_MISMATCH = "format mismatch"
    RECIPIENT_SEARCH = "recipient search"
    NO_DECRYPTION_KEY = "no decryption key"
    KEY_FOUND = "key found"
    SENDER_CLASSIFIED = "sender classified"
    POLICY_REJECTED = "policy rejected"
    PLAINTEXT_READY = "plaintext ready"


TERMINAL_STATES = frozenset(
    {
        DecryptState.FORMAT_MISMATCH,
        DecryptState.NO_DECRYPTION_KEY,
        DecryptState.POLICY_REJECTED,
        DecryptState.PLAINTEXT_READY,
    }
)


@dataclass(frozen=True)
class DecryptResult:
    info: MessageInfo
    sender: SenderInfo
    classification: SenderClassification
    bytes_written: int


class DecryptionEngine:
    """Runs one decrypt; create a new engine per message."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx
        self.state = DecryptState.START
        self.history: list[DecryptState] = [DecryptState.START]

    def _move(self, state: DecryptState) -> None:
        self.ctx.logger.debug("decrypt: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _sender_info(self, info: MessageInfo) -> SenderInfo:
        username = device = None
        if info.sender_key is not None:
            found = self.ctx.registry.lookup_key(info.sender_key)
            if found is not None:
                username, owner_device = found
                device = DeviceInfo.from_device(owner_device)
        return SenderInfo(sender_key=info.sender_key, username=username, device=device, message=info)

    def _classify(self, info: MessageInfo, options: DecryptOptions) -> SenderClassification:
        trust = self.ctx.trust
        if trust is None:
            if info.sender_key is None:
                return SenderClassification.ANONYMOUS
            return SenderClassification.NOT_TRACKED
        return trust.classify(info.sender_key, self.ctx.username, force_remote_check=options.force_remote_check)

    def decrypt(
        self,
        source: IO[bytes],
        sink: PayloadSink,
        policy: PolicyCallback | None = None,
        options: DecryptOptions | None = None,
    ) -> DecryptResult:
        if self.state is not DecryptState.START:
            raise RuntimeError("a decryption engine runs a single message")
        options = options or DecryptOptions()
        ctx = self.ctx

        try:
            parsed = parse_envelope(source, operation="decrypt")
        except FormatMismatch:
            self._move(DecryptState.FORMAT_MISMATCH)
            raise
        self._move(DecryptState.HEADER_PARSED)

        self._move(DecryptState.RECIPIENT_SEARCH)
        try:
            reader = find_recipient(parsed, ctx.encryption_keys, ctx.registry.all_devices(ctx.username))
        except NoDecryptionKey:
            self._move(DecryptState.NO_DECRYPTION_KEY)
            raise
        self._move(DecryptState.KEY_FOUND)

        info = reader.info
        classification = self._classify(info, options)
        sender = self._sender_info(info)
        self._move(DecryptState.SENDER_CLASSIFIED)
        ctx.logger.info(
            "message from %s classified %s",
            short_kid(info.sender_key) if info.sender_key else "anonymous sender",
            classification.value,
        )

        if policy is not None:
            try:
                outcome = policy(classification, sender)
            except BaseException:
                self._move(DecryptState.POLICY_REJECTED)
                raise
            if outcome is not None:
                self._move(DecryptState.POLICY_REJECTED)
                if not isinstance(outcome, BaseException):
                    raise TypeError("decrypt policy must return None or an exception")
                raise outcome

        written = reader.decrypt_to(sink)
        self._move(DecryptState.PLAINTEXT_READY)
        return DecryptResult(info=info, sender=sender, classification=classification, bytes_written=written)


def decrypt(
    ctx: EngineContext,
    source: IO[bytes],
    sink: PayloadSink,
    policy: PolicyCallback | None = None,
    options: DecryptOptions | None = None,
) -> DecryptResult:
    return DecryptionEngine(ctx).decrypt(source, sink, policy, options)


__all__ = ["DecryptResult", "DecryptState", "DecryptionEngine", "TERMINAL_STATES", "decrypt"]
