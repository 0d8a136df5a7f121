"""Encryption engine: recipient resolution followed by envelope sealing."""
from __future__ import annotations

from typing import IO

from devseal.engine.context import EncryptOptions, EngineContext
from devseal.engine.recipients import RecipientKeyResolver
from devseal.envelope.codec import encrypt_envelope
from devseal.envelope.format import EnvelopeHeader


class EncryptionEngine:
    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx
        self.recipients = RecipientKeyResolver(ctx.registry)

    def encrypt(self, source: IO[bytes], sink: IO[bytes], options: EncryptOptions) -> EnvelopeHeader:
        """Resolve ``options.recipients`` and stream an envelope to ``sink``.

        Every recipient is resolved before any key material is generated, so
        an unknown recipient fails the call without output.
        """

        ctx = self.ctx
        keys = self.recipients.resolve(
            options.recipients,
            ctx.username,
            suppress_self=options.suppress_self_encryption,
        )
        header = encrypt_envelope(
            source,
            sink,
            keys,
            ctx.sender_key,
            hide_sender=options.hide_sender,
            hide_recipients=options.hide_recipients,
            armor=options.armor,
        )
        ctx.logger.info(
            "%s encrypted to %d device(s) of %s%s",
            ctx.username,
            len(keys),
            ", ".join(options.recipients) or "self",
            " (sender hidden)" if options.hide_sender else "",
        )
        return header


def encrypt(ctx: EngineContext, source: IO[bytes], sink: IO[bytes], options: EncryptOptions) -> EnvelopeHeader:
    return EncryptionEngine(ctx).encrypt(source, sink, options)


__all__ = ["EncryptionEngine", "encrypt"]
