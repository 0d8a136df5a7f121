"""Public encrypt/decrypt operations."""
from __future__ import annotations

from devseal.engine.context import (
    DecryptOptions,
    EncryptOptions,
    EngineContext,
    PolicyCallback,
    SenderInfo,
    resolve_encrypt_options,
)
from devseal.engine.decrypt import DecryptionEngine, DecryptResult, DecryptState, decrypt
from devseal.engine.encrypt import EncryptionEngine, encrypt
from devseal.engine.recipients import RecipientKeyResolver

__all__ = [
    "DecryptOptions",
    "DecryptResult",
    "DecryptState",
    "DecryptionEngine",
    "EncryptOptions",
    "EncryptionEngine",
    "EngineContext",
    "PolicyCallback",
    "RecipientKeyResolver",
    "SenderInfo",
    "decrypt",
    "encrypt",
    "resolve_encrypt_options",
]
