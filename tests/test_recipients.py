"""Recipient resolution and encrypt-time option checks."""

from __future__ import annotations

import io

import pytest

from devseal.engine import EncryptOptions, RecipientKeyResolver, encrypt, resolve_encrypt_options
from devseal.errors import UnknownRecipient, UnsupportedFeatureError


def _keys(*sessions) -> list[bytes]:
    return [s.device.encryption_key for s in sessions]


def test_resolution_covers_every_active_device(registry, alice, bob) -> None:
    keys = RecipientKeyResolver(registry).resolve(["bob"], "alice")

    assert keys == _keys(*bob, *alice)


def test_suppress_self_leaves_only_recipients(registry, alice, bob) -> None:
    keys = RecipientKeyResolver(registry).resolve(["bob"], "alice", suppress_self=True)

    assert keys == _keys(*bob)


def test_sender_listed_as_recipient_is_not_duplicated(registry, alice, bob) -> None:
    keys = RecipientKeyResolver(registry).resolve(["alice", "bob"], "alice")

    assert keys == _keys(*alice, *bob)


def test_revoked_devices_are_not_resolved(registry, alice, bob) -> None:
    bob_session, bob_backup = bob
    registry.revoke_device("bob", bob_backup.device.id)

    keys = RecipientKeyResolver(registry).resolve(["bob"], "alice", suppress_self=True)

    assert keys == _keys(bob_session)


def test_unknown_recipient(registry, alice) -> None:
    with pytest.raises(UnknownRecipient) as excinfo:
        RecipientKeyResolver(registry).resolve(["carol"], "alice")
    assert excinfo.value.username == "carol"


def test_recipient_without_active_devices(registry, alice, bob) -> None:
    for session in bob:
        registry.revoke_device("bob", session.device.id)

    with pytest.raises(UnknownRecipient):
        RecipientKeyResolver(registry).resolve(["bob"], "alice")


def test_unknown_recipient_writes_nothing(alice, context_for) -> None:
    sink = io.BytesIO()
    with pytest.raises(UnknownRecipient):
        encrypt(context_for(alice[0]), io.BytesIO(b"data"), sink, EncryptOptions(recipients=("ghost",)))
    assert sink.getvalue() == b""


def test_options_need_someone_to_encrypt_to() -> None:
    with pytest.raises(UnsupportedFeatureError):
        resolve_encrypt_options([], suppress_self_encryption=True)
    with pytest.raises(UnsupportedFeatureError):
        resolve_encrypt_options([" ", ""], suppress_self_encryption=True)


def test_raw_options_with_nobody_to_encrypt_to(registry, alice, context_for) -> None:
    sink = io.BytesIO()
    options = EncryptOptions(recipients=(), suppress_self_encryption=True)
    with pytest.raises(UnsupportedFeatureError):
        RecipientKeyResolver(registry).resolve([], "alice", suppress_self=True)
    with pytest.raises(UnsupportedFeatureError):
        encrypt(context_for(alice[0]), io.BytesIO(b"x"), sink, options)
    assert sink.getvalue() == b""


def test_options_normalize_recipients() -> None:
    options = resolve_encrypt_options([" bob", "bob", "carol "], hide_sender=True)

    assert options.recipients == ("bob", "carol")
    assert options.hide_sender
    assert not options.suppress_self_encryption
    assert options.armor
