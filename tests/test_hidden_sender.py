"""Hidden-sender and hidden-recipient envelopes."""

from __future__ import annotations

import io

from devseal.engine import EncryptOptions, SenderInfo, decrypt, encrypt
from devseal.envelope import inspect_envelope
from devseal.trust import IdentityProof, SenderClassification


def _encrypt(ctx, data: bytes, **options) -> bytes:
    sink = io.BytesIO()
    encrypt(ctx, io.BytesIO(data), sink, EncryptOptions(armor=False, **options))
    return sink.getvalue()


def test_hidden_sender_is_anonymous_even_when_tracked(trust, alice, bob, context_for) -> None:
    alice_session, _ = alice
    bob_session, _ = bob
    trust.track("alice", "bob", [IdentityProof("twitter", "bob")])
    envelope = _encrypt(context_for(bob_session), b"guess who", recipients=("alice",), hide_sender=True)
    seen: list[tuple[SenderClassification, SenderInfo]] = []

    out = io.BytesIO()
    result = decrypt(
        context_for(alice_session),
        io.BytesIO(envelope),
        out,
        lambda classification, sender: seen.append((classification, sender)),
    )

    assert out.getvalue() == b"guess who"
    assert result.classification is SenderClassification.ANONYMOUS
    assert result.info.sender_key is None
    assert result.info.anonymous_sender
    classification, sender = seen[0]
    assert classification is SenderClassification.ANONYMOUS
    assert sender.anonymous
    assert sender.username is None and sender.device is None


def test_hidden_sender_key_never_appears_in_envelope(alice, bob, context_for) -> None:
    bob_session, _ = bob
    envelope = _encrypt(
        context_for(bob_session), b"x" * 100, recipients=("alice",), hide_sender=True, suppress_self_encryption=True
    )

    assert bob_session.device.encryption_key not in envelope


def test_visible_sender_is_reported(alice, bob, context_for) -> None:
    alice_session, _ = alice
    bob_session, _ = bob
    envelope = _encrypt(context_for(bob_session), b"it's bob", recipients=("alice",))

    result = decrypt(context_for(alice_session), io.BytesIO(envelope), io.BytesIO())

    assert result.info.sender_key == bob_session.device.encryption_key
    assert result.sender.username == "bob"


def test_hidden_recipients_still_decrypt(alice, bob, context_for) -> None:
    alice_session, alice_backup = alice
    bob_session, _ = bob
    envelope = _encrypt(context_for(bob_session), b"nobody knows", recipients=("alice",), hide_recipients=True)

    overview = inspect_envelope(io.BytesIO(envelope))
    assert overview.hidden_recipients
    assert overview.recipient_key_ids == []
    assert overview.recipient_count == 4
    for device_key in (alice_session.device.encryption_key, alice_backup.device.encryption_key):
        assert device_key not in envelope

    for session in (alice_session, alice_backup, bob_session):
        out = io.BytesIO()
        result = decrypt(context_for(session), io.BytesIO(envelope), out)
        assert out.getvalue() == b"nobody knows"
        assert result.info.hidden_recipients
        assert result.info.devices == ()
