"""Decrypt policy callbacks: rejection errors reach the caller untouched."""

from __future__ import annotations

import io

import pytest

from devseal.engine import DecryptState, DecryptionEngine, EncryptOptions, SenderInfo, encrypt
from devseal.errors import PolicyRejected
from devseal.trust import SenderClassification


class UntrustedSender(Exception):
    def __init__(self, who: str | None) -> None:
        super().__init__(f"refusing {who}")
        self.who = who


@pytest.fixture
def envelope(alice, bob, context_for) -> bytes:
    sink = io.BytesIO()
    encrypt(context_for(bob[0]), io.BytesIO(b"policy gated"), sink, EncryptOptions(recipients=("alice",)))
    return sink.getvalue()


def test_raised_policy_error_is_the_same_object(alice, envelope, context_for) -> None:
    error = UntrustedSender("bob")

    def policy(classification: SenderClassification, sender: SenderInfo) -> None:
        raise error

    engine = DecryptionEngine(context_for(alice[0]))
    out = io.BytesIO()
    with pytest.raises(UntrustedSender) as excinfo:
        engine.decrypt(io.BytesIO(envelope), out, policy)

    assert excinfo.value is error
    assert engine.state is DecryptState.POLICY_REJECTED
    assert out.getvalue() == b""


def test_returned_policy_error_is_raised_unchanged(alice, envelope, context_for) -> None:
    error = UntrustedSender("bob")
    engine = DecryptionEngine(context_for(alice[0]))
    out = io.BytesIO()

    with pytest.raises(UntrustedSender) as excinfo:
        engine.decrypt(io.BytesIO(envelope), out, lambda classification, sender: error)

    assert excinfo.value is error
    assert excinfo.value.who == "bob"
    assert engine.state is DecryptState.POLICY_REJECTED
    assert out.getvalue() == b""


def test_library_rejection_error_passes_through(alice, envelope, context_for) -> None:
    error = PolicyRejected("not tracked")

    with pytest.raises(PolicyRejected) as excinfo:
        DecryptionEngine(context_for(alice[0])).decrypt(
            io.BytesIO(envelope), io.BytesIO(), lambda classification, sender: error
        )

    assert excinfo.value is error


def test_policy_sees_classification_and_sender(alice, bob, envelope, context_for) -> None:
    calls: list[tuple[SenderClassification, SenderInfo]] = []

    def policy(classification: SenderClassification, sender: SenderInfo) -> None:
        calls.append((classification, sender))

    out = io.BytesIO()
    result = DecryptionEngine(context_for(alice[0])).decrypt(io.BytesIO(envelope), out, policy)

    assert out.getvalue() == b"policy gated"
    assert len(calls) == 1
    classification, sender = calls[0]
    assert classification is result.classification is SenderClassification.NOT_TRACKED
    assert sender.username == "bob"
    assert sender.device is not None and sender.device.id == bob[0].device.id
    assert sender.message is result.info


def test_policy_must_return_none_or_an_exception(alice, envelope, context_for) -> None:
    engine = DecryptionEngine(context_for(alice[0]))
    out = io.BytesIO()
    with pytest.raises(TypeError):
        engine.decrypt(io.BytesIO(envelope), out, lambda classification, sender: "no")  # type: ignore[arg-type,return-value]
    assert out.getvalue() == b""


def test_engine_runs_a_single_message(alice, envelope, context_for) -> None:
    engine = DecryptionEngine(context_for(alice[0]))
    engine.decrypt(io.BytesIO(envelope), io.BytesIO())
    with pytest.raises(RuntimeError):
        engine.decrypt(io.BytesIO(envelope), io.BytesIO())
