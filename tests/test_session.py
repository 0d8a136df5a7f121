"""Passphrase-locked session storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from devseal.crypto.kdf import Argon2Params
from devseal.errors import DeviceError, InvalidPassphrase
from devseal.session import DeviceSession, FileSessionStore, MemorySessionStore

FAST_ARGON = Argon2Params(mem_cost_kib=8 * 1024, time_cost=1, parallelism=1)


def _store(directory: Path, passphrase: str = "correct horse") -> FileSessionStore:
    return FileSessionStore(directory, lambda: passphrase, FAST_ARGON)


def test_session_roundtrip(tmp_path: Path, alice) -> None:
    session, _ = alice
    _store(tmp_path).save(session)

    loaded = _store(tmp_path).load("alice")

    assert loaded is not None
    assert loaded.device == session.device
    assert loaded.token == session.token
    assert loaded.encryption_key.public_bytes == session.encryption_key.public_bytes
    assert loaded.signing_key.public_bytes == session.signing_key.public_bytes
    assert _store(tmp_path).usernames() == ["alice"]


def test_session_file_does_not_leak_keys(tmp_path: Path, alice) -> None:
    session, _ = alice
    store = _store(tmp_path)
    store.save(session)

    text = store.path_for("alice").read_text(encoding="utf-8")
    assert session.encryption_key.private_bytes.hex() not in text
    assert json.loads(text)["kdf"]["mem_cost_kib"] == FAST_ARGON.mem_cost_kib


def test_wrong_passphrase(tmp_path: Path, alice) -> None:
    _store(tmp_path).save(alice[0])
    with pytest.raises(InvalidPassphrase):
        _store(tmp_path, "wrong").load("alice")


def test_missing_session(tmp_path: Path) -> None:
    assert _store(tmp_path).load("nobody") is None
    assert _store(tmp_path / "absent").usernames() == []


def test_session_names_are_validated(tmp_path: Path) -> None:
    with pytest.raises(DeviceError):
        _store(tmp_path).path_for("../escape")


def test_corrupted_session_file(tmp_path: Path, alice) -> None:
    store = _store(tmp_path)
    store.save(alice[0])
    store.path_for("alice").write_text("{", encoding="utf-8")
    with pytest.raises(DeviceError):
        store.load("alice")


def test_session_dict_roundtrip(alice) -> None:
    session, _ = alice
    restored = DeviceSession.from_dict(session.to_dict())
    assert restored.to_dict() == session.to_dict()


def test_memory_store(alice) -> None:
    store = MemorySessionStore()
    assert store.load("alice") is None
    store.save(alice[0])
    assert store.load("alice") is alice[0]
