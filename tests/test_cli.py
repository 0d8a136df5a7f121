from __future__ import annotations

import re
from pathlib import Path

import pytest
from click.testing import CliRunner

from devseal.cli import (
    EXIT_CORRUPT,
    EXIT_CRYPTO,
    EXIT_FORMAT,
    EXIT_FS,
    EXIT_SUCCESS,
    EXIT_TRUST,
    EXIT_USAGE,
    cli,
    main,
)
from devseal.devices import DeviceRegistry, JsonRegistryStore

BACKUP_KEY_RE = re.compile(r"^[0-9a-f]{64}$", re.MULTILINE)


class Devseal:
    def __init__(self, home: Path) -> None:
        self.home = home
        self.runner = CliRunner()

    def __call__(self, *args: str, user: str | None = None, passphrase: str = "pw"):
        base = [
            "--home",
            str(self.home),
            "--passphrase",
            passphrase,
            "--argon-mem-kib",
            "8192",
            "--argon-time",
            "1",
        ]
        if user is not None:
            base += ["--user", user]
        return self.runner.invoke(cli, [*base, *args])

    def registry(self) -> DeviceRegistry:
        return DeviceRegistry(JsonRegistryStore(self.home / "registry.json"))


@pytest.fixture
def devseal(tmp_path: Path) -> Devseal:
    tool = Devseal(tmp_path / "home")
    for name in ("alice", "bob"):
        result = tool("signup", name, "--device-name", f"{name} laptop")
        assert result.exit_code == EXIT_SUCCESS, result.output
    return tool


def _encrypt(devseal: Devseal, tmp_path: Path, sender: str, *recipients: str, text: str = "hello") -> Path:
    source = tmp_path / f"{sender}.txt"
    source.write_text(text)
    envelope = tmp_path / f"{sender}.seal"
    args = ["encrypt", str(source), "-o", str(envelope), "--overwrite"]
    for name in recipients:
        args += ["-r", name]
    result = devseal(*args, user=sender)
    assert result.exit_code == EXIT_SUCCESS, result.output
    return envelope


def test_signup_prints_backup_key(tmp_path: Path) -> None:
    tool = Devseal(tmp_path / "home")
    result = tool("signup", "carol")

    assert result.exit_code == EXIT_SUCCESS, result.output
    assert BACKUP_KEY_RE.search(result.output)
    assert (tmp_path / "home" / "sessions" / "carol.session").exists()

    again = tool("signup", "carol")
    assert again.exit_code == EXIT_USAGE
    assert "already exists" in again.output


def test_encrypt_decrypt_between_users(devseal: Devseal, tmp_path: Path) -> None:
    envelope = _encrypt(devseal, tmp_path, "bob", "alice", text="hi alice")
    assert envelope.read_text().startswith("BEGIN DEVSEAL ENCRYPTED MESSAGE.")

    output = tmp_path / "plain.txt"
    result = devseal("decrypt", str(envelope), "-o", str(output), user="alice")

    assert result.exit_code == EXIT_SUCCESS, result.output
    assert output.read_text() == "hi alice"
    assert "Sender: bob (not tracked)" in result.output


def test_info_shows_recipients(devseal: Devseal, tmp_path: Path) -> None:
    envelope = _encrypt(devseal, tmp_path, "bob", "alice")

    result = devseal("info", str(envelope), user="alice")

    assert result.exit_code == EXIT_SUCCESS, result.output
    assert "devseal encrypted message" in result.output
    assert "armored" in result.output
    assert "alice laptop" in result.output


def test_track_then_require_tracked(devseal: Devseal, tmp_path: Path) -> None:
    envelope = _encrypt(devseal, tmp_path, "bob", "alice")
    output = tmp_path / "plain.txt"

    refused = devseal("decrypt", str(envelope), "-o", str(output), "--require-tracked", user="alice")
    assert refused.exit_code == EXIT_TRUST
    assert not output.exists()

    tracked = devseal("track", "bob", user="alice")
    assert tracked.exit_code == EXIT_SUCCESS, tracked.output

    accepted = devseal("decrypt", str(envelope), "-o", str(output), "--require-tracked", user="alice")
    assert accepted.exit_code == EXIT_SUCCESS, accepted.output
    assert "tracking ok" in accepted.output
    assert output.read_text() == "hello"


def test_hidden_sender_is_reported_anonymous(devseal: Devseal, tmp_path: Path) -> None:
    source = tmp_path / "anon.txt"
    source.write_text("guess")
    envelope = tmp_path / "anon.seal"
    result = devseal("encrypt", str(source), "-o", str(envelope), "-r", "alice", "--hide-sender", user="bob")
    assert result.exit_code == EXIT_SUCCESS, result.output

    output = tmp_path / "anon.out"
    result = devseal("decrypt", str(envelope), "-o", str(output), user="alice")
    assert result.exit_code == EXIT_SUCCESS, result.output
    assert "Sender: anonymous (anonymous)" in result.output


def test_decrypt_without_matching_key(devseal: Devseal, tmp_path: Path) -> None:
    devseal("signup", "carol")
    envelope = _encrypt(devseal, tmp_path, "bob", "alice")
    output = tmp_path / "plain.txt"

    result = devseal("decrypt", str(envelope), "-o", str(output), user="carol")

    assert result.exit_code == EXIT_CRYPTO
    assert "not encrypted for" in result.output
    assert not output.exists()


def test_decrypt_rejects_pgp_input(devseal: Devseal, tmp_path: Path) -> None:
    message = tmp_path / "message.asc"
    message.write_text("-----BEGIN PGP MESSAGE-----\n\nhQEMA\n-----END PGP MESSAGE-----\n")

    result = devseal("decrypt", str(message), "-o", str(tmp_path / "out"), user="alice")

    assert result.exit_code == EXIT_FORMAT
    assert "OpenPGP" in result.output


def test_corrupted_envelope(devseal: Devseal, tmp_path: Path) -> None:
    source = tmp_path / "data.bin"
    source.write_bytes(b"\x00" * 1000)
    envelope = tmp_path / "data.seal"
    result = devseal("encrypt", str(source), "-o", str(envelope), "--binary", user="alice")
    assert result.exit_code == EXIT_SUCCESS, result.output
    envelope.write_bytes(envelope.read_bytes()[:-20])

    result = devseal("decrypt", str(envelope), "-o", str(tmp_path / "out"), user="alice")
    assert result.exit_code == EXIT_CORRUPT


def test_unknown_recipient(devseal: Devseal, tmp_path: Path) -> None:
    source = tmp_path / "x.txt"
    source.write_text("x")
    output = tmp_path / "x.seal"

    result = devseal("encrypt", str(source), "-o", str(output), "-r", "nobody", user="alice")

    assert result.exit_code == EXIT_USAGE
    assert "nobody" in result.output
    assert not output.exists()


def test_existing_output_needs_overwrite(devseal: Devseal, tmp_path: Path) -> None:
    envelope = _encrypt(devseal, tmp_path, "alice")
    output = tmp_path / "taken.txt"
    output.write_text("keep me")

    result = devseal("decrypt", str(envelope), "-o", str(output), user="alice")

    assert result.exit_code == EXIT_FS
    assert output.read_text() == "keep me"


def test_wrong_passphrase(devseal: Devseal, tmp_path: Path) -> None:
    source = tmp_path / "x.txt"
    source.write_text("x")

    result = devseal("encrypt", str(source), "-o", str(tmp_path / "x.seal"), user="alice", passphrase="nope")

    assert result.exit_code == EXIT_CRYPTO
    assert "Invalid passphrase" in result.output


def test_several_sessions_need_user(devseal: Devseal, tmp_path: Path) -> None:
    result = devseal("devices")
    assert result.exit_code == EXIT_USAGE
    assert "--user" in result.output


def test_devices_and_revoke(devseal: Devseal) -> None:
    backup = devseal.registry().active_devices("alice")[1]

    listed = devseal("devices", user="alice")
    assert listed.exit_code == EXIT_SUCCESS, listed.output
    assert "Devices of alice" in listed.output

    first = devseal("revoke", backup.id, user="alice")
    assert first.exit_code == EXIT_SUCCESS, first.output
    assert "Revoked" in first.output
    second = devseal("revoke", backup.id, user="alice")
    assert second.exit_code == EXIT_SUCCESS
    assert "already revoked" in second.output

    assert backup.id not in [d.id for d in devseal.registry().active_devices("alice")]


def test_invalid_argon_parameters(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--home", str(tmp_path), "--argon-mem-kib", "1", "devices"])
    assert result.exit_code == EXIT_USAGE
    assert "Argon2" in result.output


def test_main_returns_exit_code(tmp_path: Path) -> None:
    assert main(["--home", str(tmp_path), "--passphrase", "pw", "devices", "nobody"]) == EXIT_USAGE
