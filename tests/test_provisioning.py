"""Two-party device provisioning over the in-process rendezvous channel."""

from __future__ import annotations

import io
import threading
import time

import pytest

from devseal.crypto.kdf import Argon2Params
from devseal.devices import DeviceRegistry, DeviceType
from devseal.engine import EncryptOptions, decrypt, encrypt
from devseal.errors import DevsealError, ProvisioningFailed, ProvisioningFailure, UnsupportedFeatureError
from devseal.provisioning import (
    ProvisioningConfig,
    Provisionee,
    Provisioner,
    RendezvousChannel,
    new_provisioning_secret,
    resolve_provisioning_config,
)
from devseal.provisioning.messages import Hello, decode_frame, encode_frame
from devseal.session import MemorySessionStore, sign_up

FAST = ProvisioningConfig(timeout=10.0, argon_params=Argon2Params(mem_cost_kib=8 * 1024, time_cost=1, parallelism=1))
SHORT = ProvisioningConfig(timeout=0.5, argon_params=FAST.argon_params)
BRIEF = ProvisioningConfig(timeout=1.0, argon_params=FAST.argon_params)


def _run_pair(provisioner: Provisioner, provisionee: Provisionee, delay_secret: str | None = None) -> dict:
    channel = RendezvousChannel()
    results: dict[str, object] = {}

    def runner(name: str, party, endpoint) -> None:
        try:
            results[name] = party.run(endpoint)
        except ProvisioningFailed as exc:
            results[name] = exc

    threads = [
        threading.Thread(target=runner, args=("provisioner", provisioner, channel.provisioner)),
        threading.Thread(target=runner, args=("provisionee", provisionee, channel.provisionee)),
    ]
    for thread in threads:
        thread.start()
    if delay_secret is not None:
        time.sleep(0.2)
        provisioner.add_secret(delay_secret)
    for thread in threads:
        thread.join(30)
    assert not any(thread.is_alive() for thread in threads)
    return results


def test_matching_secret_activates_the_device_once(registry, alice, bob, context_for) -> None:
    alice_session, _ = alice
    secret = new_provisioning_secret()
    sessions = MemorySessionStore()

    results = _run_pair(
        Provisioner(alice_session, secret, FAST),
        Provisionee(registry, "alice phone", DeviceType.MOBILE, secret, FAST, session_store=sessions),
    )

    device = results["provisioner"]
    new_session = results["provisionee"]
    assert not isinstance(device, Exception) and not isinstance(new_session, Exception)
    assert new_session.device == device
    assert new_session.username == "alice"
    assert sessions.load("alice") == new_session

    active = registry.active_devices("alice")
    assert [d.id for d in active].count(device.id) == 1
    assert len(active) == 3
    assert device.type is DeviceType.MOBILE and device.name == "alice phone"

    sink = io.BytesIO()
    encrypt(context_for(bob[0]), io.BytesIO(b"welcome, phone"), sink, EncryptOptions(recipients=("alice",)))
    out = io.BytesIO()
    decrypt(context_for(new_session), io.BytesIO(sink.getvalue()), out)
    assert out.getvalue() == b"welcome, phone"


class SlowCheckRegistry(DeviceRegistry):
    def check_activation(self, *args, **kwargs) -> None:
        time.sleep(2.0)
        super().check_activation(*args, **kwargs)


class SlowActivationRegistry(DeviceRegistry):
    def activate_device(self, *args, **kwargs):
        device = super().activate_device(*args, **kwargs)
        time.sleep(2.0)
        return device


def test_ack_after_provisioner_deadline_adds_no_device() -> None:
    registry = SlowCheckRegistry()
    alice_session, _ = sign_up(registry, "alice", "alice laptop")
    secret = new_provisioning_secret()

    results = _run_pair(
        Provisioner(alice_session, secret, BRIEF),
        Provisionee(registry, "alice phone", DeviceType.MOBILE, secret, FAST),
    )

    assert results["provisioner"].reason is ProvisioningFailure.TIMEOUT
    assert isinstance(results["provisionee"], ProvisioningFailed)
    assert len(registry.active_devices("alice")) == 2


def test_slow_activation_after_confirm_succeeds_on_both_sides() -> None:
    registry = SlowActivationRegistry()
    alice_session, _ = sign_up(registry, "alice", "alice laptop")
    secret = new_provisioning_secret()

    results = _run_pair(
        Provisioner(alice_session, secret, BRIEF),
        Provisionee(registry, "alice phone", DeviceType.MOBILE, secret, FAST),
    )

    device = results["provisioner"]
    assert not isinstance(device, ProvisioningFailed)
    assert results["provisionee"].device == device
    assert [d.id for d in registry.active_devices("alice")][-1] == device.id


def test_secret_supplied_while_waiting(registry, alice) -> None:
    secret = new_provisioning_secret()
    provisioner = Provisioner(alice[0], config=FAST)

    results = _run_pair(
        provisioner,
        Provisionee(registry, "alice tablet", DeviceType.MOBILE, secret, FAST),
        delay_secret=secret,
    )

    assert results["provisionee"].device == results["provisioner"]


def test_secret_is_case_and_space_insensitive(registry, alice) -> None:
    secret = new_provisioning_secret()
    spaced = " ".join(secret[i : i + 4] for i in range(0, len(secret), 4)).upper()

    results = _run_pair(
        Provisioner(alice[0], secret, FAST),
        Provisionee(registry, "alice tablet", DeviceType.MOBILE, spaced, FAST),
    )

    assert not isinstance(results["provisionee"], ProvisioningFailed)


def test_mismatched_secret_fails_both_sides(registry, alice) -> None:
    before = registry.active_devices("alice")

    results = _run_pair(
        Provisioner(alice[0], new_provisioning_secret(), FAST),
        Provisionee(registry, "alice phone", DeviceType.MOBILE, new_provisioning_secret(), FAST),
    )

    for side in ("provisioner", "provisionee"):
        assert isinstance(results[side], ProvisioningFailed)
        assert results[side].reason is ProvisioningFailure.SECRET_MISMATCH
    assert registry.active_devices("alice") == before


def test_provisioner_times_out_without_peer(alice) -> None:
    channel = RendezvousChannel()
    started = time.monotonic()

    with pytest.raises(ProvisioningFailed) as excinfo:
        Provisioner(alice[0], new_provisioning_secret(), SHORT).run(channel.provisioner)

    assert excinfo.value.reason is ProvisioningFailure.TIMEOUT
    assert time.monotonic() - started < 5
    assert channel.provisioner.closed


def test_provisionee_times_out_without_peer(registry, alice) -> None:
    before = registry.active_devices("alice")
    channel = RendezvousChannel()

    with pytest.raises(ProvisioningFailed) as excinfo:
        Provisionee(registry, "alice phone", DeviceType.MOBILE, new_provisioning_secret(), SHORT).run(
            channel.provisionee
        )

    assert excinfo.value.reason is ProvisioningFailure.TIMEOUT
    assert registry.active_devices("alice") == before


def test_missing_secret_times_out(alice) -> None:
    with pytest.raises(ProvisioningFailed) as excinfo:
        Provisioner(alice[0], config=SHORT).run(RendezvousChannel().provisioner)
    assert excinfo.value.reason is ProvisioningFailure.TIMEOUT


def test_garbage_frame_is_a_transport_error(registry, alice) -> None:
    channel = RendezvousChannel()
    channel.provisionee.send(b"\xffnot a frame")

    with pytest.raises(ProvisioningFailed) as excinfo:
        Provisioner(alice[0], new_provisioning_secret(), FAST).run(channel.provisioner)

    assert excinfo.value.reason is ProvisioningFailure.TRANSPORT_ERROR


def test_closed_channel_is_a_transport_error(registry, alice) -> None:
    channel = RendezvousChannel()
    channel.close()

    with pytest.raises(ProvisioningFailed) as excinfo:
        Provisionee(registry, "alice phone", DeviceType.MOBILE, new_provisioning_secret(), FAST).run(
            channel.provisionee
        )

    assert excinfo.value.reason is ProvisioningFailure.TRANSPORT_ERROR
    assert len(registry.active_devices("alice")) == 2


def test_second_secret_is_rejected(alice) -> None:
    provisioner = Provisioner(alice[0], new_provisioning_secret(), FAST)
    with pytest.raises(DevsealError):
        provisioner.add_secret(new_provisioning_secret())


def test_backup_devices_are_not_provisioned(registry) -> None:
    with pytest.raises(UnsupportedFeatureError):
        Provisionee(registry, "vault", DeviceType.BACKUP)


def test_config_bounds() -> None:
    assert resolve_provisioning_config(timeout=5).timeout == 5
    with pytest.raises(UnsupportedFeatureError):
        resolve_provisioning_config(timeout=0)


def test_frames_reject_non_string_fields() -> None:
    frame = Hello("s", "n", "phone", "mobile", "00", "00", "m")
    assert decode_frame(encode_frame(frame)) == frame
    with pytest.raises(ProvisioningFailed) as excinfo:
        decode_frame(b'{"type": "reject", "reason": 5}')
    assert excinfo.value.reason is ProvisioningFailure.TRANSPORT_ERROR
