"""Device registry: per-user active device sets and their lifecycle."""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Iterable

from devseal.crypto.keys import short_kid, validate_public_key, verify_signature
from devseal.devices.model import Attestation, Device, User, valid_username
from devseal.devices.store import MemoryRegistryStore, RegistryStore
from devseal.errors import DeviceError

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Source of truth for which device keys may decrypt a user's messages.

    Records are immutable :class:`User` snapshots swapped in as a whole, so
    readers never take a lock. Writers serialize on a lock owned by the user
    they modify; writes for different users proceed in parallel.
    """

    def __init__(self, store: RegistryStore | None = None) -> None:
        self._store = store if store is not None else MemoryRegistryStore()
        self._users: dict[str, User] = self._store.load()
        self._user_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._index_lock = threading.Lock()
        self._key_owner: dict[bytes, str] = {}
        for user in self._users.values():
            for device in (*user.devices, *user.revoked):
                self._key_owner[device.encryption_key] = user.username

    def _lock_for(self, username: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._user_locks.get(username)
            if lock is None:
                lock = self._user_locks[username] = threading.Lock()
            return lock

    def _claim_keys(self, username: str, devices: Iterable[Device]) -> None:
        with self._index_lock:
            pending = list(devices)
            for device in pending:
                owner = self._key_owner.get(device.encryption_key)
                if owner is not None:
                    raise DeviceError(
                        f"Encryption key {short_kid(device.encryption_key)} is already registered"
                        + (" for this user" if owner == username else "")
                    )
            for device in pending:
                self._key_owner[device.encryption_key] = username

    def _release_keys(self, devices: Iterable[Device]) -> None:
        with self._index_lock:
            for device in devices:
                self._key_owner.pop(device.encryption_key, None)

    def _commit(self, user: User) -> None:
        self._store.save_user(user)
        self._users[user.username] = user

    # -- reads -----------------------------------------------------------

    def get_user(self, username: str) -> User | None:
        return self._users.get(username)

    def usernames(self) -> list[str]:
        return sorted(self._users)

    def active_devices(self, username: str) -> tuple[Device, ...]:
        user = self._users.get(username)
        return user.devices if user is not None else ()

    def all_devices(self, username: str) -> tuple[Device, ...]:
        """Active devices followed by revoked ones."""

        user = self._users.get(username)
        if user is None:
            return ()
        return user.devices + user.revoked

    def lookup_key(self, encryption_key: bytes) -> tuple[str, Device] | None:
        """Return the owner and active device holding ``encryption_key``."""

        username = self._key_owner.get(encryption_key)
        if username is None:
            return None
        user = self._users.get(username)
        if user is None:
            return None
        device = next((d for d in user.devices if d.encryption_key == encryption_key), None)
        if device is None:
            return None
        return username, device

    # -- writes ----------------------------------------------------------

    def signup(self, username: str, devices: Iterable[Device]) -> User:
        """Create ``username`` with its initial devices (no attestation needed)."""

        initial = tuple(devices)
        if not valid_username(username):
            raise DeviceError(f"Invalid username {username!r}")
        if not initial:
            raise DeviceError("signup requires at least one device")
        for device in initial:
            validate_public_key(device.encryption_key)
        with self._lock_for(username):
            if username in self._users:
                raise DeviceError(f"User {username!r} already exists")
            self._claim_keys(username, initial)
            user = User(username=username, devices=initial)
            try:
                self._commit(user)
            except BaseException:
                self._release_keys(initial)
                raise
        logger.info("signed up %s with %d device(s)", username, len(initial))
        return user

    def _check_activation(self, username: str, device: Device, attestation: Attestation) -> User:
        user = self._users.get(username)
        if user is None:
            raise DeviceError(f"Unknown user {username!r}")
        if any(d.id == device.id for d in (*user.devices, *user.revoked)):
            raise DeviceError(f"Device {device.id} is already registered")

        signer = user.device(attestation.signer_device_id)
        if signer is None or signer.signing_key is None:
            raise DeviceError("Attestation signer is not an active signing device")
        if not verify_signature(signer.signing_key, attestation.signature, device.attestation_payload(username)):
            raise DeviceError("Device attestation signature is invalid")
        return user

    def check_activation(self, username: str, device: Device, attestation: Attestation) -> None:
        """Raise :class:`DeviceError` if :meth:`activate_device` would refuse ``device``.

        Nothing is written.
        """

        validate_public_key(device.encryption_key)
        with self._lock_for(username):
            self._check_activation(username, device, attestation)
        if device.encryption_key in self._key_owner:
            raise DeviceError(f"Encryption key {short_kid(device.encryption_key)} is already registered")

    def activate_device(self, username: str, device: Device, attestation: Attestation) -> Device:
        """Add a provisioned device after checking the attestation.

        The attestation must be a signature over the device record made by
        one of the user's currently active devices.
        """

        validate_public_key(device.encryption_key)
        with self._lock_for(username):
            user = self._check_activation(username, device, attestation)
            self._claim_keys(username, [device])
            try:
                self._commit(replace(user, devices=user.devices + (device,)))
            except BaseException:
                self._release_keys([device])
                raise

        logger.info(
            "activated %s device %s (%s) for %s",
            device.type.value,
            device.id,
            short_kid(device.encryption_key),
            username,
        )
        return device

    def revoke_device(self, username: str, device_id: str) -> bool:
        """Revoke a device. Returns ``False`` when it was already revoked."""

        with self._lock_for(username):
            user = self._users.get(username)
            if user is None:
                raise DeviceError(f"Unknown user {username!r}")
            device = user.device(device_id)
            if device is None:
                if any(d.id == device_id for d in user.revoked):
                    return False
                raise DeviceError(f"Unknown device {device_id} for {username!r}")
            remaining = tuple(d for d in user.devices if d.id != device_id)
            self._commit(replace(user, devices=remaining, revoked=user.revoked + (device,)))

        logger.info("revoked device %s for %s", device_id, username)
        return True


__all__ = ["DeviceRegistry"]
