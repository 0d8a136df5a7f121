"""Per-user device sets: the source of truth for who can decrypt."""
from __future__ import annotations

from devseal.devices.model import Attestation, Device, DeviceType, User, new_device_id, valid_username
from devseal.devices.registry import DeviceRegistry
from devseal.devices.store import JsonRegistryStore, MemoryRegistryStore, RegistryStore

__all__ = [
    "Attestation",
    "Device",
    "DeviceRegistry",
    "DeviceType",
    "JsonRegistryStore",
    "MemoryRegistryStore",
    "RegistryStore",
    "User",
    "new_device_id",
    "valid_username",
]
