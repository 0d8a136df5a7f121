"""Persistence backends for :class:`~devseal.devices.registry.DeviceRegistry`."""
from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from devseal.devices.model import User
from devseal.errors import DeviceError

STORE_VERSION = 1


class RegistryStore(Protocol):
    def load(self) -> dict[str, User]: ...

    def save_user(self, user: User) -> None: ...


class MemoryRegistryStore:
    """Keeps records in process memory only."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._lock = threading.Lock()

    def load(self) -> dict[str, User]:
        with self._lock:
            return dict(self._users)

    def save_user(self, user: User) -> None:
        with self._lock:
            self._users[user.username] = user


class JsonRegistryStore:
    """Stores every user in a single JSON document, rewritten atomically."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._users: dict[str, User] | None = None

    def _read(self) -> dict[str, User]:
        if not self.path.exists():
            return {}
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise DeviceError(f"Device registry {self.path} is not valid JSON") from exc
        if not isinstance(document, dict) or document.get("version") != STORE_VERSION:
            raise DeviceError(f"Unsupported device registry format in {self.path}")
        users = document.get("users", {})
        return {name: User.from_dict(name, record) for name, record in users.items()}

    def load(self) -> dict[str, User]:
        with self._lock:
            if self._users is None:
                self._users = self._read()
            return dict(self._users)

    def save_user(self, user: User) -> None:
        with self._lock:
            if self._users is None:
                self._users = self._read()
            self._users[user.username] = user
            document = {
                "version": STORE_VERSION,
                "users": {name: record.to_dict() for name, record in sorted(self._users.items())},
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".registry-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, indent=2)
                os.replace(temp_name, self.path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise


__all__ = ["JsonRegistryStore", "MemoryRegistryStore", "RegistryStore", "STORE_VERSION"]
