"""Usernames to device keys."""
from __future__ import annotations

import logging
from typing import Iterable

from devseal.devices.registry import DeviceRegistry
from devseal.errors import UnknownRecipient, UnsupportedFeatureError

logger = logging.getLogger(__name__)


class RecipientKeyResolver:
    def __init__(self, registry: DeviceRegistry) -> None:
        self.registry = registry

    def _keys_for(self, username: str) -> list[bytes]:
        devices = self.registry.active_devices(username)
        if not devices:
            raise UnknownRecipient(username)
        return [device.encryption_key for device in devices]

    def resolve(
        self,
        usernames: Iterable[str],
        sender_username: str,
        *,
        suppress_self: bool = False,
    ) -> list[bytes]:
        """One key per active device of every recipient, in registry order.

        Unless ``suppress_self`` is set, the sender's own active devices are
        added as well. Backup devices are included like any other device.
        """

        keys: dict[bytes, None] = {}
        for username in usernames:
            keys.update(dict.fromkeys(self._keys_for(username)))
        if not suppress_self:
            keys.update(dict.fromkeys(self._keys_for(sender_username)))
        if not keys:
            raise UnsupportedFeatureError("Nothing to encrypt to: no recipients and self-encryption suppressed")
        logger.debug("resolved %d device key(s)", len(keys))
        return list(keys)


__all__ = ["RecipientKeyResolver"]
