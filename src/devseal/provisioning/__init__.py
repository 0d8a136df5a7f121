"""Two-party device provisioning over a rendezvous channel."""
from __future__ import annotations

from devseal.provisioning.channel import Endpoint, RendezvousChannel
from devseal.provisioning.protocol import (
    ProvisioningConfig,
    Provisionee,
    Provisioner,
    new_provisioning_secret,
    resolve_provisioning_config,
)

__all__ = [
    "Endpoint",
    "ProvisioningConfig",
    "Provisionee",
    "Provisioner",
    "RendezvousChannel",
    "new_provisioning_secret",
    "resolve_provisioning_config",
]
