"""In-process rendezvous transport for provisioning.

A :class:`RendezvousChannel` joins two endpoints with a pair of bounded
queues. Receives block until a deadline; closing either endpoint wakes the
peer, which then fails with a transport error once its inbox is drained.
"""
from __future__ import annotations

import queue
import threading
import time

from devseal.errors import ProvisioningFailed, ProvisioningFailure

DEFAULT_CAPACITY = 4

_CLOSED = object()


class Endpoint:
    def __init__(
        self,
        name: str,
        inbox: queue.Queue,
        outbox: queue.Queue,
        closed: threading.Event,
    ) -> None:
        self.name = name
        self._inbox = inbox
        self._outbox = outbox
        self._closed = closed

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, frame: bytes, deadline: float | None = None) -> None:
        if self._closed.is_set():
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "channel is closed")
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            self._outbox.put(frame, timeout=timeout)
        except queue.Full as exc:
            raise ProvisioningFailed(ProvisioningFailure.TIMEOUT, f"{self.name}: peer is not reading") from exc

    def receive(self, deadline: float) -> bytes:
        """Next frame from the peer, waiting no later than ``deadline``."""

        if self._closed.is_set() and self._inbox.empty():
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "channel is closed")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProvisioningFailed(ProvisioningFailure.TIMEOUT, f"{self.name}: no reply from peer")
        try:
            item = self._inbox.get(timeout=remaining)
        except queue.Empty as exc:
            raise ProvisioningFailed(ProvisioningFailure.TIMEOUT, f"{self.name}: no reply from peer") from exc
        if item is _CLOSED:
            raise ProvisioningFailed(ProvisioningFailure.TRANSPORT_ERROR, "peer closed the channel")
        return item

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for box in (self._outbox, self._inbox):
            try:
                box.put_nowait(_CLOSED)
            except queue.Full:
                # a full inbox is drained first, then the closed flag is seen
                continue


class RendezvousChannel:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("channel capacity must be positive")
        closed = threading.Event()
        to_provisioner: queue.Queue = queue.Queue(maxsize=capacity)
        to_provisionee: queue.Queue = queue.Queue(maxsize=capacity)
        self.provisioner = Endpoint("provisioner", to_provisioner, to_provisionee, closed)
        self.provisionee = Endpoint("provisionee", to_provisionee, to_provisioner, closed)

    def endpoints(self) -> tuple[Endpoint, Endpoint]:
        return self.provisioner, self.provisionee

    def close(self) -> None:
        self.provisioner.close()


__all__ = ["DEFAULT_CAPACITY", "Endpoint", "RendezvousChannel"]
