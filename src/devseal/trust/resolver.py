"""Sender classification against the recipient's tracking statements."""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Protocol

from devseal.crypto.keys import short_kid
from devseal.devices.registry import DeviceRegistry
from devseal.errors import VerificationFailure
from devseal.trust.model import (
    IdentityProof,
    ProofResult,
    ProofState,
    SenderClassification,
    TrackingStatement,
    classify_results,
)
from devseal.trust.store import TrackingStore

logger = logging.getLogger(__name__)


class KeyIndex(Protocol):
    def identity_for(self, sender_key: bytes, recipient: str) -> str | None: ...


class ProofChecker(Protocol):
    """Network collaborator that checks one identity proof.

    Returns whether the proof currently holds; raises
    :class:`~devseal.errors.VerificationFailure` when it cannot tell.
    """

    def check(self, trackee: str, proof: IdentityProof) -> bool: ...


class RegistryKeyIndex:
    """Resolves sender keys through the active devices of the device registry."""

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    def identity_for(self, sender_key: bytes, recipient: str) -> str | None:
        found = self._registry.lookup_key(sender_key)
        return found[0] if found is not None else None


REGISTRY_PROOF_SERVICE = "devseal"


class RegistryProofChecker:
    """Checks ``devseal:<username>`` proofs: the user still has active devices."""

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    def check(self, trackee: str, proof: IdentityProof) -> bool:
        if proof.service != REGISTRY_PROOF_SERVICE:
            raise VerificationFailure(f"No checker for {proof.service} proofs", proof=proof)
        return proof.handle == trackee and bool(self._registry.active_devices(trackee))


class SenderTrustResolver:
    def __init__(
        self,
        key_index: KeyIndex,
        statements: TrackingStore,
        checker: ProofChecker | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_index = key_index
        self.statements = statements
        self.checker = checker
        self._clock = clock

    def classify(
        self,
        sender_key: bytes | None,
        recipient: str,
        *,
        force_remote_check: bool = False,
    ) -> SenderClassification:
        """Classify ``sender_key`` (``None`` for the anonymous placeholder).

        Without ``force_remote_check`` the cached verdict is returned when one
        exists; a live check runs only when the statement was never checked.
        A live check updates the statement's verification cache and nothing
        else.
        """

        if sender_key is None:
            return SenderClassification.ANONYMOUS

        identity = self.key_index.identity_for(sender_key, recipient)
        if identity is None:
            logger.debug("sender %s has no known identity", short_kid(sender_key))
            return SenderClassification.NOT_TRACKED

        with self.statements.lock_for(recipient, identity):
            statement = self.statements.get(recipient, identity)
            if statement is None:
                return SenderClassification.NOT_TRACKED

            cached = statement.cached_classification()
            if cached is not None and not force_remote_check:
                return cached

            results = self._check_live(statement)
            updated = self.statements.record_results(recipient, identity, results)

        verdict = classify_results(updated.required, updated.results)
        if cached is not None and verdict is not cached:
            logger.info("tracking of %s by %s changed: %s -> %s", identity, recipient, cached.value, verdict.value)
        return verdict

    def track(self, tracker: str, trackee: str, proofs: Iterable[IdentityProof]) -> TrackingStatement:
        """Verify ``proofs`` now and record the passing ones as required."""

        candidate = TrackingStatement(
            tracker=tracker, trackee=trackee, proofs=tuple(proofs), required=frozenset()
        )
        if not candidate.proofs:
            raise VerificationFailure(f"No identity proofs given for {trackee!r}")
        with self.statements.lock_for(tracker, trackee):
            results = self._check_live(candidate)
            passing = frozenset(r.proof_id for r in results if r.state is ProofState.OK)
            if not passing:
                raise VerificationFailure(f"None of the identity proofs for {trackee!r} hold")
            statement = TrackingStatement(
                tracker=tracker,
                trackee=trackee,
                proofs=candidate.proofs,
                required=passing,
                results=tuple(results),
            )
            self.statements.write(statement)
        logger.info("%s now tracks %s (%d proof(s))", tracker, trackee, len(passing))
        return statement

    def _check_live(self, statement: TrackingStatement) -> list[ProofResult]:
        if self.checker is None:
            raise VerificationFailure("No proof checker is configured")
        results = []
        for proof in statement.proofs:
            holds = self.checker.check(statement.trackee, proof)
            state = ProofState.OK if holds else ProofState.FAILED
            results.append(ProofResult(proof_id=proof.proof_id, state=state, checked_at=self._clock()))
        logger.debug("checked %d proof(s) of %s for %s", len(results), statement.trackee, statement.tracker)
        return results


__all__ = [
    "KeyIndex",
    "ProofChecker",
    "REGISTRY_PROOF_SERVICE",
    "RegistryKeyIndex",
    "RegistryProofChecker",
    "SenderTrustResolver",
]
