"""Decrypt-time trust verdicts for sender keys."""
from __future__ import annotations

from devseal.trust.model import (
    IdentityProof,
    ProofResult,
    ProofState,
    SenderClassification,
    TrackingStatement,
)
from devseal.trust.resolver import (
    REGISTRY_PROOF_SERVICE,
    KeyIndex,
    ProofChecker,
    RegistryKeyIndex,
    RegistryProofChecker,
    SenderTrustResolver,
)
from devseal.trust.store import TrackingStore

__all__ = [
    "IdentityProof",
    "KeyIndex",
    "ProofChecker",
    "ProofResult",
    "ProofState",
    "REGISTRY_PROOF_SERVICE",
    "RegistryKeyIndex",
    "RegistryProofChecker",
    "SenderClassification",
    "SenderTrustResolver",
    "TrackingStatement",
    "TrackingStore",
]
