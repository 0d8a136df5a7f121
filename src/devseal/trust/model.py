"""Tracking statements and sender classification values."""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Any, Iterable


class SenderClassification(enum.Enum):
    ANONYMOUS = "anonymous"
    NOT_TRACKED = "not tracked"
    TRACKING_OK = "tracking ok"
    TRACKING_BROKE = "tracking broke"


class ProofState(enum.Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass(frozen=True)
class IdentityProof:
    """A claim that the trackee controls ``handle`` on ``service``."""

    service: str
    handle: str

    @property
    def proof_id(self) -> str:
        return f"{self.service}:{self.handle}"

    def to_dict(self) -> dict[str, str]:
        return {"service": self.service, "handle": self.handle}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IdentityProof:
        return cls(service=data["service"], handle=data["handle"])


@dataclass(frozen=True)
class ProofResult:
    proof_id: str
    state: ProofState
    checked_at: float

    def to_dict(self) -> dict[str, Any]:
        return {"proof_id": self.proof_id, "state": self.state.value, "checked_at": self.checked_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProofResult:
        return cls(proof_id=data["proof_id"], state=ProofState(data["state"]), checked_at=float(data["checked_at"]))


@dataclass(frozen=True)
class TrackingStatement:
    """A tracker's record of a trackee's identity proofs.

    ``required`` holds the ids of the proofs that passed when the statement
    was made; those are the ones a later check must still find passing.
    ``results`` is the verification cache from the most recent check.
    """

    tracker: str
    trackee: str
    proofs: tuple[IdentityProof, ...]
    required: frozenset[str]
    results: tuple[ProofResult, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return self.tracker, self.trackee

    @property
    def last_checked(self) -> float | None:
        if not self.results:
            return None
        return max(result.checked_at for result in self.results)

    def with_results(self, results: Iterable[ProofResult]) -> TrackingStatement:
        return replace(self, results=tuple(results))

    def cached_classification(self) -> SenderClassification | None:
        """Verdict from the verification cache, or ``None`` if never checked."""

        if not self.results:
            return None
        return classify_results(self.required, self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracker": self.tracker,
            "trackee": self.trackee,
            "proofs": [proof.to_dict() for proof in self.proofs],
            "required": sorted(self.required),
            "results": [result.to_dict() for result in self.results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingStatement:
        return cls(
            tracker=data["tracker"],
            trackee=data["trackee"],
            proofs=tuple(IdentityProof.from_dict(p) for p in data.get("proofs", [])),
            required=frozenset(data.get("required", [])),
            results=tuple(ProofResult.from_dict(r) for r in data.get("results", [])),
        )


def classify_results(required: Iterable[str], results: Iterable[ProofResult]) -> SenderClassification:
    """TRACKING_OK while every required proof holds, TRACKING_BROKE otherwise.

    A required proof missing from ``results`` counts as failed.
    """

    states = {result.proof_id: result.state for result in results}
    for proof_id in required:
        if states.get(proof_id) is not ProofState.OK:
            return SenderClassification.TRACKING_BROKE
    return SenderClassification.TRACKING_OK


__all__ = [
    "IdentityProof",
    "ProofResult",
    "ProofState",
    "SenderClassification",
    "TrackingStatement",
    "classify_results",
]
