import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_DIR = PROJECT_ROOT / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest  # noqa: E402

from devseal.devices import DeviceRegistry  # noqa: E402
from devseal.engine import EngineContext  # noqa: E402
from devseal.errors import VerificationFailure  # noqa: E402
from devseal.session import DeviceSession, sign_up  # noqa: E402
from devseal.trust import IdentityProof, RegistryKeyIndex, SenderTrustResolver, TrackingStore  # noqa: E402


class ScriptedChecker:
    """Proof checker whose answers are set by the test."""

    def __init__(self) -> None:
        self.holds: dict[str, bool] = {}
        self.unreachable = False
        self.calls = 0

    def check(self, trackee: str, proof: IdentityProof) -> bool:
        self.calls += 1
        if self.unreachable:
            raise VerificationFailure("proof service unreachable", proof=proof)
        return self.holds.get(proof.proof_id, True)


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry()


@pytest.fixture
def alice(registry: DeviceRegistry) -> tuple[DeviceSession, DeviceSession]:
    session, backup = sign_up(registry, "alice", "alice laptop")
    assert backup is not None
    return session, backup


@pytest.fixture
def bob(registry: DeviceRegistry) -> tuple[DeviceSession, DeviceSession]:
    session, backup = sign_up(registry, "bob", "bob desktop")
    assert backup is not None
    return session, backup


@pytest.fixture
def checker() -> ScriptedChecker:
    return ScriptedChecker()


@pytest.fixture
def trust(registry: DeviceRegistry, checker: ScriptedChecker) -> SenderTrustResolver:
    return SenderTrustResolver(RegistryKeyIndex(registry), TrackingStore(), checker)


@pytest.fixture
def context_for(registry: DeviceRegistry, trust: SenderTrustResolver):
    def _build(session: DeviceSession, *, with_trust: bool = True) -> EngineContext:
        return EngineContext.from_session(session, registry, trust if with_trust else None)

    return _build
