# tests/conftest.py
import pytest

from consentledger.blobstore import InMemoryBlobStore
from consentledger.chain.ledger import Ledger
from consentledger.crypto.keys import PrincipalKeyPair
from consentledger.session.orchestrator import SessionOrchestrator
from consentledger.storage import InMemoryStateStore

ADMIN = "0x" + "ad" * 20
OWNER = "0x" + "11" * 20
REQUESTER = "0x" + "22" * 20
OTHER = "0x" + "33" * 20

# Keeps PBKDF2 fast in tests; production default is 600k
TEST_ITERATIONS = 1_000


class StepClock:
    """Deterministic clock: one second per call."""

    def __init__(self):
        self.ticks = 0

    def __call__(self) -> str:
        t = self.ticks
        self.ticks += 1
        return f"2026-02-13T12:{t // 60:02d}:{t % 60:02d}.000Z"


@pytest.fixture
def store():
    s = InMemoryStateStore()
    yield s
    s.close()


@pytest.fixture
def ledger(store) -> Ledger:
    return Ledger(store, ADMIN, clock=StepClock())


@pytest.fixture
def requester_keys() -> PrincipalKeyPair:
    return PrincipalKeyPair.generate()


@pytest.fixture
def owner(ledger) -> str:
    ledger.submit("registerOwner", OWNER)
    return OWNER


@pytest.fixture
def verified_requester(ledger, requester_keys) -> str:
    ledger.submit("registerRequester", REQUESTER, requester_keys.public_bytes())
    ledger.submit("verify", ADMIN, REQUESTER)
    return REQUESTER


@pytest.fixture
def blobstore() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def orchestrator(ledger, blobstore) -> SessionOrchestrator:
    return SessionOrchestrator(ledger, blobstore, iterations=TEST_ITERATIONS)
