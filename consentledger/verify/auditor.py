# consentledger/verify/auditor.py
from dataclasses import dataclass
from typing import List, Optional

from consentledger.chain.events import EventLog
from consentledger.core.hashing import event_hash
from consentledger.core.types import GrantState, LedgerEvent
from consentledger.storage import StateStore


@dataclass
class VerificationFailure:
    index: int
    message: str
    category: str = "general"  # "sequence", "hash_chain", "replay", "grant", "storage"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = None

    def __post_init__(self):
        if self.failures is None:
            self.failures = []

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    def fail(self, index: int, message: str, category: str) -> None:
        self.failures.append(VerificationFailure(index, message, category))
        self.is_valid = False

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Event log is consistent ✓"
        lines = [f"Audit FAILED ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • [{f.index}] {f.category}: {f.message}")
        return "\n".join(lines)


class AuditVerifier:
    """
    Offline audit of the ledger event log.

    Checks that sequences are contiguous from zero, that every event links to its
    predecessor by hash, and, given the state store, that folding the grant events
    reproduces the stored grant state for every (owner, requester) pair.
    """

    def verify(self, events: List[LedgerEvent], store: Optional[StateStore] = None) -> VerificationResult:
        result = VerificationResult(True)
        if not events and store is None:
            result.message = "Empty log is valid"
            return result

        # 1. Sequence continuity
        for i, event in enumerate(events):
            if event.sequence != i:
                result.fail(i, f"Sequence mismatch: expected {i}, got {event.sequence}", "sequence")

        # 2. Hash chain
        if events and events[0].prev_hash:
            result.fail(0, "First event must not carry a prev_hash", "hash_chain")
        for i in range(1, len(events)):
            if events[i].prev_hash != event_hash(events[i - 1]):
                result.fail(i, "prev_hash does not match previous event hash", "hash_chain")

        # 3. Replayed state against stored grants
        if store is not None:
            self._check_replay(events, store, result)

        result.message = "Consistent event log" if result.is_valid else f"Failed with {len(result.failures)} issues"
        return result

    def verify_from_storage(self, store: StateStore) -> VerificationResult:
        try:
            events = store.load_events()
        except Exception as e:
            return VerificationResult(
                False,
                f"Failed to load events from storage: {e}",
                [VerificationFailure(-1, str(e), "storage")],
            )
        return self.verify(events, store)

    def _check_replay(self, events: List[LedgerEvent], store: StateStore, result: VerificationResult) -> None:
        replayed = EventLog(store).replay(events)
        last_index = {}
        for i, event in enumerate(events):
            if event.requester and event.owner:
                last_index[(event.owner, event.requester)] = i

        for (owner, requester), state in sorted(replayed.items()):
            index = last_index.get((owner, requester), -1)
            grant = store.get_grant(owner, requester)
            stored = grant.state if grant else GrantState.NONE
            if stored != state:
                result.fail(
                    index,
                    f"Grant ({owner}, {requester}) is {stored.value} but events replay to {state.value}",
                    "replay",
                )

        for grant in store.list_grants():
            if grant.key not in replayed and grant.state != GrantState.NONE:
                result.fail(-1, f"Grant ({grant.owner}, {grant.requester}) has no events", "replay")
            if (grant.state == GrantState.APPROVED) != bool(grant.wrapped_key):
                result.fail(
                    -1,
                    f"Grant ({grant.owner}, {grant.requester}) in state {grant.state.value} "
                    f"{'lacks' if grant.state == GrantState.APPROVED else 'still holds'} a wrapped key",
                    "grant",
                )
