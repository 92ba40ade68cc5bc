# consentledger/chain/events.py
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from consentledger.core.hashing import event_hash
from consentledger.core.types import (
    GRANT_EVENTS,
    EventType,
    GrantState,
    LedgerEvent,
    PrincipalId,
)
from consentledger.storage import StateStore

Clock = Callable[[], str]


class EventChain:
    """
    Append side of the ledger event log.
    Each event links to the previous one by hash, in commit order.
    Callers must emit inside the store transaction that carries the state change.
    """

    def __init__(self, store: StateStore, clock: Clock):
        self.store = store
        self.clock = clock

    def emit(
        self,
        event_type: EventType,
        owner: PrincipalId = "",
        requester: PrincipalId = "",
        data: Optional[Dict[str, str]] = None,
        timestamp: Optional[str] = None,
    ) -> LedgerEvent:
        last = self.store.last_event()
        event = LedgerEvent(
            sequence=last.sequence + 1 if last else 0,
            type=event_type,
            timestamp=timestamp or self.clock(),
            owner=owner,
            requester=requester,
            data=dict(data or {}),
            prev_hash=event_hash(last) if last else "",
        )
        self.store.append_event(event)
        return event


class EventLog:
    """Read side: history queries, replay and polling subscriptions."""

    def __init__(self, store: StateStore):
        self.store = store

    def all(self) -> List[LedgerEvent]:
        return self.store.load_events()

    def history(
        self,
        owner: Optional[PrincipalId] = None,
        requester: Optional[PrincipalId] = None,
        types: Optional[Iterable[EventType]] = GRANT_EVENTS,
    ) -> List[LedgerEvent]:
        """Audit trail for one owner and/or requester; grant events only by default."""
        wanted = set(types) if types is not None else None
        return [e for e in self.store.load_events() if _matches(e, wanted, owner, requester)]

    def replay(self, events: Optional[Iterable[LedgerEvent]] = None) -> Dict[Tuple[str, str], GrantState]:
        """Fold grant events into the state each pair should be in."""
        states: Dict[Tuple[str, str], GrantState] = {}
        for event in self.store.load_events() if events is None else events:
            if event.type == EventType.REQUESTED:
                states[(event.owner, event.requester)] = GrantState.REQUESTED
            elif event.type == EventType.APPROVED:
                states[(event.owner, event.requester)] = GrantState.APPROVED
            elif event.type == EventType.REVOKED:
                states[(event.owner, event.requester)] = GrantState.NONE
        return states

    def subscribe(
        self,
        event_type: Optional[EventType] = None,
        owner: Optional[PrincipalId] = None,
        requester: Optional[PrincipalId] = None,
        after: int = -1,
        poll_interval: float = 1.0,
        stop: Optional[Callable[[], bool]] = None,
        batch_size: int = 100,
    ) -> Iterator[LedgerEvent]:
        """
        Yield matching events with sequence > after as they are committed.

        Polls the store every `poll_interval` seconds once caught up. Ends when
        `stop()` returns true; without `stop` it runs until the consumer breaks out.
        """
        wanted = {event_type} if event_type is not None else None
        cursor = after
        while True:
            batch = self.store.load_events(after=cursor, limit=batch_size)
            for event in batch:
                cursor = event.sequence
                if _matches(event, wanted, owner, requester):
                    yield event
            if stop is not None and stop():
                return
            if len(batch) < batch_size:
                time.sleep(poll_interval)


def _matches(
    event: LedgerEvent,
    wanted: Optional[set],
    owner: Optional[PrincipalId],
    requester: Optional[PrincipalId],
) -> bool:
    if wanted is not None and event.type not in wanted:
        return False
    if owner is not None and event.owner != owner:
        return False
    if requester is not None and event.requester != requester:
        return False
    return True
