# consentledger/storage/memory.py
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Tuple

from consentledger.core.errors import StaleGrant
from consentledger.core.types import (
    AccessGrant,
    ContentRecord,
    GrantState,
    Identity,
    LedgerEvent,
    PrincipalId,
)
from . import StateStore


class InMemoryStateStore(StateStore):
    """Process-local ledger state for tests and throwaway sessions."""

    def __init__(self):
        self.identities: Dict[PrincipalId, Identity] = {}
        self.grants: Dict[Tuple[PrincipalId, PrincipalId], AccessGrant] = {}
        self.records: Dict[PrincipalId, List[ContentRecord]] = {}
        self.events: List[LedgerEvent] = []
        self._lock = threading.RLock()
        self._depth = 0
        self._closed = False

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Storage connection is closed")

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStateStore"]:
        with self._lock:
            self._check_open()
            snapshot = None
            if self._depth == 0:
                snapshot = (
                    dict(self.identities),
                    dict(self.grants),
                    {k: list(v) for k, v in self.records.items()},
                    list(self.events),
                )
            self._depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    self.identities, self.grants, self.records, self.events = snapshot
                raise
            finally:
                self._depth -= 1

    # identities
    def get_identity(self, address: PrincipalId) -> Optional[Identity]:
        self._check_open()
        return self.identities.get(address)

    def put_identity(self, identity: Identity) -> None:
        self._check_open()
        self.identities[identity.address] = identity

    def list_identities(self, role: Optional[str] = None) -> List[Identity]:
        self._check_open()
        found = [i for i in self.identities.values() if role is None or i.role == role]
        return sorted(found, key=lambda i: (i.registered_at, i.address))

    # grants
    def get_grant(self, owner: PrincipalId, requester: PrincipalId) -> Optional[AccessGrant]:
        self._check_open()
        return self.grants.get((owner, requester))

    def save_grant(self, grant: AccessGrant, expected_version: int) -> AccessGrant:
        with self._lock:
            self._check_open()
            current = self.grants.get(grant.key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise StaleGrant(
                    f"Grant ({grant.owner}, {grant.requester}) changed since version {expected_version}"
                )
            stored = replace(grant, version=expected_version + 1)
            self.grants[grant.key] = stored
            return stored

    def list_grants(
        self,
        owner: Optional[PrincipalId] = None,
        requester: Optional[PrincipalId] = None,
        state: Optional[GrantState] = None,
    ) -> List[AccessGrant]:
        self._check_open()
        return [
            g for key, g in sorted(self.grants.items())
            if (owner is None or g.owner == owner)
            and (requester is None or g.requester == requester)
            and (state is None or g.state == state)
        ]

    # record index
    def append_record(self, record: ContentRecord) -> None:
        self._check_open()
        self.records.setdefault(record.owner, []).append(record)

    def list_records(self, owner: PrincipalId) -> List[ContentRecord]:
        self._check_open()
        return list(self.records.get(owner, []))

    # event log
    def append_event(self, event: LedgerEvent) -> None:
        self._check_open()
        self.events.append(event)

    def load_events(self, after: int = -1, limit: Optional[int] = None) -> List[LedgerEvent]:
        self._check_open()
        found = [e for e in self.events if e.sequence > after]
        return found[:limit] if limit is not None else found

    def last_event(self) -> Optional[LedgerEvent]:
        self._check_open()
        return self.events[-1] if self.events else None

    def close(self) -> None:
        self._closed = True
