# consentledger/storage/__init__.py
"""
State stores backing the ledger: identities, grants, record index and the event log.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from pathlib import Path
from typing import List, Optional

from consentledger.core.types import (
    AccessGrant,
    ContentRecord,
    GrantState,
    Identity,
    LedgerEvent,
    PrincipalId,
)


class StateStore(ABC):
    """
    Abstract base for ledger state.

    Grants are a versioned key/value map keyed by (owner, requester): `save_grant`
    is a compare-and-set on the version, so writers to different pairs never
    block each other at the model level. `transaction()` groups a grant write
    with its event append so both commit or neither does.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        pass

    # identities
    @abstractmethod
    def get_identity(self, address: PrincipalId) -> Optional[Identity]:
        pass

    @abstractmethod
    def put_identity(self, identity: Identity) -> None:
        pass

    @abstractmethod
    def list_identities(self, role: Optional[str] = None) -> List[Identity]:
        pass

    # grants
    @abstractmethod
    def get_grant(self, owner: PrincipalId, requester: PrincipalId) -> Optional[AccessGrant]:
        pass

    @abstractmethod
    def save_grant(self, grant: AccessGrant, expected_version: int) -> AccessGrant:
        """Store `grant` with version expected_version + 1, or raise StaleGrant."""

    @abstractmethod
    def list_grants(
        self,
        owner: Optional[PrincipalId] = None,
        requester: Optional[PrincipalId] = None,
        state: Optional[GrantState] = None,
    ) -> List[AccessGrant]:
        pass

    # record index
    @abstractmethod
    def append_record(self, record: ContentRecord) -> None:
        pass

    @abstractmethod
    def list_records(self, owner: PrincipalId) -> List[ContentRecord]:
        pass

    # event log
    @abstractmethod
    def append_event(self, event: LedgerEvent) -> None:
        pass

    @abstractmethod
    def load_events(self, after: int = -1, limit: Optional[int] = None) -> List[LedgerEvent]:
        """Events with sequence > after, in ledger order."""

    @abstractmethod
    def last_event(self) -> Optional[LedgerEvent]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def create_storage(uri: str) -> StateStore:
    uri = (uri or "").strip()
    if uri in ("memory:", ":memory:"):
        from .memory import InMemoryStateStore
        return InMemoryStateStore()

    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStateStore
        raw_path = uri[len("sqlite://"):]
        if not raw_path:
            raise ValueError(f"Missing database path in storage URI: {uri}")
        return SQLiteStateStore(Path(raw_path).expanduser().resolve())

    if uri and "://" not in uri:
        # Plain file path → SQLite
        from .sqlite import SQLiteStateStore
        return SQLiteStateStore(Path(uri).expanduser().resolve())

    raise ValueError(f"Unsupported storage URI: {uri}")


from .sqlite import SQLiteStateStore
from .memory import InMemoryStateStore

__all__ = ["StateStore", "create_storage", "SQLiteStateStore", "InMemoryStateStore"]
