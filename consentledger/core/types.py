# consentledger/core/types.py
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Dict, FrozenSet, Literal, Tuple

from consentledger.core.encoding import b64url_encode

PrincipalId = str
ContentId = str
Role = Literal["owner", "requester"]


class GrantState(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    APPROVED = "approved"


class EventType(str, Enum):
    REQUESTED = "Requested"
    APPROVED = "Approved"
    REVOKED = "Revoked"
    OWNER_REGISTERED = "OwnerRegistered"
    REQUESTER_REGISTERED = "RequesterRegistered"
    REQUESTER_VERIFIED = "RequesterVerified"
    REQUESTER_REJECTED = "RequesterRejected"
    CONTENT_REF_UPDATED = "ContentRefUpdated"
    RECORD_APPENDED = "RecordAppended"


GRANT_EVENTS = (EventType.REQUESTED, EventType.APPROVED, EventType.REVOKED)


@dataclass(frozen=True)
class Identity:
    """Registered principal. An address holds exactly one role for its lifetime."""
    address: PrincipalId
    role: Role
    public_key: bytes = b""         # uncompressed secp256k1 point, requesters only
    verified: bool = False
    rejected: bool = False
    content_ref: ContentId = ""     # profile data blob
    registered_at: str = ""

    @property
    def status(self) -> str:
        if self.rejected:
            return "rejected"
        if self.verified:
            return "verified"
        return "pending"


@dataclass(frozen=True)
class AccessGrant:
    """
    Authorization state for one (owner, requester) pair.
    wrapped_key is non-empty iff state is APPROVED.
    """
    owner: PrincipalId
    requester: PrincipalId
    state: GrantState = GrantState.NONE
    purpose: str = ""
    requested_at: str = ""
    wrapped_key: bytes = b""
    content_refs: FrozenSet[ContentId] = frozenset()
    approved_at: str = ""
    revoked_at: str = ""
    version: int = 0                # bumped on every committed transition

    @property
    def key(self) -> Tuple[PrincipalId, PrincipalId]:
        return (self.owner, self.requester)

    def requested(self, purpose: str, at: str) -> "AccessGrant":
        return replace(
            self,
            state=GrantState.REQUESTED,
            purpose=purpose,
            requested_at=at,
            wrapped_key=b"",
            content_refs=frozenset(),
        )

    def approved(self, wrapped_key: bytes, content_refs: FrozenSet[ContentId], at: str) -> "AccessGrant":
        return replace(
            self,
            state=GrantState.APPROVED,
            wrapped_key=bytes(wrapped_key),
            content_refs=frozenset(content_refs),
            approved_at=at,
        )

    def revoked(self, at: str) -> "AccessGrant":
        return replace(
            self,
            state=GrantState.NONE,
            wrapped_key=b"",
            content_refs=frozenset(),
            revoked_at=at,
        )


@dataclass(frozen=True)
class ContentRecord:
    owner: PrincipalId
    content_ref: ContentId
    created_at: str
    uploader: PrincipalId = ""


@dataclass(frozen=True)
class LedgerEvent:
    """Single entry in the hash-chained ledger event log."""
    sequence: int
    type: EventType
    timestamp: str
    owner: PrincipalId = ""
    requester: PrincipalId = ""
    data: Dict[str, str] = field(default_factory=dict)
    prev_hash: str = ""             # hex(sha256) of previous event, empty for the first

    def to_dict(self) -> dict:
        """Helper for canonicalization / hashing."""
        d = asdict(self)
        d["type"] = self.type.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "LedgerEvent":
        return cls(
            sequence=int(d["sequence"]),
            type=EventType(d["type"]),
            timestamp=d["timestamp"],
            owner=d.get("owner", ""),
            requester=d.get("requester", ""),
            data=dict(d.get("data") or {}),
            prev_hash=d.get("prev_hash", ""),
        )


@dataclass(frozen=True)
class Receipt:
    """Outcome of a committed ledger submission."""
    function: str
    success: bool = True
    events: Tuple[LedgerEvent, ...] = ()

    def __bool__(self):
        return self.success


def grant_summary(grant: AccessGrant) -> dict:
    """Plain dict view of a grant, printed by `status --json`."""
    return {
        "owner": grant.owner,
        "requester": grant.requester,
        "state": grant.state.value,
        "purpose": grant.purpose,
        "requested_at": grant.requested_at,
        "approved_at": grant.approved_at,
        "revoked_at": grant.revoked_at,
        "content_refs": sorted(grant.content_refs),
        "wrapped_key": b64url_encode(grant.wrapped_key) if grant.wrapped_key else "",
        "version": grant.version,
    }
