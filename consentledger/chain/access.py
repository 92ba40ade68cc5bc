# consentledger/chain/access.py
"""
Per-(owner, requester) authorization state machine.

    None      --request--> Requested --approve--> Approved --revoke--> None
    None      --approve--> Approved        (pre-authorize)
    Requested --request--> Requested       (refreshes purpose and timestamp)
    Approved  --approve--> Approved        (new wrapped key / content refs)
    Approved  --request--> Requested       (renewal; prior authorization dropped)
    any       --revoke-->  None

Every transition is safe to re-issue: the same call in the same state leaves the
grant as the call describes and never errors, so retried submissions cannot
corrupt state.
"""

from typing import Callable, FrozenSet, Iterable, List, Optional

from consentledger.chain.events import EventChain
from consentledger.chain.registry import IdentityRegistry
from consentledger.core import errors
from consentledger.core.errors import Reverted, StaleGrant
from consentledger.core.types import (
    AccessGrant,
    ContentId,
    EventType,
    GrantState,
    LedgerEvent,
    PrincipalId,
)
from consentledger.log import get_logger
from consentledger.storage import StateStore

log = get_logger("access")

MAX_CAS_ATTEMPTS = 5


class AccessLedger:
    def __init__(self, store: StateStore, chain: EventChain, registry: IdentityRegistry):
        self.store = store
        self.chain = chain
        self.registry = registry

    # ── transitions ─────────────────────────────────────────────────────────

    def request(self, caller: PrincipalId, owner: PrincipalId, purpose: str) -> LedgerEvent:
        def guard() -> None:
            if self.registry.is_rejected(caller):
                raise Reverted(errors.PROVIDER_REJECTED)
            if not self.registry.is_verified(caller):
                raise Reverted(errors.CALLER_NOT_VERIFIED)

        def step(grant: AccessGrant, now: str) -> AccessGrant:
            return grant.requested(purpose, now)

        event = self._transition(owner, caller, step, EventType.REQUESTED, {"purpose": purpose}, guard=guard)
        log.info("access requested: owner=%s requester=%s", owner, caller)
        return event

    def approve(
        self,
        caller: PrincipalId,
        requester: PrincipalId,
        wrapped_key: bytes,
        content_refs: Iterable[ContentId],
    ) -> LedgerEvent:
        if not wrapped_key:
            raise Reverted(errors.ENCRYPTED_KEY_REQUIRED)
        refs = frozenset(content_refs)

        def step(grant: AccessGrant, now: str) -> AccessGrant:
            return grant.approved(wrapped_key, refs, now)

        event = self._transition(
            caller, requester, step, EventType.APPROVED,
            {"content_refs": ",".join(sorted(refs))},
            guard=self._owner_guard(caller),
        )
        log.info("access approved: owner=%s requester=%s refs=%d", caller, requester, len(refs))
        return event

    def revoke(self, caller: PrincipalId, requester: PrincipalId) -> LedgerEvent:
        def step(grant: AccessGrant, now: str) -> AccessGrant:
            return grant.revoked(now)

        event = self._transition(caller, requester, step, EventType.REVOKED, guard=self._owner_guard(caller))
        log.info("access revoked: owner=%s requester=%s", caller, requester)
        return event

    def _owner_guard(self, caller: PrincipalId) -> Callable[[], None]:
        def guard() -> None:
            if not self.registry.is_registered_owner(caller):
                raise Reverted(errors.CALLER_NOT_PATIENT)
        return guard

    def _transition(
        self,
        owner: PrincipalId,
        requester: PrincipalId,
        step: Callable[[AccessGrant, str], AccessGrant],
        event_type: EventType,
        data: Optional[dict] = None,
        guard: Optional[Callable[[], None]] = None,
    ) -> LedgerEvent:
        """
        Read-modify-write of one grant key plus its event, committed together.

        `guard` runs inside the same transaction, so the eligibility it checks
        still holds when the grant is written.
        """
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            try:
                with self.store.transaction():
                    if guard is not None:
                        guard()
                    current = self.store.get_grant(owner, requester) or AccessGrant(owner, requester)
                    now = self.chain.clock()
                    self.store.save_grant(step(current, now), expected_version=current.version)
                    return self.chain.emit(event_type, owner=owner, requester=requester, data=data, timestamp=now)
            except StaleGrant:
                log.debug("grant (%s, %s) moved under us, attempt %d", owner, requester, attempt)
        raise errors.SubmitFailed(f"Grant ({owner}, {requester}) kept changing; gave up after {MAX_CAS_ATTEMPTS} attempts")

    # ── views ───────────────────────────────────────────────────────────────

    def get_grant(self, owner: PrincipalId, requester: PrincipalId) -> AccessGrant:
        return self.store.get_grant(owner, requester) or AccessGrant(owner, requester)

    def check_access(self, owner: PrincipalId, requester: PrincipalId) -> bool:
        return self.get_grant(owner, requester).state == GrantState.APPROVED

    def check_pending(self, owner: PrincipalId, requester: PrincipalId) -> bool:
        return self.get_grant(owner, requester).state == GrantState.REQUESTED

    def get_wrapped_key(self, requester: PrincipalId, owner: PrincipalId) -> bytes:
        return self._approved(owner, requester).wrapped_key

    def get_authorized_content_refs(self, requester: PrincipalId, owner: PrincipalId) -> FrozenSet[ContentId]:
        return self._approved(owner, requester).content_refs

    def pending_requests(self, owner: PrincipalId) -> List[AccessGrant]:
        return self.store.list_grants(owner=owner, state=GrantState.REQUESTED)

    def grants_for_requester(self, requester: PrincipalId) -> List[AccessGrant]:
        return [g for g in self.store.list_grants(requester=requester) if g.state != GrantState.NONE]

    def _approved(self, owner: PrincipalId, requester: PrincipalId) -> AccessGrant:
        grant = self.get_grant(owner, requester)
        if grant.state != GrantState.APPROVED:
            raise Reverted(errors.ACCESS_NOT_GRANTED)
        return grant
