# consentledger/chain/ledger.py
"""
Ledger boundary: one `submit` per state-changing call, one `call` per read.

Function names are the contract-style camelCase names so a different ledger
backend can be slotted in behind the same strings. State-changing calls either
commit and return a Receipt with the events they emitted, or raise Reverted with
a stable reason string and change nothing.
"""

from typing import Any, Callable, Dict, List, Optional

from consentledger.chain.access import AccessLedger
from consentledger.chain.events import Clock, EventChain, EventLog
from consentledger.chain.records import RecordIndex
from consentledger.chain.registry import IdentityRegistry
from consentledger.core.encoding import normalize_address, utc_now
from consentledger.core.errors import Reverted, SubmitFailed
from consentledger.core.types import PrincipalId, Receipt
from consentledger.log import get_logger
from consentledger.storage import StateStore, create_storage

log = get_logger("ledger")


def _ignore_caller(fn: Callable[..., Any]) -> Callable[..., Any]:
    def view(caller, *args):
        return fn(*args)
    return view


class Ledger:
    def __init__(
        self,
        store: StateStore,
        admin: PrincipalId,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.admin = normalize_address(admin)
        self.clock = clock or utc_now

        self.chain = EventChain(self.store, self.clock)
        self.events = EventLog(self.store)
        self.registry = IdentityRegistry(self.store, self.chain, self.admin)
        self.access = AccessLedger(self.store, self.chain, self.registry)
        self.records = RecordIndex(self.store, self.chain, self.access)

        self._transactions: Dict[str, Callable[..., Any]] = {
            "registerRequester": self.registry.register_requester,
            "registerOwner": self.registry.register_owner,
            "verify": self.registry.verify,
            "reject": self.registry.reject,
            "updateContentRef": self.registry.update_content_ref,
            "request": self.access.request,
            "approve": self.access.approve,
            "revoke": self.access.revoke,
            "appendRecord": self.records.append,
        }
        # Views whose answer depends on who asks receive the caller first;
        # the rest ignore it.
        self._views: Dict[str, Callable[..., Any]] = {
            "getWrappedKey": self.access.get_wrapped_key,
            "getAuthorizedContentRefs": self.access.get_authorized_content_refs,
            "listForOwner": self.records.list_for_owner,
            "listForRequester": lambda caller, owner: self.records.list_for_requester(owner, caller),
            "checkAccess": _ignore_caller(self.access.check_access),
            "checkPending": _ignore_caller(self.access.check_pending),
            "getGrant": _ignore_caller(self.access.get_grant),
            "pendingRequests": _ignore_caller(self.access.pending_requests),
            "grantsForRequester": _ignore_caller(self.access.grants_for_requester),
            "containsRecord": _ignore_caller(self.records.contains),
            "getIdentity": _ignore_caller(self.registry.get_identity),
            "getPublicKey": _ignore_caller(self.registry.get_public_key),
            "getContentRef": _ignore_caller(self.registry.get_content_ref),
            "listRequesters": _ignore_caller(self.registry.list_requesters),
            "isVerified": _ignore_caller(self.registry.is_verified),
            "isRejected": _ignore_caller(self.registry.is_rejected),
            "isRegisteredOwner": _ignore_caller(self.registry.is_registered_owner),
            "isRegisteredRequester": _ignore_caller(self.registry.is_registered_requester),
        }

    @classmethod
    def open(cls, uri: str, admin: PrincipalId, clock: Optional[Clock] = None) -> "Ledger":
        return cls(create_storage(uri), admin, clock)

    @property
    def functions(self) -> List[str]:
        return sorted(self._transactions)

    @property
    def views(self) -> List[str]:
        return sorted(self._views)

    def submit(self, function_name: str, caller: PrincipalId, *args) -> Receipt:
        fn = self._transactions.get(function_name)
        if fn is None:
            raise SubmitFailed(f"Unknown ledger function: {function_name}")

        caller = normalize_address(caller)
        try:
            # Events after `last` belong to this call while the transaction is held
            with self.store.transaction():
                last = self.store.last_event()
                fn(caller, *args)
                emitted = tuple(self.store.load_events(after=last.sequence if last else -1))
        except Reverted as e:
            log.warning("%s reverted for %s: %s", function_name, caller, e.reason)
            raise
        return Receipt(function=function_name, success=True, events=emitted)

    def call(self, function_name: str, caller: Optional[PrincipalId], *args) -> Any:
        fn = self._views.get(function_name)
        if fn is None:
            raise SubmitFailed(f"Unknown ledger view: {function_name}")
        return fn(normalize_address(caller) if caller else "", *args)

    def close(self) -> None:
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

