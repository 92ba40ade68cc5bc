# consentledger/chain/registry.py
from dataclasses import replace
from typing import List, Optional

from consentledger.chain.events import EventChain
from consentledger.core import errors
from consentledger.core.errors import Reverted
from consentledger.core.encoding import b64url_encode
from consentledger.core.types import ContentId, EventType, Identity, PrincipalId
from consentledger.log import get_logger
from consentledger.storage import StateStore

log = get_logger("registry")

OWNER = "owner"
REQUESTER = "requester"


class IdentityRegistry:
    """
    Who is a patient (owner) and who is a provider (requester).

    Registration is permanent and keyed by address. Only the admin principal moves a
    requester to verified or rejected; rejection is terminal.
    """

    def __init__(self, store: StateStore, chain: EventChain, admin: PrincipalId):
        self.store = store
        self.chain = chain
        self.admin = admin

    # ── transitions ─────────────────────────────────────────────────────────

    def register_requester(self, caller: PrincipalId, public_key: bytes, content_ref: ContentId = "") -> Identity:
        if not public_key:
            raise Reverted(errors.PUBLIC_KEY_REQUIRED)
        with self.store.transaction():
            existing = self.store.get_identity(caller)
            if existing is not None:
                if existing.role == OWNER:
                    raise Reverted(errors.ADDRESS_IS_PATIENT)
                if existing.rejected:
                    raise Reverted(errors.PROVIDER_REJECTED)
                raise Reverted(errors.PROVIDER_ALREADY_REGISTERED)

            identity = Identity(
                address=caller,
                role=REQUESTER,
                public_key=bytes(public_key),
                content_ref=content_ref,
                registered_at=self.chain.clock(),
            )
            self.store.put_identity(identity)
            self.chain.emit(
                EventType.REQUESTER_REGISTERED,
                requester=caller,
                data={"public_key": b64url_encode(identity.public_key), "content_ref": content_ref},
                timestamp=identity.registered_at,
            )
        log.info("requester registered: %s", caller)
        return identity

    def register_owner(self, caller: PrincipalId, content_ref: ContentId = "") -> Identity:
        with self.store.transaction():
            existing = self.store.get_identity(caller)
            if existing is not None:
                if existing.role == REQUESTER:
                    raise Reverted(errors.ADDRESS_IS_PROVIDER)
                raise Reverted(errors.PATIENT_ALREADY_REGISTERED)

            identity = Identity(
                address=caller,
                role=OWNER,
                content_ref=content_ref,
                registered_at=self.chain.clock(),
            )
            self.store.put_identity(identity)
            self.chain.emit(
                EventType.OWNER_REGISTERED,
                owner=caller,
                data={"content_ref": content_ref},
                timestamp=identity.registered_at,
            )
        log.info("owner registered: %s", caller)
        return identity

    def verify(self, caller: PrincipalId, requester: PrincipalId) -> Identity:
        self._require_admin(caller)
        with self.store.transaction():
            identity = self.store.get_identity(requester)
            if identity is None or identity.role != REQUESTER:
                raise Reverted(errors.PROVIDER_NOT_REGISTERED)
            if identity.rejected:
                raise Reverted(errors.PROVIDER_REJECTED)
            if identity.verified:
                return identity

            identity = replace(identity, verified=True)
            self.store.put_identity(identity)
            self.chain.emit(EventType.REQUESTER_VERIFIED, requester=requester)
        log.info("requester verified: %s", requester)
        return identity

    def reject(self, caller: PrincipalId, requester: PrincipalId) -> Identity:
        self._require_admin(caller)
        with self.store.transaction():
            identity = self.store.get_identity(requester)
            if identity is not None and identity.role == OWNER:
                raise Reverted(errors.PROVIDER_NOT_REGISTERED)
            if identity is not None and identity.rejected:
                return identity

            if identity is None:
                # Placeholder so the address can never register afterwards
                identity = Identity(address=requester, role=REQUESTER, registered_at=self.chain.clock())
            identity = replace(identity, verified=False, rejected=True)
            self.store.put_identity(identity)
            self.chain.emit(EventType.REQUESTER_REJECTED, requester=requester)
        log.info("requester rejected: %s", requester)
        return identity

    def update_content_ref(self, caller: PrincipalId, content_ref: ContentId) -> Identity:
        with self.store.transaction():
            identity = self.store.get_identity(caller)
            if identity is None or identity.rejected:
                raise Reverted(errors.CALLER_NOT_REGISTERED)
            identity = replace(identity, content_ref=content_ref)
            self.store.put_identity(identity)
            if identity.role == OWNER:
                self.chain.emit(EventType.CONTENT_REF_UPDATED, owner=caller, data={"content_ref": content_ref})
            else:
                self.chain.emit(EventType.CONTENT_REF_UPDATED, requester=caller, data={"content_ref": content_ref})
        return identity

    # ── views ───────────────────────────────────────────────────────────────

    def get_identity(self, address: PrincipalId) -> Optional[Identity]:
        return self.store.get_identity(address)

    def get_public_key(self, requester: PrincipalId) -> bytes:
        identity = self.store.get_identity(requester)
        if identity is None or identity.role != REQUESTER or not identity.public_key:
            raise Reverted(errors.PROVIDER_NOT_REGISTERED)
        return identity.public_key

    def get_content_ref(self, address: PrincipalId) -> ContentId:
        identity = self.store.get_identity(address)
        if identity is None:
            raise Reverted(errors.CALLER_NOT_REGISTERED)
        return identity.content_ref

    def list_requesters(self, status: Optional[str] = None) -> List[Identity]:
        """Requesters for the admin review queue; status is pending, verified or rejected."""
        return [
            i for i in self.store.list_identities(role=REQUESTER)
            if status is None or i.status == status
        ]

    def is_verified(self, address: PrincipalId) -> bool:
        identity = self.store.get_identity(address)
        return bool(identity and identity.role == REQUESTER and identity.verified and not identity.rejected)

    def is_rejected(self, address: PrincipalId) -> bool:
        identity = self.store.get_identity(address)
        return bool(identity and identity.rejected)

    def is_registered_owner(self, address: PrincipalId) -> bool:
        identity = self.store.get_identity(address)
        return bool(identity and identity.role == OWNER)

    def is_registered_requester(self, address: PrincipalId) -> bool:
        identity = self.store.get_identity(address)
        return bool(identity and identity.role == REQUESTER and identity.public_key)

    def _require_admin(self, caller: PrincipalId) -> None:
        if caller != self.admin:
            raise Reverted(errors.CALLER_NOT_ADMIN)
