# consentledger/chain/records.py
from typing import List

from consentledger.chain.access import AccessLedger
from consentledger.chain.events import EventChain
from consentledger.core import errors
from consentledger.core.errors import Reverted
from consentledger.core.types import ContentId, ContentRecord, EventType, PrincipalId
from consentledger.log import get_logger
from consentledger.storage import StateStore

log = get_logger("records")


class RecordIndex:
    """
    Append-only list of content references per owner.

    The index tracks what exists; the access ledger tracks what is authorized.
    Writers are the owner or a requester holding Approved access to that owner.
    """

    def __init__(self, store: StateStore, chain: EventChain, access: AccessLedger):
        self.store = store
        self.chain = chain
        self.access = access

    def append(self, caller: PrincipalId, owner: PrincipalId, content_ref: ContentId) -> ContentRecord:
        if not content_ref:
            raise Reverted(errors.CONTENT_REF_REQUIRED)
        with self.store.transaction():
            if caller == owner:
                if not self.access.registry.is_registered_owner(owner):
                    raise Reverted(errors.CALLER_NOT_REGISTERED)
            elif not self.access.check_access(owner, caller):
                raise Reverted(errors.CALLER_NOT_AUTHORIZED)

            record = ContentRecord(owner=owner, content_ref=content_ref, created_at=self.chain.clock(), uploader=caller)
            self.store.append_record(record)
            self.chain.emit(
                EventType.RECORD_APPENDED,
                owner=owner,
                requester="" if caller == owner else caller,
                data={"content_ref": content_ref},
                timestamp=record.created_at,
            )
        log.info("record appended: owner=%s uploader=%s", owner, caller)
        return record

    def list_for_owner(self, caller: PrincipalId, owner: PrincipalId) -> List[ContentRecord]:
        if caller != owner:
            raise Reverted(errors.CALLER_NOT_OWNER)
        return self.store.list_records(owner)

    def list_for_requester(self, owner: PrincipalId, requester: PrincipalId) -> List[ContentRecord]:
        if not self.access.check_access(owner, requester):
            raise Reverted(errors.ACCESS_NOT_GRANTED)
        return self.store.list_records(owner)

    def contains(self, owner: PrincipalId, content_ref: ContentId) -> bool:
        return any(r.content_ref == content_ref for r in self.store.list_records(owner))
