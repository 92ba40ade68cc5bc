# consentledger/session/orchestrator.py
"""
Client-side flows on top of the ledger, the crypto engine and the blob store.

Every public flow returns a FlowResult; ledger reverts are translated into the
typed error taxonomy and never escape as Reverted. Key material only lives in
bytearrays held by a secret_scope, which zeroes them when the flow ends.
"""

import functools
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List, Optional, Union

from consentledger.blobstore import BlobStore
from consentledger.chain.ledger import Ledger
from consentledger.core import errors
from consentledger.core.encoding import b64url_encode, normalize_address
from consentledger.core.errors import (
    ConsentLedgerError,
    NetworkError,
    Reverted,
    ValidationError,
    translate_revert,
)
from consentledger.core.types import AccessGrant, ContentId, ContentRecord, PrincipalId, Receipt
from consentledger.crypto.engine import (
    PBKDF2_ITERATIONS,
    DerivedKey,
    content_salt,
    decrypt_content,
    derive_symmetric_key,
    encrypt_content,
    unwrap_key,
    wrap_key,
)
from consentledger.crypto.keys import PrivateKeyLike, generate_keypair
from consentledger.log import get_logger

log = get_logger("session")


@dataclass
class FlowResult:
    ok: bool
    value: Any = None
    error: Optional[ConsentLedgerError] = None
    failures: List["RetrievedRecord"] = field(default_factory=list)

    def __bool__(self):
        return self.ok

    def unwrap(self) -> Any:
        if not self.ok:
            raise self.error
        return self.value


@dataclass(frozen=True)
class RetrievedRecord:
    content_ref: ContentId
    data: Optional[bytes] = None
    error: Optional[ConsentLedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RequesterCredentials:
    """Returned once at registration. The private key is not stored anywhere else."""
    address: PrincipalId
    public_key: bytes
    private_key: bytes

    @property
    def private_key_b64url(self) -> str:
        return b64url_encode(self.private_key)

    def __repr__(self):
        return f"RequesterCredentials(address={self.address}, public_key={self.public_key.hex()})"


@dataclass(frozen=True)
class Approval:
    receipt: Receipt
    salt: Optional[bytes] = None     # persist it to derive the same record key again
    iterations: Optional[int] = None


class SecretScope:
    def __init__(self):
        self._buffers: List[bytearray] = []

    def hold(self, data) -> bytearray:
        buf = bytearray(data)
        self._buffers.append(buf)
        return buf

    def wipe(self) -> None:
        for buf in self._buffers:
            buf[:] = bytes(len(buf))
        self._buffers.clear()


@contextmanager
def secret_scope() -> Iterator[SecretScope]:
    scope = SecretScope()
    try:
        yield scope
    finally:
        scope.wipe()


def _flow(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            value = fn(self, *args, **kwargs)
        except Reverted as e:
            error = translate_revert(e)
            log.warning("%s failed: %s (%s)", fn.__name__, e.reason, error.code)
            return FlowResult(False, error=error)
        except ConsentLedgerError as e:
            log.warning("%s failed: %s (%s)", fn.__name__, e, e.code)
            return FlowResult(False, error=e)
        if isinstance(value, FlowResult):
            return value
        return FlowResult(True, value)
    return wrapper


def _address(value: str, label: str) -> PrincipalId:
    try:
        return normalize_address(value)
    except ValueError:
        raise ValidationError(f"Invalid {label} address: {value!r}") from None


class SessionOrchestrator:
    def __init__(self, ledger: Ledger, blobstore: BlobStore, iterations: int = PBKDF2_ITERATIONS):
        self.ledger = ledger
        self.blobstore = blobstore
        self.iterations = iterations

    # ── registration ────────────────────────────────────────────────────────

    @_flow
    def register_requester(self, address: str, content_ref: ContentId = "") -> RequesterCredentials:
        address = _address(address, "requester")
        keypair = generate_keypair()
        self.ledger.submit("registerRequester", address, keypair.public_bytes(), content_ref)
        return RequesterCredentials(address, keypair.public_bytes(), keypair.private_bytes())

    @_flow
    def register_owner(self, address: str, content_ref: ContentId = "") -> Receipt:
        return self.ledger.submit("registerOwner", _address(address, "owner"), content_ref)

    @_flow
    def verify_requester(self, admin: str, requester: str) -> Receipt:
        return self.ledger.submit("verify", _address(admin, "admin"), _address(requester, "requester"))

    @_flow
    def reject_requester(self, admin: str, requester: str) -> Receipt:
        return self.ledger.submit("reject", _address(admin, "admin"), _address(requester, "requester"))

    @_flow
    def update_content_ref(self, address: str, content_ref: ContentId) -> Receipt:
        return self.ledger.submit("updateContentRef", _address(address, "caller"), content_ref)

    # ── access ──────────────────────────────────────────────────────────────

    @_flow
    def request_access(self, requester: str, owner: str, purpose: str) -> Receipt:
        requester = _address(requester, "requester")
        owner = _address(owner, "owner")
        if not purpose or not purpose.strip():
            raise ValidationError("Purpose must not be empty")
        if requester == owner:
            raise ValidationError("Cannot request access to your own records")
        return self.ledger.submit("request", requester, owner, purpose.strip())

    def derive_record_key(self, secret: str, salt: Optional[bytes] = None) -> DerivedKey:
        return derive_symmetric_key(secret, salt=salt, iterations=self.iterations)

    @_flow
    def approve_access(
        self,
        owner: str,
        requester: str,
        content_refs: Iterable[ContentId],
        secret: Optional[str] = None,
        salt: Optional[bytes] = None,
        record_key: Optional[bytes] = None,
    ) -> Approval:
        """
        Wrap the owner's record key for `requester` and approve access to `content_refs`.

        The record key is either passed in directly or derived again from `secret`.
        Without an explicit `salt` the derivation salt is read from the header of
        the shared blobs, which must all have been encrypted under the same key.
        """
        owner = _address(owner, "owner")
        requester = _address(requester, "requester")
        if not self.ledger.call("isRegisteredOwner", None, owner):
            raise Reverted(errors.CALLER_NOT_PATIENT)
        refs = sorted(set(content_refs or ()))
        if not refs:
            raise ValidationError("At least one content reference is required")
        missing = [r for r in refs if not self.ledger.call("containsRecord", owner, owner, r)]
        if missing:
            raise ValidationError(f"Not in the owner's record index: {', '.join(missing)}")
        if record_key is None and not secret:
            raise ValidationError("Either a secret or a record key is required")
        if record_key is None and salt is None:
            salt = self._stored_salt(refs)

        public_key = self.ledger.call("getPublicKey", owner, requester)
        with secret_scope() as scope:
            derived = None
            if record_key is not None:
                key = scope.hold(record_key)
            else:
                derived = self.derive_record_key(secret, salt)
                key = scope.hold(derived.key)
            wrapped = wrap_key(key, public_key).to_bytes()

        receipt = self.ledger.submit("approve", owner, requester, wrapped, refs)
        if derived is None:
            return Approval(receipt)
        return Approval(receipt, salt=derived.salt, iterations=derived.iterations)

    def _stored_salt(self, refs: List[ContentId]) -> bytes:
        salts = {content_salt(self._fetch(ref)) for ref in refs}
        if len(salts) > 1:
            raise ValidationError("Shared records were encrypted under different record keys")
        salt = salts.pop()
        if not salt:
            raise ValidationError("Records carry no derivation salt; pass the salt or the record key")
        return salt

    def _fetch(self, ref: ContentId) -> bytes:
        try:
            return self.blobstore.get(ref)
        except OSError as e:
            raise NetworkError(f"Blob store read failed: {e}") from e

    @_flow
    def revoke_access(self, owner: str, requester: str) -> Receipt:
        return self.ledger.submit("revoke", _address(owner, "owner"), _address(requester, "requester"))

    @_flow
    def access_status(self, owner: str, requester: str) -> AccessGrant:
        return self.ledger.call("getGrant", None, _address(owner, "owner"), _address(requester, "requester"))

    @_flow
    def pending_requests(self, owner: str) -> List[AccessGrant]:
        return self.ledger.call("pendingRequests", None, _address(owner, "owner"))

    # ── records ─────────────────────────────────────────────────────────────

    @_flow
    def upload_record(
        self,
        uploader: str,
        owner: str,
        data: bytes,
        record_key: Union[bytes, DerivedKey],
    ) -> ContentId:
        """
        Encrypt `data` under the owner's record key, store the blob, index it.

        A DerivedKey also stores its salt in the blob so the key can be derived again.
        """
        uploader = _address(uploader, "uploader")
        owner = _address(owner, "owner")
        if uploader != owner and not self.ledger.call("checkAccess", None, owner, uploader):
            raise Reverted(errors.CALLER_NOT_AUTHORIZED)

        with secret_scope() as scope:
            if isinstance(record_key, DerivedKey):
                blob = encrypt_content(data, scope.hold(record_key.key), salt=record_key.salt)
            else:
                blob = encrypt_content(data, scope.hold(record_key))
        try:
            cid = self.blobstore.put(blob)
        except OSError as e:
            raise NetworkError(f"Blob store write failed: {e}") from e
        self.ledger.submit("appendRecord", uploader, owner, cid)
        log.info("record uploaded: owner=%s cid=%s", owner, cid)
        return cid

    @_flow
    def list_records(self, owner: str) -> List[ContentRecord]:
        owner = _address(owner, "owner")
        return self.ledger.call("listForOwner", owner, owner)

    @_flow
    def retrieve_records(self, requester: str, owner: str, private_key: PrivateKeyLike) -> FlowResult:
        """
        Unwrap the record key and decrypt every authorized record.

        A failure to obtain or unwrap the key fails the whole flow. Failures on
        individual records are reported per item and do not stop the others.
        """
        requester = _address(requester, "requester")
        owner = _address(owner, "owner")
        wrapped = self.ledger.call("getWrappedKey", requester, owner)
        refs = sorted(self.ledger.call("getAuthorizedContentRefs", requester, owner))

        records: List[RetrievedRecord] = []
        with secret_scope() as scope:
            key = scope.hold(unwrap_key(wrapped, private_key))
            for ref in refs:
                try:
                    data = decrypt_content(self._fetch(ref), key)
                except ConsentLedgerError as e:
                    log.warning("record %s could not be retrieved: %s", ref, e.code)
                    records.append(RetrievedRecord(ref, error=e))
                    continue
                records.append(RetrievedRecord(ref, data=data))

        return FlowResult(True, records, failures=[r for r in records if not r.ok])
