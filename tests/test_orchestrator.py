# tests/test_orchestrator.py
import pytest

from consentledger.blobstore import FileBlobStore
from consentledger.core.errors import (
    AccessNotGranted,
    AlreadyRegistered,
    DecryptionFailed,
    NetworkError,
    NotFound,
    NotOwner,
    NotRegistered,
    NotVerified,
    ValidationError,
)
from consentledger.crypto.engine import generate_symmetric_key
from consentledger.crypto.keys import PrincipalKeyPair
from consentledger.session.orchestrator import FlowResult, SecretScope, SessionOrchestrator, secret_scope
from tests.conftest import ADMIN, OTHER, OWNER, REQUESTER, TEST_ITERATIONS

SECRET = "correct horse battery staple"


@pytest.fixture
def creds(orchestrator):
    creds = orchestrator.register_requester(REQUESTER).unwrap()
    orchestrator.verify_requester(ADMIN, REQUESTER).unwrap()
    return creds


@pytest.fixture
def owner_key(orchestrator):
    orchestrator.register_owner(OWNER).unwrap()
    return orchestrator.derive_record_key(SECRET)


def test_full_consent_flow(orchestrator, creds, owner_key):
    cid1 = orchestrator.upload_record(OWNER, OWNER, b"blood panel", owner_key.key).unwrap()
    cid2 = orchestrator.upload_record(OWNER, OWNER, b"x-ray report", owner_key.key).unwrap()

    assert orchestrator.request_access(REQUESTER, OWNER, "checkup")
    approval = orchestrator.approve_access(OWNER, REQUESTER, [cid1, cid2], secret=SECRET, salt=owner_key.salt).unwrap()
    assert approval.receipt.success

    result = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key)
    assert result.ok
    assert result.failures == []
    assert {r.content_ref: r.data for r in result.value} == {cid1: b"blood panel", cid2: b"x-ray report"}

    assert orchestrator.revoke_access(OWNER, REQUESTER)
    revoked = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key)
    assert not revoked
    assert isinstance(revoked.error, AccessNotGranted)


def test_only_authorized_refs_are_returned(orchestrator, creds, owner_key):
    shared = orchestrator.upload_record(OWNER, OWNER, b"shared", owner_key.key).unwrap()
    orchestrator.upload_record(OWNER, OWNER, b"private", owner_key.key).unwrap()
    orchestrator.approve_access(OWNER, REQUESTER, [shared], record_key=owner_key.key).unwrap()

    records = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key).unwrap()
    assert [r.content_ref for r in records] == [shared]


def test_partial_failure_is_reported_per_item(orchestrator, blobstore, creds, owner_key):
    good = orchestrator.upload_record(OWNER, OWNER, b"good", owner_key.key).unwrap()
    # Encrypted under a different key
    foreign = orchestrator.upload_record(OWNER, OWNER, b"foreign", generate_symmetric_key()).unwrap()
    orchestrator.approve_access(OWNER, REQUESTER, [good, foreign], record_key=owner_key.key).unwrap()

    result = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key)
    assert result.ok
    assert [r.content_ref for r in result.failures] == [foreign]
    assert isinstance(result.failures[0].error, DecryptionFailed)
    assert [r.data for r in result.value if r.ok] == [b"good"]


def test_missing_blob_is_per_item(orchestrator, blobstore, creds, owner_key):
    cid = orchestrator.upload_record(OWNER, OWNER, b"soon gone", owner_key.key).unwrap()
    orchestrator.approve_access(OWNER, REQUESTER, [cid], record_key=owner_key.key).unwrap()
    blobstore._blobs.clear()

    result = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key)
    assert result.ok
    assert isinstance(result.failures[0].error, NotFound)


def test_wrong_private_key_fails_whole_flow(orchestrator, creds, owner_key):
    cid = orchestrator.upload_record(OWNER, OWNER, b"data", owner_key.key).unwrap()
    orchestrator.approve_access(OWNER, REQUESTER, [cid], record_key=owner_key.key).unwrap()

    attacker = PrincipalKeyPair.generate()
    result = orchestrator.retrieve_records(REQUESTER, OWNER, attacker)
    assert not result
    assert isinstance(result.error, DecryptionFailed)
    with pytest.raises(DecryptionFailed):
        result.unwrap()


def test_request_local_validation(orchestrator, creds):
    for requester, owner, purpose in [
        ("nope", OWNER, "checkup"),
        (REQUESTER, "0x123", "checkup"),
        (REQUESTER, OWNER, "   "),
        (REQUESTER, REQUESTER, "checkup"),
    ]:
        result = orchestrator.request_access(requester, owner, purpose)
        assert isinstance(result.error, ValidationError)
    # Nothing reached the ledger
    assert orchestrator.ledger.events.history(requester=REQUESTER) == []


def test_unverified_request_translated(orchestrator, owner_key):
    orchestrator.register_requester(OTHER).unwrap()
    result = orchestrator.request_access(OTHER, OWNER, "checkup")
    assert isinstance(result.error, NotVerified)
    assert str(result.error) == "Caller is not a verified provider"


def test_duplicate_registration_translated(orchestrator, creds):
    result = orchestrator.register_requester(REQUESTER)
    assert isinstance(result.error, AlreadyRegistered)


def test_approve_validates_refs(orchestrator, creds, owner_key):
    assert isinstance(orchestrator.approve_access(OWNER, REQUESTER, [], secret=SECRET).error, ValidationError)
    result = orchestrator.approve_access(OWNER, REQUESTER, ["b-" + "f" * 64], secret=SECRET)
    assert isinstance(result.error, ValidationError)
    cid = orchestrator.upload_record(OWNER, OWNER, b"data", owner_key.key).unwrap()
    assert isinstance(orchestrator.approve_access(OWNER, REQUESTER, [cid]).error, ValidationError)


def test_approve_unknown_requester(orchestrator, owner_key):
    cid = orchestrator.upload_record(OWNER, OWNER, b"data", owner_key.key).unwrap()
    result = orchestrator.approve_access(OWNER, OTHER, [cid], record_key=owner_key.key)
    assert isinstance(result.error, NotRegistered)


def test_approve_by_non_owner(orchestrator, creds, owner_key):
    cid = orchestrator.upload_record(OWNER, OWNER, b"data", owner_key.key).unwrap()
    result = orchestrator.approve_access(REQUESTER, REQUESTER, [cid], record_key=owner_key.key)
    assert isinstance(result.error, NotOwner)

    # A registered owner can only share refs from their own index
    orchestrator.register_owner(OTHER).unwrap()
    result = orchestrator.approve_access(OTHER, REQUESTER, [cid], record_key=owner_key.key)
    assert isinstance(result.error, ValidationError)


def test_approve_with_secret_reads_salt_from_records(orchestrator, creds, owner_key):
    cid = orchestrator.upload_record(OWNER, OWNER, b"blood panel", owner_key).unwrap()
    approval = orchestrator.approve_access(OWNER, REQUESTER, [cid], secret=SECRET).unwrap()
    assert approval.salt == owner_key.salt

    records = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key).unwrap()
    assert [r.data for r in records] == [b"blood panel"]


def test_approve_with_secret_needs_a_stored_salt(orchestrator, creds, owner_key):
    raw = orchestrator.upload_record(OWNER, OWNER, b"raw key", owner_key.key).unwrap()
    result = orchestrator.approve_access(OWNER, REQUESTER, [raw], secret=SECRET)
    assert isinstance(result.error, ValidationError)
    assert not orchestrator.access_status(OWNER, REQUESTER).unwrap().wrapped_key


def test_approve_rejects_records_under_different_keys(orchestrator, creds, owner_key):
    first = orchestrator.upload_record(OWNER, OWNER, b"one", owner_key).unwrap()
    other_key = orchestrator.derive_record_key(SECRET)
    second = orchestrator.upload_record(OWNER, OWNER, b"two", other_key).unwrap()
    result = orchestrator.approve_access(OWNER, REQUESTER, [first, second], secret=SECRET)
    assert isinstance(result.error, ValidationError)


def test_unreadable_blob_is_per_item(ledger, tmp_path):
    blobs = FileBlobStore(str(tmp_path / "blobs"))
    orchestrator = SessionOrchestrator(ledger, blobs, iterations=TEST_ITERATIONS)
    creds = orchestrator.register_requester(REQUESTER).unwrap()
    orchestrator.verify_requester(ADMIN, REQUESTER).unwrap()
    orchestrator.register_owner(OWNER).unwrap()
    key = orchestrator.derive_record_key(SECRET)
    good = orchestrator.upload_record(OWNER, OWNER, b"good", key).unwrap()
    broken = orchestrator.upload_record(OWNER, OWNER, b"broken", key).unwrap()
    orchestrator.approve_access(OWNER, REQUESTER, [good, broken], secret=SECRET).unwrap()

    (blobs.root / broken).unlink()
    (blobs.root / broken).mkdir()

    result = orchestrator.retrieve_records(REQUESTER, OWNER, creds.private_key)
    assert result.ok
    assert [r.content_ref for r in result.failures] == [broken]
    assert isinstance(result.failures[0].error, NetworkError)
    assert [r.data for r in result.value if r.ok] == [b"good"]


def test_requester_upload_needs_access(orchestrator, creds, owner_key):
    denied = orchestrator.upload_record(REQUESTER, OWNER, b"lab", owner_key.key)
    assert isinstance(denied.error, AccessNotGranted)

    cid = orchestrator.upload_record(OWNER, OWNER, b"seed", owner_key.key).unwrap()
    orchestrator.approve_access(OWNER, REQUESTER, [cid], record_key=owner_key.key).unwrap()
    assert orchestrator.upload_record(REQUESTER, OWNER, b"lab", owner_key.key)


def test_list_records_owner_only(orchestrator, owner_key):
    orchestrator.upload_record(OWNER, OWNER, b"data", owner_key.key).unwrap()
    assert len(orchestrator.list_records(OWNER).unwrap()) == 1


def test_pending_and_status(orchestrator, creds, owner_key):
    orchestrator.request_access(REQUESTER, OWNER, "checkup").unwrap()
    assert [g.requester for g in orchestrator.pending_requests(OWNER).unwrap()] == [REQUESTER]
    assert orchestrator.access_status(OWNER, REQUESTER).unwrap().purpose == "checkup"


def test_credentials_repr_hides_private_key(creds):
    assert creds.private_key.hex() not in repr(creds)
    assert creds.private_key_b64url not in repr(creds)


def test_secret_scope_zeroes_on_error():
    with pytest.raises(RuntimeError):
        with secret_scope() as scope:
            buf = scope.hold(b"\x01\x02\x03")
            raise RuntimeError("flow aborted")
    assert buf == bytearray(3)


def test_secret_scope_zeroes_on_success():
    scope = SecretScope()
    buf = scope.hold(b"secret")
    scope.wipe()
    assert buf == bytearray(6)


def test_flow_result_unwrap():
    assert FlowResult(True, 42).unwrap() == 42
    with pytest.raises(NotOwner):
        FlowResult(False, error=NotOwner("no")).unwrap()
