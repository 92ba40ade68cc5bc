# tests/test_storage.py
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from consentledger.core.errors import StaleGrant
from consentledger.core.types import (
    AccessGrant,
    ContentRecord,
    EventType,
    GrantState,
    Identity,
    LedgerEvent,
)
from consentledger.storage import InMemoryStateStore, SQLiteStateStore, StateStore, create_storage

OWNER = "0x" + "11" * 20
REQUESTER = "0x" + "22" * 20


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture(params=["sqlite", "memory"])
def store(request, temp_db_path: Path) -> StateStore:
    s = SQLiteStateStore(temp_db_path) if request.param == "sqlite" else InMemoryStateStore()
    yield s
    s.close()


def _event(seq: int, event_type=EventType.REQUESTED) -> LedgerEvent:
    return LedgerEvent(
        sequence=seq,
        type=event_type,
        timestamp=f"2026-02-13T12:00:{seq:02d}.000Z",
        owner=OWNER,
        requester=REQUESTER,
        data={"purpose": f"visit {seq}"},
    )


def test_create_storage_routing(temp_db_path: Path):
    sqlite_store = create_storage(f"sqlite://{temp_db_path}")
    assert isinstance(sqlite_store, SQLiteStateStore)
    assert str(sqlite_store.db_path) == str(temp_db_path.resolve())
    sqlite_store.close()

    assert isinstance(create_storage("memory:"), InMemoryStateStore)
    plain = create_storage(str(temp_db_path))
    assert isinstance(plain, SQLiteStateStore)
    plain.close()

    with pytest.raises(ValueError):
        create_storage("postgres://nope")
    with pytest.raises(ValueError):
        create_storage("sqlite://")


def test_sqlite_init_default_and_env(monkeypatch):
    with TemporaryDirectory() as tmpdir:
        monkeypatch.chdir(tmpdir)
        monkeypatch.delenv("CONSENT_DB_PATH", raising=False)
        default_store = SQLiteStateStore()
        assert default_store.db_path.name == "consent-ledger.db"
        default_store.close()

        env_path = Path(tmpdir) / "env-test.db"
        monkeypatch.setenv("CONSENT_DB_PATH", str(env_path))
        env_store = SQLiteStateStore()
        assert env_store.db_path == env_path.resolve()
        env_store.close()


def test_sqlite_schema_creation(temp_db_path: Path):
    s = SQLiteStateStore(temp_db_path)
    columns = {row[1] for row in s.conn.execute("PRAGMA table_info(grants)")}
    assert {"owner", "requester", "state", "wrapped_key", "content_refs", "version"} <= columns
    tables = {row[0] for row in s.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"identities", "grants", "records", "events"} <= tables
    s.close()


def test_identity_roundtrip(store: StateStore):
    identity = Identity(REQUESTER, "requester", public_key=b"\x04" + b"\x01" * 64, registered_at="t0")
    store.put_identity(identity)
    assert store.get_identity(REQUESTER) == identity
    assert store.get_identity(OWNER) is None

    store.put_identity(Identity(OWNER, "owner", registered_at="t1"))
    assert [i.address for i in store.list_identities(role="requester")] == [REQUESTER]
    assert len(store.list_identities()) == 2


def test_grant_compare_and_set(store: StateStore):
    grant = AccessGrant(OWNER, REQUESTER).requested("treatment", "t0")
    saved = store.save_grant(grant, expected_version=0)
    assert saved.version == 1
    assert store.get_grant(OWNER, REQUESTER).version == 1

    with pytest.raises(StaleGrant):
        store.save_grant(grant, expected_version=0)

    approved = saved.approved(b"wrapped", {"b-1", "b-2"}, "t1")
    stored = store.save_grant(approved, expected_version=1)
    assert stored.version == 2
    loaded = store.get_grant(OWNER, REQUESTER)
    assert loaded.state == GrantState.APPROVED
    assert loaded.wrapped_key == b"wrapped"
    assert loaded.content_refs == frozenset({"b-1", "b-2"})


def test_list_grants_filters(store: StateStore):
    other = "0x" + "33" * 20
    store.save_grant(AccessGrant(OWNER, REQUESTER).requested("a", "t0"), 0)
    store.save_grant(AccessGrant(OWNER, other).approved(b"k", set(), "t1"), 0)
    assert len(store.list_grants(owner=OWNER)) == 2
    assert [g.requester for g in store.list_grants(owner=OWNER, state=GrantState.REQUESTED)] == [REQUESTER]
    assert [g.requester for g in store.list_grants(requester=other)] == [other]


def test_records_in_append_order(store: StateStore):
    for i in range(3):
        store.append_record(ContentRecord(OWNER, f"b-{i}", f"t{i}", OWNER))
    assert [r.content_ref for r in store.list_records(OWNER)] == ["b-0", "b-1", "b-2"]
    assert store.list_records(REQUESTER) == []


def test_events_load_after_and_limit(store: StateStore):
    assert store.last_event() is None
    for i in range(5):
        store.append_event(_event(i))
    assert [e.sequence for e in store.load_events()] == [0, 1, 2, 3, 4]
    assert [e.sequence for e in store.load_events(after=1, limit=2)] == [2, 3]
    assert store.last_event() == _event(4)


def test_transaction_rolls_back_on_error(store: StateStore):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.save_grant(AccessGrant(OWNER, REQUESTER).requested("x", "t0"), 0)
            store.append_event(_event(0))
            raise RuntimeError("boom")
    assert store.get_grant(OWNER, REQUESTER) is None
    assert store.load_events() == []


def test_nested_transaction_commits_once(store: StateStore):
    with store.transaction():
        with store.transaction():
            store.append_event(_event(0))
        store.append_event(_event(1))
    assert len(store.load_events()) == 2


def test_sqlite_persists_across_reopen(temp_db_path: Path):
    s = SQLiteStateStore(temp_db_path)
    s.save_grant(AccessGrant(OWNER, REQUESTER).requested("x", "t0"), 0)
    s.append_event(_event(0))
    s.close()

    reopened = SQLiteStateStore(temp_db_path)
    assert reopened.get_grant(OWNER, REQUESTER).version == 1
    assert reopened.load_events() == [_event(0)]
    reopened.close()


def test_closed_store_raises(store: StateStore):
    store.close()
    with pytest.raises(RuntimeError, match="closed"):
        store.get_grant(OWNER, REQUESTER)


def test_context_manager_closes(temp_db_path: Path):
    with SQLiteStateStore(temp_db_path) as s:
        s.append_event(_event(0))
    with pytest.raises(RuntimeError):
        s.load_events()
