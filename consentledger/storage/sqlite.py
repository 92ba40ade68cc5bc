# consentledger/storage/sqlite.py
import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List, Optional

from consentledger.core.errors import StaleGrant
from consentledger.core.hashing import event_hash
from consentledger.core.types import (
    AccessGrant,
    ContentRecord,
    EventType,
    GrantState,
    Identity,
    LedgerEvent,
    PrincipalId,
)
from . import StateStore


class SQLiteStateStore(StateStore):
    """SQLite persistent ledger state."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            env_path = os.environ.get("CONSENT_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "consent-ledger.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._connect()

    def _connect(self):
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS identities (
                address         TEXT    PRIMARY KEY,
                role            TEXT    NOT NULL,
                public_key      BLOB    NOT NULL,
                verified        INTEGER NOT NULL DEFAULT 0,
                rejected        INTEGER NOT NULL DEFAULT 0,
                content_ref     TEXT    NOT NULL DEFAULT '',
                registered_at   TEXT    NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS grants (
                owner           TEXT    NOT NULL,
                requester       TEXT    NOT NULL,
                state           TEXT    NOT NULL,
                purpose         TEXT    NOT NULL,
                requested_at    TEXT    NOT NULL,
                wrapped_key     BLOB    NOT NULL,
                content_refs    TEXT    NOT NULL,
                approved_at     TEXT    NOT NULL,
                revoked_at      TEXT    NOT NULL,
                version         INTEGER NOT NULL,
                PRIMARY KEY (owner, requester)
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                owner           TEXT    NOT NULL,
                content_ref     TEXT    NOT NULL,
                created_at      TEXT    NOT NULL,
                uploader        TEXT    NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                sequence        INTEGER PRIMARY KEY,
                type            TEXT    NOT NULL,
                timestamp       TEXT    NOT NULL,
                owner           TEXT    NOT NULL,
                requester       TEXT    NOT NULL,
                data_json       TEXT    NOT NULL,
                prev_hash       TEXT    NOT NULL,
                event_hash      TEXT    NOT NULL
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_grants_requester ON grants(requester)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_records_owner   ON records(owner, id)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_events_pair     ON events(owner, requester)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator["SQLiteStateStore"]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.conn.execute("COMMIT")

    # ── identities ──────────────────────────────────────────────────────────

    def get_identity(self, address: PrincipalId) -> Optional[Identity]:
        row = self.conn.execute("""
            SELECT address, role, public_key, verified, rejected, content_ref, registered_at
            FROM identities WHERE address = ?
        """, (address,)).fetchone()
        return _identity_from_row(row) if row else None

    def put_identity(self, identity: Identity) -> None:
        self.conn.execute("""
            INSERT INTO identities
            (address, role, public_key, verified, rejected, content_ref, registered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                role = excluded.role,
                public_key = excluded.public_key,
                verified = excluded.verified,
                rejected = excluded.rejected,
                content_ref = excluded.content_ref,
                registered_at = excluded.registered_at
        """, (
            identity.address, identity.role, bytes(identity.public_key),
            int(identity.verified), int(identity.rejected),
            identity.content_ref, identity.registered_at,
        ))

    def list_identities(self, role: Optional[str] = None) -> List[Identity]:
        sql = """
            SELECT address, role, public_key, verified, rejected, content_ref, registered_at
            FROM identities
        """
        params: tuple = ()
        if role:
            sql += " WHERE role = ?"
            params = (role,)
        sql += " ORDER BY registered_at ASC, address ASC"
        return [_identity_from_row(row) for row in self.conn.execute(sql, params)]

    # ── grants ──────────────────────────────────────────────────────────────

    _GRANT_COLUMNS = """
        owner, requester, state, purpose, requested_at, wrapped_key,
        content_refs, approved_at, revoked_at, version
    """

    def get_grant(self, owner: PrincipalId, requester: PrincipalId) -> Optional[AccessGrant]:
        row = self.conn.execute(
            f"SELECT {self._GRANT_COLUMNS} FROM grants WHERE owner = ? AND requester = ?",
            (owner, requester),
        ).fetchone()
        return _grant_from_row(row) if row else None

    def save_grant(self, grant: AccessGrant, expected_version: int) -> AccessGrant:
        new_version = expected_version + 1
        cursor = self.conn.execute(f"""
            INSERT INTO grants ({self._GRANT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(owner, requester) DO UPDATE SET
                state = excluded.state,
                purpose = excluded.purpose,
                requested_at = excluded.requested_at,
                wrapped_key = excluded.wrapped_key,
                content_refs = excluded.content_refs,
                approved_at = excluded.approved_at,
                revoked_at = excluded.revoked_at,
                version = excluded.version
            WHERE grants.version = ?
        """, (
            grant.owner, grant.requester, grant.state.value, grant.purpose,
            grant.requested_at, bytes(grant.wrapped_key),
            json.dumps(sorted(grant.content_refs), separators=(",", ":")),
            grant.approved_at, grant.revoked_at, new_version,
            expected_version,
        ))
        if cursor.rowcount != 1:
            raise StaleGrant(
                f"Grant ({grant.owner}, {grant.requester}) changed since version {expected_version}"
            )
        return replace(grant, version=new_version)

    def list_grants(
        self,
        owner: Optional[PrincipalId] = None,
        requester: Optional[PrincipalId] = None,
        state: Optional[GrantState] = None,
    ) -> List[AccessGrant]:
        clauses, params = [], []
        if owner:
            clauses.append("owner = ?")
            params.append(owner)
        if requester:
            clauses.append("requester = ?")
            params.append(requester)
        if state:
            clauses.append("state = ?")
            params.append(state.value)
        sql = f"SELECT {self._GRANT_COLUMNS} FROM grants"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY owner, requester"
        return [_grant_from_row(row) for row in self.conn.execute(sql, tuple(params))]

    # ── record index ────────────────────────────────────────────────────────

    def append_record(self, record: ContentRecord) -> None:
        self.conn.execute(
            "INSERT INTO records (owner, content_ref, created_at, uploader) VALUES (?, ?, ?, ?)",
            (record.owner, record.content_ref, record.created_at, record.uploader),
        )

    def list_records(self, owner: PrincipalId) -> List[ContentRecord]:
        cursor = self.conn.execute(
            "SELECT owner, content_ref, created_at, uploader FROM records WHERE owner = ? ORDER BY id ASC",
            (owner,),
        )
        return [ContentRecord(*row) for row in cursor]

    # ── event log ───────────────────────────────────────────────────────────

    def append_event(self, event: LedgerEvent) -> None:
        self.conn.execute("""
            INSERT INTO events
            (sequence, type, timestamp, owner, requester, data_json, prev_hash, event_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.sequence, event.type.value, event.timestamp, event.owner, event.requester,
            json.dumps(event.data, sort_keys=True, separators=(",", ":")),
            event.prev_hash, event_hash(event),
        ))

    def load_events(self, after: int = -1, limit: Optional[int] = None) -> List[LedgerEvent]:
        sql = """
            SELECT sequence, type, timestamp, owner, requester, data_json, prev_hash
            FROM events WHERE sequence > ? ORDER BY sequence ASC
        """
        params: tuple = (after,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (after, limit)
        return [_event_from_row(row) for row in self.conn.execute(sql, params)]

    def last_event(self) -> Optional[LedgerEvent]:
        row = self.conn.execute("""
            SELECT sequence, type, timestamp, owner, requester, data_json, prev_hash
            FROM events ORDER BY sequence DESC LIMIT 1
        """).fetchone()
        return _event_from_row(row) if row else None

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


def _identity_from_row(row) -> Identity:
    address, role, public_key, verified, rejected, content_ref, registered_at = row
    return Identity(
        address=address,
        role=role,
        public_key=bytes(public_key),
        verified=bool(verified),
        rejected=bool(rejected),
        content_ref=content_ref,
        registered_at=registered_at,
    )


def _grant_from_row(row) -> AccessGrant:
    owner, requester, state, purpose, requested_at, wrapped_key, refs, approved_at, revoked_at, version = row
    return AccessGrant(
        owner=owner,
        requester=requester,
        state=GrantState(state),
        purpose=purpose,
        requested_at=requested_at,
        wrapped_key=bytes(wrapped_key),
        content_refs=frozenset(json.loads(refs)),
        approved_at=approved_at,
        revoked_at=revoked_at,
        version=version,
    )


def _event_from_row(row) -> LedgerEvent:
    seq, etype, ts, owner, requester, data_json, prev = row
    return LedgerEvent(
        sequence=seq,
        type=EventType(etype),
        timestamp=ts,
        owner=owner,
        requester=requester,
        data=json.loads(data_json),
        prev_hash=prev,
    )
