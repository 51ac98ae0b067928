"""SQLite storage driver (durable persistence).

This module provides a simple SQLite implementation behind the DB-agnostic
storage interfaces. SQLite is used only as a local, file-backed state store.

Tables:
- subscriptions, subscription_consumers, consumer_nonces: registry state
- offchain_computers: authorization set
- jobs: mutable only in state/signer/result/expiry columns
- job_events: append-only audit log

Stores open a short-lived connection per call unless a transaction is open on
the calling thread, in which case they share its connection.

Nonces are uint256 and are stored as decimal TEXT because SQLite INTEGER is
64-bit.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ContextManager, Iterable, Iterator

from oracle_core.errors import ConflictError, NotFoundError, PolicyViolationError, UnknownRequestError
from oracle_core.storage.interfaces import (
    AuthorityStore,
    ComputerRecord,
    EventRecord,
    EventStore,
    JobRecord,
    JobStore,
    SubscriptionRecord,
    SubscriptionStore,
)
from oracle_core.utils import format_rfc3339, json_dumps, parse_rfc3339, utcnow

SCHEMA_VERSION = 1


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        request_id=row["request_id"],
        consumer=row["consumer"],
        subscription_id=int(row["subscription_id"]),
        nonce=int(row["nonce"]),
        state=row["state"],
        created_at=parse_rfc3339(row["created_at"]),
        updated_at=parse_rfc3339(row["updated_at"]),
        signer=row["signer"],
        result=row["result"],
        expiry_reason=row["expiry_reason"],
    )


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        seq=int(row["seq"]),
        ts=parse_rfc3339(row["ts"]),
        event_type=row["event_type"],
        request_id=row["request_id"],
        details=json.loads(row["details_json"] or "{}"),
    )


class SQLiteDatabase:
    def __init__(self, path: Path):
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Connection of the transaction open on this thread, if any.
        self._local = threading.local()
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run every statement issued on this thread inside the block as one unit.

        The outermost level takes the write lock up front (BEGIN IMMEDIATE) and
        commits on exit; nested levels are savepoints.
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            depth = self._local.depth
            name = f"sp_{depth}"
            self._local.depth = depth + 1
            active.execute(f"SAVEPOINT {name};")
            try:
                yield active
            except BaseException:
                if active.in_transaction:
                    active.execute(f"ROLLBACK TO {name};")
                    active.execute(f"RELEASE {name};")
                raise
            else:
                active.execute(f"RELEASE {name};")
            finally:
                self._local.depth = depth
            return

        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            self._local.conn = conn
            self._local.depth = 1
            try:
                yield conn
            except BaseException:
                # SQLite may already have rolled back on its own (for example SQLITE_FULL).
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                raise
            else:
                conn.execute("COMMIT;")
            finally:
                self._local.conn = None

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (SCHEMA_VERSION,))
                version = SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != SCHEMA_VERSION:
                raise PolicyViolationError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                  subscription_id INTEGER PRIMARY KEY,
                  owner TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscription_consumers (
                  subscription_id INTEGER NOT NULL REFERENCES subscriptions(subscription_id),
                  consumer TEXT NOT NULL,
                  PRIMARY KEY (subscription_id, consumer)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS consumer_nonces (
                  consumer TEXT NOT NULL,
                  subscription_id INTEGER NOT NULL,
                  nonce TEXT NOT NULL,
                  PRIMARY KEY (consumer, subscription_id)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offchain_computers (
                  address TEXT PRIMARY KEY,
                  authorized INTEGER NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  request_id TEXT PRIMARY KEY,
                  consumer TEXT NOT NULL,
                  subscription_id INTEGER NOT NULL,
                  nonce TEXT NOT NULL,
                  state TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  signer TEXT,
                  result TEXT,
                  expiry_reason TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state_created_at ON jobs(state, created_at);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_events (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  request_id TEXT,
                  details_json TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_request_id ON job_events(request_id, seq);")


class SQLiteSubscriptionStore(SubscriptionStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def next_id(self) -> int:
        with self._db.connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(subscription_id) + 1, 0) AS n FROM subscriptions;").fetchone()
            return int(row["n"])

    def create(self, subscription: SubscriptionRecord) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO subscriptions(subscription_id, owner, created_at) VALUES (?, ?, ?);",
                    (subscription.subscription_id, subscription.owner, format_rfc3339(subscription.created_at)),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Subscription already exists: {subscription.subscription_id}") from e

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row) -> SubscriptionRecord:
        consumers = conn.execute(
            "SELECT consumer FROM subscription_consumers WHERE subscription_id = ?;", (row["subscription_id"],)
        ).fetchall()
        return SubscriptionRecord(
            subscription_id=int(row["subscription_id"]),
            owner=row["owner"],
            created_at=parse_rfc3339(row["created_at"]),
            consumers=frozenset(r["consumer"] for r in consumers),
        )

    def get(self, subscription_id: int) -> SubscriptionRecord:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM subscriptions WHERE subscription_id = ?;", (subscription_id,)).fetchone()
            if row is None:
                raise NotFoundError("Subscription", str(subscription_id))
            return self._load(conn, row)

    def list(self) -> Iterable[SubscriptionRecord]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM subscriptions ORDER BY subscription_id ASC;").fetchall()
            return [self._load(conn, r) for r in rows]

    def set_consumer(self, subscription_id: int, consumer: str, *, member: bool) -> None:
        with self._db.connect() as conn:
            exists = conn.execute("SELECT 1 FROM subscriptions WHERE subscription_id = ?;", (subscription_id,)).fetchone()
            if exists is None:
                raise NotFoundError("Subscription", str(subscription_id))
            if member:
                conn.execute(
                    "INSERT OR IGNORE INTO subscription_consumers(subscription_id, consumer) VALUES (?, ?);",
                    (subscription_id, consumer),
                )
            else:
                conn.execute(
                    "DELETE FROM subscription_consumers WHERE subscription_id = ? AND consumer = ?;",
                    (subscription_id, consumer),
                )

    def get_nonce(self, consumer: str, subscription_id: int) -> int | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT nonce FROM consumer_nonces WHERE consumer = ? AND subscription_id = ?;",
                (consumer, subscription_id),
            ).fetchone()
            return int(row["nonce"]) if row is not None else None

    def set_nonce(self, consumer: str, subscription_id: int, nonce: int) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO consumer_nonces(consumer, subscription_id, nonce) VALUES (?, ?, ?)
                ON CONFLICT(consumer, subscription_id) DO UPDATE SET nonce = excluded.nonce;
                """,
                (consumer, subscription_id, str(nonce)),
            )


class SQLiteJobStore(JobStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def create(self, job: JobRecord) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO jobs(
                      request_id, consumer, subscription_id, nonce, state,
                      created_at, updated_at, signer, result, expiry_reason
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        job.request_id,
                        job.consumer,
                        job.subscription_id,
                        str(job.nonce),
                        job.state,
                        format_rfc3339(job.created_at),
                        format_rfc3339(job.updated_at),
                        job.signer,
                        job.result,
                        job.expiry_reason,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Job already exists: {job.request_id}") from e

    def get(self, request_id: str) -> JobRecord:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE request_id = ?;", (request_id,)).fetchone()
            if row is None:
                raise UnknownRequestError(request_id)
            return _row_to_job(row)

    def update(self, job: JobRecord) -> None:
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET
                  state = ?,
                  updated_at = ?,
                  signer = ?,
                  result = ?,
                  expiry_reason = ?
                WHERE request_id = ?;
                """,
                (job.state, format_rfc3339(job.updated_at), job.signer, job.result, job.expiry_reason, job.request_id),
            )
            if cur.rowcount != 1:
                raise UnknownRequestError(job.request_id)

    def list_by_state(self, state: str) -> Iterable[JobRecord]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM jobs WHERE state = ? ORDER BY created_at ASC;", (state,)).fetchall()
            return [_row_to_job(r) for r in rows]


class SQLiteAuthorityStore(AuthorityStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def get(self, address: str) -> ComputerRecord | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM offchain_computers WHERE address = ?;", (address,)).fetchone()
            if row is None:
                return None
            return ComputerRecord(
                address=row["address"],
                authorized=bool(row["authorized"]),
                updated_at=parse_rfc3339(row["updated_at"]),
            )

    def put(self, record: ComputerRecord) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO offchain_computers(address, authorized, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET authorized = excluded.authorized, updated_at = excluded.updated_at;
                """,
                (record.address, 1 if record.authorized else 0, format_rfc3339(record.updated_at)),
            )

    def list_authorized(self) -> Iterable[str]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT address FROM offchain_computers WHERE authorized = 1 ORDER BY address ASC;").fetchall()
            return [r["address"] for r in rows]


class SQLiteEventStore(EventStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def append(self, *, event_type: str, request_id: str | None, details: dict[str, Any] | None = None) -> EventRecord:
        ts = utcnow()
        payload = dict(details or {})
        with self._db.connect() as conn:
            cur = conn.execute(
                "INSERT INTO job_events(ts, event_type, request_id, details_json) VALUES (?, ?, ?, ?);",
                (format_rfc3339(ts), event_type, request_id, json_dumps(payload)),
            )
            return EventRecord(seq=int(cur.lastrowid), ts=ts, event_type=event_type, request_id=request_id, details=payload)

    def list_since(self, seq: int) -> Iterable[EventRecord]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM job_events WHERE seq > ? ORDER BY seq ASC;", (seq,)).fetchall()
            return [_row_to_event(r) for r in rows]

    def latest_seq(self) -> int:
        with self._db.connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS s FROM job_events;").fetchone()
            return int(row["s"])

    def list_for_request(self, request_id: str) -> Iterable[EventRecord]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM job_events WHERE request_id = ? ORDER BY seq ASC;", (request_id,)).fetchall()
            return [_row_to_event(r) for r in rows]


class SQLiteStores:
    """Convenience container for the four stores backed by one SQLite file."""

    def __init__(self, sqlite_path: Path):
        db = SQLiteDatabase(sqlite_path)
        self.subscriptions: SubscriptionStore = SQLiteSubscriptionStore(db)
        self.jobs: JobStore = SQLiteJobStore(db)
        self.authority: AuthorityStore = SQLiteAuthorityStore(db)
        self.events: EventStore = SQLiteEventStore(db)
        self._db = db

    def transaction(self) -> ContextManager[sqlite3.Connection]:
        return self._db.transaction()
