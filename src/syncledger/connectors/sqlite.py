"""
SQLite Ledger Database.

Provides the storage connection shared by every repository:
- Schema creation (idempotent)
- Connection lifecycle with WAL and busy-timeout pragmas
- Small helpers for parameterized reads and single-statement writes
- UTC timestamp encoding that sorts lexicographically
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Sequence


SCHEMA = """
CREATE TABLE IF NOT EXISTS synchronizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    config TEXT NOT NULL,
    interval_seconds INTEGER NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    last_run TEXT,
    next_run TEXT,
    created TEXT NOT NULL,
    updated TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_synchronizations_due
    ON synchronizations (enabled, next_run);

CREATE TABLE IF NOT EXISTS synchronization_contracts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL UNIQUE,
    synchronization_id TEXT NOT NULL,
    origin_id TEXT,
    origin_hash TEXT,
    target_id TEXT,
    target_hash TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created TEXT NOT NULL,
    updated TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_contracts_origin
    ON synchronization_contracts (synchronization_id, origin_id);
CREATE INDEX IF NOT EXISTS idx_contracts_target
    ON synchronization_contracts (synchronization_id, target_id);
CREATE INDEX IF NOT EXISTS idx_contracts_origin_any
    ON synchronization_contracts (origin_id);
CREATE INDEX IF NOT EXISTS idx_contracts_target_any
    ON synchronization_contracts (target_id);

CREATE TABLE IF NOT EXISTS synchronization_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL UNIQUE,
    synchronization_id TEXT NOT NULL,
    result TEXT NOT NULL DEFAULT '{}',
    message TEXT NOT NULL DEFAULT '',
    test INTEGER NOT NULL DEFAULT 0,
    force INTEGER NOT NULL DEFAULT 0,
    execution_time INTEGER NOT NULL DEFAULT 0,
    created TEXT NOT NULL,
    expires TEXT NOT NULL,
    size INTEGER NOT NULL DEFAULT 4096
);
CREATE INDEX IF NOT EXISTS idx_sync_logs_sync
    ON synchronization_logs (synchronization_id, created);
CREATE INDEX IF NOT EXISTS idx_sync_logs_expires
    ON synchronization_logs (expires);

CREATE TABLE IF NOT EXISTS synchronization_contract_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL UNIQUE,
    synchronization_id TEXT NOT NULL,
    synchronization_contract_id INTEGER,
    synchronization_log_id INTEGER,
    source TEXT,
    target TEXT,
    target_result TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    test INTEGER NOT NULL DEFAULT 0,
    force INTEGER NOT NULL DEFAULT 0,
    created TEXT NOT NULL,
    expires TEXT NOT NULL,
    size INTEGER NOT NULL DEFAULT 4096
);
CREATE INDEX IF NOT EXISTS idx_contract_logs_run
    ON synchronization_contract_logs (synchronization_log_id);
CREATE INDEX IF NOT EXISTS idx_contract_logs_contract
    ON synchronization_contract_logs (synchronization_contract_id);
CREATE INDEX IF NOT EXISTS idx_contract_logs_expires
    ON synchronization_contract_logs (expires);

CREATE TABLE IF NOT EXISTS event_subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL UNIQUE,
    reference TEXT NOT NULL,
    style TEXT NOT NULL,
    sink TEXT,
    types TEXT NOT NULL DEFAULT '[]',
    source TEXT,
    filters TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'active',
    created TEXT NOT NULL,
    updated TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_subscriptions_reference
    ON event_subscriptions (reference);

CREATE TABLE IF NOT EXISTS event_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL UNIQUE,
    event_id TEXT NOT NULL,
    subscription_id INTEGER NOT NULL,
    style TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_attempt TEXT,
    next_attempt TEXT,
    last_response TEXT,
    created TEXT NOT NULL,
    updated TEXT NOT NULL,
    expires TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_retry
    ON event_messages (status, style, retry_count, next_attempt);
CREATE INDEX IF NOT EXISTS idx_messages_subscription
    ON event_messages (subscription_id, id);
CREATE INDEX IF NOT EXISTS idx_messages_expires
    ON event_messages (expires);
"""


def to_db_time(value: datetime | None) -> str | None:
    """Encode a datetime as fixed-width UTC ISO text (sortable)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    """Decode text written by ``to_db_time``."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def to_db_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def from_db_json(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)


class Database:
    """
    Connection owner for the ledger database.

    One connection is shared by all repositories of a process; writes are
    serialized with a lock so each repository call is a single atomic
    statement (or a short explicit transaction).

    Example:
        db = Database(Path("syncledger.db"))
        db.initialize()

        rows = db.query("SELECT * FROM synchronizations")
    """

    def __init__(
        self,
        path: Path | str = ":memory:",
        busy_timeout_seconds: float = 30.0,
    ) -> None:
        """
        Initialize database handle.

        Args:
            path: Path to the SQLite file, or ":memory:"
            busy_timeout_seconds: How long to wait on a locked database
        """
        self.path = str(path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get the database connection, rolling back on error."""
        with self._lock:
            if self._connection is None:
                self._connection = self._create_connection()

            try:
                yield self._connection
            except Exception:
                self._connection.rollback()
                raise

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            self.path,
            check_same_thread=False,
            timeout=self.busy_timeout_seconds,
        )

        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_seconds * 1000)}")

        return conn

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """
        Execute a single write statement and commit.

        Returns:
            The cursor (for ``rowcount`` and ``lastrowid``)
        """
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read query and fetch all rows."""
        with self.connection() as conn:
            return conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Run a read query and fetch the first row."""
        with self.connection() as conn:
            return conn.execute(sql, params).fetchone()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        """Run a read query returning a single value."""
        row = self.query_one(sql, params)
        return row[0] if row else None
