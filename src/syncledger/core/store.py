"""
Ledger Stores - repositories for synchronization state.

Provides narrow, storage-agnostic repositories for:
- Synchronization configurations (and their schedule)
- Synchronization contracts (the origin <-> target ledger)
- Run logs and per-object contract logs (append-only, expiring)

Contract writes are optimistic: updates compare ``version`` and inserts
rely on the unique ``(synchronization_id, origin_id)`` key. A lost race
raises ConcurrentWriteError instead of overwriting another writer's row.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from syncledger.config import Settings
from syncledger.connectors.sqlite import (
    Database,
    from_db_json,
    from_db_time,
    to_db_json,
    to_db_time,
)
from syncledger.errors import ConcurrentWriteError, ConfigurationError
from syncledger.models import (
    Synchronization,
    SynchronizationContract,
    SynchronizationContractLog,
    SynchronizationLog,
    TargetResult,
    utcnow,
)


Clock = Callable[[], datetime]


class SynchronizationStore:
    """
    Repository for synchronization configurations.

    Example:
        store = SynchronizationStore(db)
        store.save(Synchronization.from_map(config))

        for sync in store.find_due():
            ...
    """

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    def _from_row(self, row: sqlite3.Row) -> Synchronization:
        data = json.loads(row["config"])
        data["last_run"] = row["last_run"]
        data["next_run"] = row["next_run"]
        data["enabled"] = bool(row["enabled"])
        return Synchronization.from_map({k: v for k, v in data.items() if v is not None})

    def save(self, synchronization: Synchronization) -> Synchronization:
        """Insert or replace a synchronization configuration."""
        now = to_db_time(self.clock())
        config = synchronization.to_dict()
        for key in ("last_run", "next_run", "enabled"):
            config.pop(key)

        self.db.execute(
            """
            INSERT INTO synchronizations
                (id, name, config, interval_seconds, enabled, last_run, next_run, created, updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                config = excluded.config,
                interval_seconds = excluded.interval_seconds,
                enabled = excluded.enabled,
                last_run = excluded.last_run,
                next_run = excluded.next_run,
                updated = excluded.updated
            """,
            (
                synchronization.id,
                synchronization.name,
                json.dumps(config),
                synchronization.interval_seconds,
                int(synchronization.enabled),
                to_db_time(synchronization.last_run),
                to_db_time(synchronization.next_run),
                now,
                now,
            ),
        )
        return synchronization

    def get(self, synchronization_id: str) -> Synchronization | None:
        row = self.db.query_one(
            "SELECT * FROM synchronizations WHERE id = ?", (synchronization_id,)
        )
        return self._from_row(row) if row else None

    def require(self, synchronization_id: str) -> Synchronization:
        """Get a synchronization or fail the caller's run."""
        synchronization = self.get(synchronization_id)
        if synchronization is None:
            raise ConfigurationError(
                f"Synchronization not found: {synchronization_id}",
                code="synchronization_missing",
            )
        return synchronization

    def list_all(self) -> list[Synchronization]:
        rows = self.db.query("SELECT * FROM synchronizations ORDER BY id")
        return [self._from_row(row) for row in rows]

    def find_due(self, now: datetime | None = None) -> list[Synchronization]:
        """Enabled synchronizations whose next run is unset or has passed."""
        moment = to_db_time(now or self.clock())
        rows = self.db.query(
            """
            SELECT * FROM synchronizations
            WHERE enabled = 1 AND (next_run IS NULL OR next_run <= ?)
            ORDER BY next_run IS NOT NULL, next_run, id
            """,
            (moment,),
        )
        return [self._from_row(row) for row in rows]

    def mark_ran(self, synchronization_id: str, last_run: datetime, next_run: datetime) -> None:
        self.db.execute(
            "UPDATE synchronizations SET last_run = ?, next_run = ?, updated = ? WHERE id = ?",
            (to_db_time(last_run), to_db_time(next_run), to_db_time(self.clock()), synchronization_id),
        )

    def mark_due(self, synchronization_id: str) -> bool:
        """Make a synchronization eligible on the next scheduler tick."""
        now = to_db_time(self.clock())
        cursor = self.db.execute(
            "UPDATE synchronizations SET next_run = ?, updated = ? WHERE id = ?",
            (now, now, synchronization_id),
        )
        return cursor.rowcount > 0

    def delete(self, synchronization_id: str) -> bool:
        """Delete a synchronization together with its contracts."""
        with self.db.connection() as conn:
            conn.execute(
                "DELETE FROM synchronization_contracts WHERE synchronization_id = ?",
                (synchronization_id,),
            )
            cursor = conn.execute(
                "DELETE FROM synchronizations WHERE id = ?", (synchronization_id,)
            )
            conn.commit()
            return cursor.rowcount > 0


class ContractStore:
    """
    Repository for synchronization contracts.

    Lookups:
    - by ``(synchronization_id, origin_id)`` (unique when origin is known)
    - by ``(synchronization_id, target_id)``
    - by object identifier on either side, across synchronizations
    """

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SynchronizationContract:
        return SynchronizationContract(
            id=row["id"],
            uuid=row["uuid"],
            synchronization_id=row["synchronization_id"],
            origin_id=row["origin_id"],
            origin_hash=row["origin_hash"],
            target_id=row["target_id"],
            target_hash=row["target_hash"],
            version=row["version"],
            created=from_db_time(row["created"]),
            updated=from_db_time(row["updated"]),
        )

    def get(self, contract_id: int) -> SynchronizationContract | None:
        row = self.db.query_one(
            "SELECT * FROM synchronization_contracts WHERE id = ?", (contract_id,)
        )
        return self._from_row(row) if row else None

    def find_by_uuid(self, uuid: str) -> SynchronizationContract | None:
        row = self.db.query_one(
            "SELECT * FROM synchronization_contracts WHERE uuid = ?", (uuid,)
        )
        return self._from_row(row) if row else None

    def find_by_origin(self, synchronization_id: str, origin_id: str) -> SynchronizationContract | None:
        row = self.db.query_one(
            """
            SELECT * FROM synchronization_contracts
            WHERE synchronization_id = ? AND origin_id = ?
            """,
            (synchronization_id, origin_id),
        )
        return self._from_row(row) if row else None

    def find_by_target(self, synchronization_id: str, target_id: str) -> SynchronizationContract | None:
        row = self.db.query_one(
            """
            SELECT * FROM synchronization_contracts
            WHERE synchronization_id = ? AND target_id = ?
            ORDER BY id LIMIT 1
            """,
            (synchronization_id, target_id),
        )
        return self._from_row(row) if row else None

    def find_by_object(
        self,
        object_id: str,
        synchronization_id: str | None = None,
    ) -> list[SynchronizationContract]:
        """Contracts where ``object_id`` is the origin or the target."""
        sql = """
            SELECT * FROM synchronization_contracts
            WHERE (origin_id = ? OR target_id = ?)
        """
        params: list[Any] = [object_id, object_id]
        if synchronization_id is not None:
            sql += " AND synchronization_id = ?"
            params.append(synchronization_id)
        rows = self.db.query(sql + " ORDER BY id", params)
        return [self._from_row(row) for row in rows]

    def iter_contracts(
        self,
        synchronization_id: str,
        page_size: int = 500,
    ) -> Iterator[SynchronizationContract]:
        """
        Stream every contract of a synchronization.

        Uses keyset pagination on ``id`` so rows deleted or updated while
        iterating never cause skips or repeats.
        """
        last_id = 0
        while True:
            rows = self.db.query(
                """
                SELECT * FROM synchronization_contracts
                WHERE synchronization_id = ? AND id > ?
                ORDER BY id LIMIT ?
                """,
                (synchronization_id, last_id, page_size),
            )
            if not rows:
                return
            for row in rows:
                yield self._from_row(row)
            last_id = rows[-1]["id"]

    def insert(self, contract: SynchronizationContract) -> SynchronizationContract:
        """
        Insert a new contract.

        Raises:
            ConcurrentWriteError: another writer already created a contract
                for the same ``(synchronization_id, origin_id)``
        """
        now = self.clock()
        try:
            cursor = self.db.execute(
                """
                INSERT INTO synchronization_contracts
                    (uuid, synchronization_id, origin_id, origin_hash,
                     target_id, target_hash, version, created, updated)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    contract.uuid,
                    contract.synchronization_id,
                    contract.origin_id,
                    contract.origin_hash,
                    contract.target_id,
                    contract.target_hash,
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConcurrentWriteError(
                f"Contract already exists for {contract.synchronization_id}/{contract.origin_id}: {e}"
            ) from e

        contract.id = cursor.lastrowid
        contract.version = 1
        contract.created = now
        contract.updated = now
        return contract

    def update(self, contract: SynchronizationContract) -> SynchronizationContract:
        """
        Write a contract back if nobody changed it since it was read.

        Raises:
            ConcurrentWriteError: the stored version differs from ``contract.version``
        """
        if contract.is_empty:
            raise ValueError("A contract without origin and target must be deleted, not updated")

        now = self.clock()
        try:
            cursor = self.db.execute(
                """
                UPDATE synchronization_contracts SET
                    origin_id = ?, origin_hash = ?, target_id = ?, target_hash = ?,
                    version = version + 1, updated = ?
                WHERE id = ? AND version = ?
                """,
                (
                    contract.origin_id,
                    contract.origin_hash,
                    contract.target_id,
                    contract.target_hash,
                    to_db_time(now),
                    contract.id,
                    contract.version,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConcurrentWriteError(f"Contract {contract.uuid} conflicts with another: {e}") from e

        if cursor.rowcount == 0:
            raise ConcurrentWriteError(
                f"Contract {contract.uuid} changed since version {contract.version}"
            )
        contract.version += 1
        contract.updated = now
        return contract

    def delete(self, contract: SynchronizationContract) -> bool:
        """Delete a contract. Returns False if it was already gone."""
        cursor = self.db.execute(
            "DELETE FROM synchronization_contracts WHERE id = ?", (contract.id,)
        )
        return cursor.rowcount > 0

    def count(self, synchronization_id: str | None = None) -> int:
        if synchronization_id is None:
            return self.db.scalar("SELECT COUNT(*) FROM synchronization_contracts")
        return self.db.scalar(
            "SELECT COUNT(*) FROM synchronization_contracts WHERE synchronization_id = ?",
            (synchronization_id,),
        )


class SynchronizationLogStore:
    """Repository for per-run synchronization logs."""

    def __init__(self, db: Database, retention_days: int = 30, clock: Clock = utcnow) -> None:
        self.db = db
        self.retention_days = retention_days
        self.clock = clock

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SynchronizationLog:
        return SynchronizationLog(
            id=row["id"],
            uuid=row["uuid"],
            synchronization_id=row["synchronization_id"],
            result=from_db_json(row["result"]) or {},
            message=row["message"],
            test=bool(row["test"]),
            force=bool(row["force"]),
            execution_time=row["execution_time"],
            created=from_db_time(row["created"]),
            expires=from_db_time(row["expires"]),
            size=row["size"],
        )

    def create(self, log: SynchronizationLog) -> SynchronizationLog:
        """Append a run log, stamping ``created`` and a default ``expires``."""
        log.created = self.clock()
        if log.expires is None:
            log.expires = log.created + timedelta(days=self.retention_days)
        log.calculate_size()

        cursor = self.db.execute(
            """
            INSERT INTO synchronization_logs
                (uuid, synchronization_id, result, message, test, force,
                 execution_time, created, expires, size)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.uuid,
                log.synchronization_id,
                to_db_json(log.result),
                log.message,
                int(log.test),
                int(log.force),
                log.execution_time,
                to_db_time(log.created),
                to_db_time(log.expires),
                log.size,
            ),
        )
        log.id = cursor.lastrowid
        return log

    def finalize(self, log: SynchronizationLog) -> SynchronizationLog:
        """Attach the final result of a run to its log."""
        log.calculate_size()
        self.db.execute(
            """
            UPDATE synchronization_logs
            SET result = ?, message = ?, execution_time = ?, size = ?
            WHERE id = ?
            """,
            (to_db_json(log.result), log.message, log.execution_time, log.size, log.id),
        )
        return log

    def get(self, log_id: int) -> SynchronizationLog | None:
        row = self.db.query_one("SELECT * FROM synchronization_logs WHERE id = ?", (log_id,))
        return self._from_row(row) if row else None

    def find_by_uuid(self, uuid: str) -> SynchronizationLog | None:
        row = self.db.query_one("SELECT * FROM synchronization_logs WHERE uuid = ?", (uuid,))
        return self._from_row(row) if row else None

    def recent(self, synchronization_id: str | None = None, limit: int = 20) -> list[SynchronizationLog]:
        if synchronization_id is None:
            rows = self.db.query(
                "SELECT * FROM synchronization_logs ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.query(
                """
                SELECT * FROM synchronization_logs
                WHERE synchronization_id = ? ORDER BY id DESC LIMIT ?
                """,
                (synchronization_id, limit),
            )
        return [self._from_row(row) for row in rows]

    def count(self) -> int:
        return self.db.scalar("SELECT COUNT(*) FROM synchronization_logs")

    def size(self) -> int:
        return self.db.scalar("SELECT COALESCE(SUM(size), 0) FROM synchronization_logs")

    def delete_expired(self, now: datetime | None = None) -> int:
        cursor = self.db.execute(
            "DELETE FROM synchronization_logs WHERE expires < ?",
            (to_db_time(now or self.clock()),),
        )
        return cursor.rowcount


class ContractLogStore:
    """Repository for per-object synchronization contract logs."""

    def __init__(
        self,
        db: Database,
        retention_days: int = 7,
        max_snapshot_bytes: int = 64 * 1024,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.retention_days = retention_days
        self.max_snapshot_bytes = max_snapshot_bytes
        self.clock = clock

    def _cap(self, snapshot: dict[str, Any] | None) -> dict[str, Any] | None:
        if snapshot is None:
            return None
        size = len(json.dumps(snapshot, default=str).encode("utf-8"))
        if size <= self.max_snapshot_bytes:
            return snapshot
        return {"_truncated": True, "size": size}

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SynchronizationContractLog:
        return SynchronizationContractLog(
            id=row["id"],
            uuid=row["uuid"],
            synchronization_id=row["synchronization_id"],
            synchronization_contract_id=row["synchronization_contract_id"],
            synchronization_log_id=row["synchronization_log_id"],
            source=from_db_json(row["source"]),
            target=from_db_json(row["target"]),
            target_result=TargetResult(row["target_result"]),
            message=row["message"],
            test=bool(row["test"]),
            force=bool(row["force"]),
            created=from_db_time(row["created"]),
            expires=from_db_time(row["expires"]),
            size=row["size"],
        )

    def create(self, entry: SynchronizationContractLog) -> SynchronizationContractLog:
        """Append a contract log row with capped snapshots, size and expiry."""
        entry.source = self._cap(entry.source)
        entry.target = self._cap(entry.target)
        entry.created = self.clock()
        if entry.expires is None:
            entry.expires = entry.created + timedelta(days=self.retention_days)
        entry.calculate_size()

        cursor = self.db.execute(
            """
            INSERT INTO synchronization_contract_logs
                (uuid, synchronization_id, synchronization_contract_id,
                 synchronization_log_id, source, target, target_result,
                 message, test, force, created, expires, size)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.uuid,
                entry.synchronization_id,
                entry.synchronization_contract_id,
                entry.synchronization_log_id,
                to_db_json(entry.source),
                to_db_json(entry.target),
                entry.target_result.value,
                entry.message,
                int(entry.test),
                int(entry.force),
                to_db_time(entry.created),
                to_db_time(entry.expires),
                entry.size,
            ),
        )
        entry.id = cursor.lastrowid
        return entry

    def find_by_run(self, synchronization_log_id: int) -> list[SynchronizationContractLog]:
        rows = self.db.query(
            """
            SELECT * FROM synchronization_contract_logs
            WHERE synchronization_log_id = ? ORDER BY id
            """,
            (synchronization_log_id,),
        )
        return [self._from_row(row) for row in rows]

    def find_by_contract(self, contract_id: int) -> list[SynchronizationContractLog]:
        rows = self.db.query(
            """
            SELECT * FROM synchronization_contract_logs
            WHERE synchronization_contract_id = ? ORDER BY id
            """,
            (contract_id,),
        )
        return [self._from_row(row) for row in rows]

    def count(self) -> int:
        return self.db.scalar("SELECT COUNT(*) FROM synchronization_contract_logs")

    def size(self) -> int:
        return self.db.scalar("SELECT COALESCE(SUM(size), 0) FROM synchronization_contract_logs")

    def delete_expired(self, now: datetime | None = None) -> int:
        cursor = self.db.execute(
            "DELETE FROM synchronization_contract_logs WHERE expires < ?",
            (to_db_time(now or self.clock()),),
        )
        return cursor.rowcount


@dataclass
class LedgerStores:
    """The repositories a reconciliation run writes to."""

    synchronizations: SynchronizationStore
    contracts: ContractStore
    logs: SynchronizationLogStore
    contract_logs: ContractLogStore

    @classmethod
    def from_database(
        cls,
        db: Database,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> "LedgerStores":
        settings = settings or Settings()
        return cls(
            synchronizations=SynchronizationStore(db, clock),
            contracts=ContractStore(db, clock),
            logs=SynchronizationLogStore(
                db, settings.retention.synchronization_log_days, clock
            ),
            contract_logs=ContractLogStore(
                db,
                settings.retention.contract_log_days,
                settings.reconcile.max_snapshot_bytes,
                clock,
            ),
        )
