"""
Contract Reconciler - per-object change detection between origin and target.

Coordinates the ledger for a synchronization run:
- Origin enumeration (lazy) and per-record reconciliation under a semaphore
- Content hashing as the change oracle, with a short-circuit on no change
- Mapping, before/after rules and the target write
- Optimistic contract upserts with a re-check against concurrent runs
- One run log plus one contract log row per processed record
- Orphan detection for origin objects that disappeared
- Change events through the delivery engine
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from syncledger.config import Settings
from syncledger.connectors.base import OriginClient, TargetClient, TargetWriteResult
from syncledger.connectors.registry import CollaboratorRegistry
from syncledger.core.delivery import EventDeliveryEngine
from syncledger.core.hasher import ContentHasher
from syncledger.core.orphans import OrphanHandler
from syncledger.core.rules import RuleRunner
from syncledger.core.store import Clock, LedgerStores
from syncledger.errors import (
    ConcurrentWriteError,
    OriginReadError,
    RuleAbort,
    SyncLedgerError,
    TargetWriteError,
    ValidationError,
)
from syncledger.models import (
    CrudAction,
    Event,
    RuleTiming,
    Synchronization,
    SynchronizationContract,
    SynchronizationContractLog,
    SynchronizationLog,
    TargetResult,
    utcnow,
)
from syncledger.utils.logger import context, get_logger


EVENT_TYPE_PREFIX = "syncledger.contract"


class RecordOutcome(str, Enum):
    """What happened to one origin record."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"
    SUPERSEDED = "superseded"


TARGET_RESULTS = {
    RecordOutcome.CREATED: TargetResult.CREATE,
    RecordOutcome.UPDATED: TargetResult.UPDATE,
    RecordOutcome.DELETED: TargetResult.DELETE,
}


@dataclass
class RecordResult:
    """Outcome of reconciling a single record."""

    outcome: RecordOutcome
    origin_id: str | None = None
    contract: SynchronizationContract | None = None
    source: dict[str, Any] | None = None
    target: dict[str, Any] | None = None
    message: str = ""


@dataclass
class RunSummary:
    """Statistics for a reconciliation run."""

    synchronization_id: str
    log_uuid: str | None = None
    found: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    superseded: int = 0
    orphaned: int = 0
    contracts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    follow_ups: list[str] = field(default_factory=list)
    timed_out: bool = False
    test: bool = False
    force: bool = False
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def record(self, result: RecordResult) -> None:
        if result.outcome == RecordOutcome.CREATED:
            self.created += 1
        elif result.outcome == RecordOutcome.UPDATED:
            self.updated += 1
        elif result.outcome == RecordOutcome.DELETED:
            self.deleted += 1
        elif result.outcome == RecordOutcome.SUPERSEDED:
            self.superseded += 1
        elif result.outcome == RecordOutcome.FAILED:
            self.failed += 1
            self.errors.append(f"{result.origin_id}: {result.message}")
        else:
            self.skipped += 1

        if result.contract is not None and result.outcome in TARGET_RESULTS:
            if result.contract.uuid not in self.contracts:
                self.contracts.append(result.contract.uuid)

    @property
    def message(self) -> str:
        if self.timed_out:
            prefix = "Run timed out"
        elif self.errors and not (self.created or self.updated or self.deleted or self.skipped):
            prefix = "Run failed"
        else:
            prefix = "Run completed"
        return (
            f"{prefix}: {self.created} created, {self.updated} updated, "
            f"{self.deleted} deleted, {self.skipped} skipped, {self.failed} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "synchronization_id": self.synchronization_id,
            "log_uuid": self.log_uuid,
            "found": self.found,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
            "superseded": self.superseded,
            "orphaned": self.orphaned,
            "contracts": list(self.contracts),
            "errors": list(self.errors),
            "follow_ups": list(self.follow_ups),
            "timed_out": self.timed_out,
            "test": self.test,
            "force": self.force,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class ContractReconciler:
    """
    Reconciles origin objects against target objects through contracts.

    Example:
        reconciler = ContractReconciler(stores, registry, settings, events=delivery)

        # Full run
        summary = await reconciler.run("people-to-crm")

        # One object, e.g. from a webhook
        summary = await reconciler.reconcile_object("people-to-crm", {"id": "o1", ...})
    """

    def __init__(
        self,
        stores: LedgerStores,
        collaborators: CollaboratorRegistry,
        settings: Settings | None = None,
        events: EventDeliveryEngine | None = None,
        clock: Clock = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            stores: Ledger repositories
            collaborators: Origin/target clients, mapper, rule evaluator
            settings: Application settings
            events: Delivery engine for change events (None = no events)
            clock: Time source
            logger: Logger (defaults to ``syncledger.reconciler``)
        """
        self.stores = stores
        self.collaborators = collaborators
        self.settings = settings or Settings()
        self.options = self.settings.reconcile
        self.events = events
        self.clock = clock
        self.logger = logger or get_logger("reconciler")

        self.hasher = ContentHasher(self.options.hash_algorithm)
        self.rules = RuleRunner(
            collaborators.evaluator,
            collaborators.mapper,
            collaborators.script_runner,
            logger=self.logger.getChild("rules"),
        )
        self.orphans = OrphanHandler(stores.contracts, logger=self.logger.getChild("orphans"))
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # =========================================================================
    # Runs
    # =========================================================================

    async def run(
        self,
        synchronization_id: str,
        force: bool = False,
        test: bool = False,
    ) -> RunSummary:
        """
        Reconcile every origin record of a synchronization.

        Args:
            synchronization_id: Synchronization to run
            force: Ignore hash short-circuits and write every record
            test: Report what would happen without writing anything

        Returns:
            RunSummary with counts and touched contracts

        Raises:
            ConfigurationError: Unknown synchronization or collaborator type
            OriginReadError: Origin enumeration failed (orphans not checked)
        """
        summary, log = self._start(synchronization_id, force, test)

        try:
            sync = self.stores.synchronizations.require(synchronization_id)
            origin = self.collaborators.origin_for(sync.source)
            target = self.collaborators.target_for(sync.target)

            self.logger.info(
                f"Running synchronization {sync.id}" + (" (test)" if test else ""),
                extra=context(synchronization_id=sync.id, log=log.uuid, force=force, test=test),
            )

            seen = await self._reconcile_all(sync, origin, target, log, summary)
            if not summary.timed_out:
                await self._detect_orphans(sync, target, seen, log, summary)
        except SyncLedgerError as e:
            summary.errors.append(e.message)
            self._finish(log, summary, f"Run failed: {e.message}")
            raise
        except Exception as e:
            summary.errors.append(str(e))
            self._finish(log, summary, f"Run failed: {e}")
            raise

        self._finish(log, summary)
        return summary

    async def reconcile_object(
        self,
        synchronization_id: str,
        record: dict[str, Any],
        action: CrudAction | str | None = None,
        force: bool = False,
        test: bool = False,
    ) -> RunSummary:
        """
        Reconcile a single origin object.

        Args:
            synchronization_id: Synchronization the object belongs to
            record: The origin object (must carry the source id field)
            action: ``delete`` removes the target object and retires the
                contract; anything else reconciles normally
            force: Ignore hash short-circuits
            test: Report without writing

        Returns:
            RunSummary for the one-record run
        """
        if action is not None and not isinstance(action, CrudAction):
            action = CrudAction(action)

        summary, log = self._start(synchronization_id, force, test)

        try:
            sync = self.stores.synchronizations.require(synchronization_id)
            target = self.collaborators.target_for(sync.target)
            summary.found = 1
            await self._process(sync, target, record, log, summary, action)
        except SyncLedgerError as e:
            summary.errors.append(e.message)
            self._finish(log, summary, f"Run failed: {e.message}")
            raise
        except Exception as e:
            summary.errors.append(str(e))
            self._finish(log, summary, f"Run failed: {e}")
            raise

        self._finish(log, summary)
        return summary

    def _start(self, synchronization_id: str, force: bool, test: bool) -> tuple[RunSummary, SynchronizationLog]:
        summary = RunSummary(synchronization_id=synchronization_id, force=force, test=test)
        summary.start_time = time.time()
        log = self.stores.logs.create(
            SynchronizationLog(
                synchronization_id=synchronization_id,
                message="Run started",
                test=test,
                force=force,
            )
        )
        summary.log_uuid = log.uuid
        return summary, log

    def _finish(self, log: SynchronizationLog, summary: RunSummary, message: str | None = None) -> None:
        summary.end_time = time.time()
        log.result = summary.to_dict()
        log.message = message or summary.message
        log.execution_time = int(summary.duration_seconds * 1000)
        self.stores.logs.finalize(log)

        self.logger.info(
            log.message,
            extra=context(log=log.uuid, **log.result),
        )

    async def _reconcile_all(
        self,
        sync: Synchronization,
        origin: OriginClient,
        target: TargetClient,
        log: SynchronizationLog,
        summary: RunSummary,
    ) -> set[str]:
        """Enumerate the origin and reconcile records concurrently. Returns seen origin ids."""
        seen: set[str] = set()
        semaphore = asyncio.Semaphore(self.options.concurrency)
        tasks: set[asyncio.Task[None]] = set()
        # Records whose task has not finished; cancelled ones stay here
        in_flight: dict[asyncio.Task[None], dict[str, Any]] = {}

        async def worker(record: dict[str, Any]) -> None:
            try:
                await self._process(sync, target, record, log, summary)
            finally:
                semaphore.release()

        def done(task: asyncio.Task[None]) -> None:
            tasks.discard(task)
            if not task.cancelled():
                in_flight.pop(task, None)

        async def enumerate_all() -> None:
            try:
                async for record in origin.enumerate(sync.source):
                    summary.found += 1
                    origin_id = self._origin_id(sync, record)
                    if origin_id is not None:
                        seen.add(origin_id)

                    await semaphore.acquire()
                    task = asyncio.create_task(worker(record))
                    tasks.add(task)
                    in_flight[task] = record
                    task.add_done_callback(done)
            except SyncLedgerError:
                raise
            except Exception as e:
                raise OriginReadError(f"Origin enumeration failed: {e}", code="origin_error") from e

            if tasks:
                await asyncio.gather(*list(tasks))

        try:
            await asyncio.wait_for(enumerate_all(), timeout=self.options.run_timeout_seconds)
        except asyncio.TimeoutError:
            summary.timed_out = True
            for task in list(tasks):
                task.cancel()
            await asyncio.gather(*list(tasks), return_exceptions=True)
            for task, record in list(in_flight.items()):
                if task.cancelled():
                    self._record_interrupted(sync, record, log, summary)
            self.logger.warning(
                f"Synchronization {sync.id} timed out after {self.options.run_timeout_seconds}s",
                extra=context(synchronization_id=sync.id),
            )
        except Exception:
            # Let in-flight records finish writing before the run aborts
            await asyncio.gather(*list(tasks), return_exceptions=True)
            raise

        return seen

    # =========================================================================
    # Records
    # =========================================================================

    @staticmethod
    def _origin_id(sync: Synchronization, record: dict[str, Any]) -> str | None:
        value = record.get(sync.source.id_field) if isinstance(record, dict) else None
        if value is None or value == "":
            return None
        return str(value)

    def _lock_for(self, synchronization_id: str, origin_id: str) -> asyncio.Lock:
        key = (synchronization_id, origin_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _process(
        self,
        sync: Synchronization,
        target: TargetClient,
        record: dict[str, Any],
        log: SynchronizationLog,
        summary: RunSummary,
        action: CrudAction | None = None,
    ) -> RecordResult:
        """Reconcile one record, count it and write its contract log row."""
        origin_id = self._origin_id(sync, record)

        if origin_id is None:
            result = RecordResult(
                outcome=RecordOutcome.FAILED,
                source=record if isinstance(record, dict) else None,
                message=f"Record has no '{sync.source.id_field}' value",
            )
        else:
            async with self._lock_for(sync.id, origin_id):
                try:
                    if action == CrudAction.DELETE:
                        result = await self._delete_record(sync, target, origin_id, record, summary)
                    else:
                        result = await self.handle_record(sync, target, origin_id, record, summary)
                except RuleAbort as e:
                    result = RecordResult(RecordOutcome.SKIPPED, origin_id, source=record, message=str(e))
                except SyncLedgerError as e:
                    result = RecordResult(RecordOutcome.FAILED, origin_id, source=record, message=e.message)
                except Exception as e:
                    self.logger.exception(
                        f"Unexpected error reconciling {origin_id}",
                        extra=context(synchronization_id=sync.id, origin_id=origin_id),
                    )
                    result = RecordResult(RecordOutcome.FAILED, origin_id, source=record, message=str(e))

        summary.record(result)
        self._log_record(sync, log, summary, result)
        return result

    def _record_interrupted(
        self,
        sync: Synchronization,
        record: dict[str, Any],
        log: SynchronizationLog,
        summary: RunSummary,
    ) -> None:
        """Count and log a record whose processing was cancelled by the run timeout."""
        origin_id = self._origin_id(sync, record)
        contract = self.stores.contracts.find_by_origin(sync.id, origin_id) if origin_id else None
        result = RecordResult(
            RecordOutcome.FAILED,
            origin_id,
            contract,
            source=record,
            message="Run timed out before the record finished",
        )
        summary.record(result)
        self._log_record(sync, log, summary, result)

    async def handle_record(
        self,
        sync: Synchronization,
        target: TargetClient,
        origin_id: str,
        record: dict[str, Any],
        summary: RunSummary,
    ) -> RecordResult:
        """
        Reconcile one origin record against its contract.

        Hash the origin, short-circuit if unchanged, map and compare with the
        last target hash, run before rules, write the target, then upsert the
        contract if nobody else already recorded the same state.

        Raises:
            RuleAbort: A before rule vetoed the action
            TransformationError, ValidationError, TargetWriteError: record failed
        """
        force, test = summary.force, summary.test
        origin_hash = self.hasher.hash(record)
        contract = self.stores.contracts.find_by_origin(sync.id, origin_id)

        if (
            contract is not None
            and contract.target_id is not None
            and not force
            and self.hasher.compare(contract.origin_hash, origin_hash)
        ):
            return RecordResult(RecordOutcome.SKIPPED, origin_id, contract, record, message="Origin unchanged")

        mapped = (
            self.collaborators.mapper.transform(record, sync.mapping)
            if sync.mapping is not None
            else copy.deepcopy(record)
        )
        target_hash = self.hasher.hash(mapped)

        has_target = contract is not None and contract.target_id is not None
        action = CrudAction.UPDATE if has_target else CrudAction.CREATE

        if (
            contract is not None
            and contract.target_id is not None
            and not force
            and self.hasher.compare(contract.target_hash, target_hash)
        ):
            if not test:
                contract.origin_hash = origin_hash
                try:
                    self.stores.contracts.update(contract)
                except ConcurrentWriteError:
                    return RecordResult(RecordOutcome.SUPERSEDED, origin_id, contract, record, mapped,
                                        "Contract changed by a concurrent run")
            return RecordResult(RecordOutcome.SKIPPED, origin_id, contract, record, mapped, "Target unchanged")

        rule_context = {"origin": record, "synchronization_id": sync.id, "origin_id": origin_id}
        data = await self.rules.apply(sync.rules, action, RuleTiming.BEFORE, rule_context, mapped, summary.follow_ups)
        self._validate(sync, data)

        outcome = RecordOutcome.UPDATED if action == CrudAction.UPDATE else RecordOutcome.CREATED
        if test:
            return RecordResult(outcome, origin_id, contract, record, data, f"Would {action.value}")

        # Another run may have written this object while rules and mapping ran
        fresh = self.stores.contracts.find_by_origin(sync.id, origin_id)
        if self._already_recorded(fresh, origin_hash, target_hash, force):
            return RecordResult(RecordOutcome.SUPERSEDED, origin_id, fresh, record, data,
                                "Already reconciled by a concurrent run")
        if fresh is not None and (contract is None or fresh.version != contract.version):
            contract = fresh
            if contract.target_id is not None and action == CrudAction.CREATE:
                action, outcome = CrudAction.UPDATE, RecordOutcome.UPDATED

        written = await self._write_target(sync, target, data, action, contract.target_id if contract else None)

        if contract is None:
            contract = SynchronizationContract(synchronization_id=sync.id, origin_id=origin_id)
        expected_version = contract.version
        contract.origin_hash = origin_hash
        contract.target_id = written.target_id
        contract.target_hash = target_hash

        fresh = self.stores.contracts.find_by_origin(sync.id, origin_id)
        if fresh is not None and fresh.version != expected_version:
            if self._already_recorded(fresh, origin_hash, target_hash, force=False):
                return RecordResult(RecordOutcome.SUPERSEDED, origin_id, fresh, record, data,
                                    "Already reconciled by a concurrent run")
            contract.id, contract.uuid, contract.version = fresh.id, fresh.uuid, fresh.version

        try:
            if contract.id is None:
                self.stores.contracts.insert(contract)
            else:
                self.stores.contracts.update(contract)
        except ConcurrentWriteError as e:
            return RecordResult(RecordOutcome.SUPERSEDED, origin_id, contract, record, data, e.message)

        snapshot = written.record or data
        snapshot = await self.rules.apply(
            sync.rules, action, RuleTiming.AFTER,
            {**rule_context, "contract": contract.uuid}, snapshot, summary.follow_ups,
        )

        await self._emit(sync, outcome, contract, snapshot, summary)
        return RecordResult(outcome, origin_id, contract, record, snapshot)

    async def _delete_record(
        self,
        sync: Synchronization,
        target: TargetClient,
        origin_id: str,
        record: dict[str, Any],
        summary: RunSummary,
    ) -> RecordResult:
        """Delete the target object of ``origin_id`` and retire its contract."""
        contract = self.stores.contracts.find_by_origin(sync.id, origin_id)
        if contract is None or contract.target_id is None:
            if contract is not None and not summary.test:
                self.orphans.retire(contract)
            return RecordResult(RecordOutcome.SKIPPED, origin_id, contract, record, message="Nothing to delete")

        rule_context = {"origin": record, "synchronization_id": sync.id, "origin_id": origin_id}
        await self.rules.apply(sync.rules, CrudAction.DELETE, RuleTiming.BEFORE, rule_context, {}, summary.follow_ups)

        if summary.test:
            return RecordResult(RecordOutcome.DELETED, origin_id, contract, record, message="Would delete")

        await self._delete_target(sync, target, contract.target_id)
        self.orphans.retire(contract)
        await self.rules.apply(sync.rules, CrudAction.DELETE, RuleTiming.AFTER, rule_context, {}, summary.follow_ups)
        await self._emit(sync, RecordOutcome.DELETED, contract, None, summary)
        return RecordResult(RecordOutcome.DELETED, origin_id, contract, record)

    def _already_recorded(
        self,
        contract: SynchronizationContract | None,
        origin_hash: str,
        target_hash: str,
        force: bool,
    ) -> bool:
        return (
            contract is not None
            and not force
            and contract.target_id is not None
            and self.hasher.compare(contract.origin_hash, origin_hash)
            and self.hasher.compare(contract.target_hash, target_hash)
        )

    @staticmethod
    def _validate(sync: Synchronization, data: dict[str, Any]) -> None:
        missing = [name for name in sync.target.required_fields if data.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required target field(s): {', '.join(missing)}",
                code="required_fields",
            )

    async def _write_target(
        self,
        sync: Synchronization,
        target: TargetClient,
        data: dict[str, Any],
        action: CrudAction,
        target_id: str | None,
    ) -> TargetWriteResult:
        try:
            result = await asyncio.wait_for(
                target.write(sync.target, data, action, target_id),
                timeout=self.options.record_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise TargetWriteError(
                f"Target {action.value} timed out after {self.options.record_timeout_seconds}s"
            ) from None
        if result.target_id is None:
            raise TargetWriteError("Target did not return an object id")
        return result

    async def _delete_target(self, sync: Synchronization, target: TargetClient, target_id: str) -> None:
        try:
            await asyncio.wait_for(
                target.delete(sync.target, target_id),
                timeout=self.options.record_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise TargetWriteError(
                f"Target delete timed out after {self.options.record_timeout_seconds}s"
            ) from None

    # =========================================================================
    # Orphans
    # =========================================================================

    async def _detect_orphans(
        self,
        sync: Synchronization,
        target: TargetClient,
        seen: set[str],
        log: SynchronizationLog,
        summary: RunSummary,
    ) -> None:
        """Retire contracts whose origin object was not seen in this run."""
        orphaned: list[tuple[str, SynchronizationContract]] = []
        for contract in self.stores.contracts.iter_contracts(sync.id):
            if contract.origin_id is not None and contract.origin_id not in seen:
                orphaned.append((contract.origin_id, contract))

        for origin_id, contract in orphaned:
            summary.orphaned += 1

            if summary.test:
                outcome = RecordOutcome.DELETED if sync.delete_orphans and contract.target_id else RecordOutcome.SKIPPED
                result = RecordResult(outcome, origin_id, contract, message="Origin removed (test)")
            elif sync.delete_orphans and contract.target_id is not None:
                async with self._lock_for(sync.id, origin_id):
                    try:
                        await self._delete_target(sync, target, contract.target_id)
                    except SyncLedgerError as e:
                        result = RecordResult(RecordOutcome.FAILED, origin_id, contract, message=e.message)
                    else:
                        self.orphans.retire(contract)
                        await self._emit(sync, RecordOutcome.DELETED, contract, None, summary)
                        result = RecordResult(RecordOutcome.DELETED, origin_id, contract,
                                              message="Origin removed, target deleted")
            else:
                async with self._lock_for(sync.id, origin_id):
                    released = self.orphans.release_origin(contract)
                result = RecordResult(RecordOutcome.SKIPPED, origin_id, released or contract,
                                      message="Origin removed")

            summary.record(result)
            self._log_record(sync, log, summary, result)

    # =========================================================================
    # Logging and events
    # =========================================================================

    def _log_record(
        self,
        sync: Synchronization,
        log: SynchronizationLog,
        summary: RunSummary,
        result: RecordResult,
    ) -> None:
        contract_id = result.contract.id if result.contract is not None else None
        message = result.message
        if result.outcome in (RecordOutcome.FAILED, RecordOutcome.SUPERSEDED):
            message = f"{result.outcome.value}: {message}"

        self.stores.contract_logs.create(
            SynchronizationContractLog(
                synchronization_id=sync.id,
                synchronization_log_id=log.id,
                synchronization_contract_id=contract_id,
                target_result=TARGET_RESULTS.get(result.outcome, TargetResult.SKIP),
                source=result.source,
                target=result.target,
                message=message,
                test=summary.test,
                force=summary.force,
            )
        )

        level = logging.WARNING if result.outcome == RecordOutcome.FAILED else logging.DEBUG
        self.logger.log(
            level,
            f"{result.origin_id}: {result.outcome.value} {result.message}".rstrip(),
            extra=context(synchronization_id=sync.id, origin_id=result.origin_id, outcome=result.outcome.value),
        )

    async def _emit(
        self,
        sync: Synchronization,
        outcome: RecordOutcome,
        contract: SynchronizationContract,
        snapshot: dict[str, Any] | None,
        summary: RunSummary,
    ) -> None:
        if self.events is None or summary.test:
            return

        event = Event(
            type=f"{EVENT_TYPE_PREFIX}.{outcome.value}",
            source=f"syncledger/synchronizations/{sync.id}",
            subject=contract.uuid,
            data={
                "synchronization_id": sync.id,
                "contract": contract.to_dict(),
                "object": snapshot,
            },
        )
        try:
            await self.events.publish(event)
        except Exception as e:
            self.logger.exception(
                f"Failed to publish {event.type} for contract {contract.uuid}",
                extra=context(synchronization_id=sync.id, contract=contract.uuid),
            )
            summary.errors.append(f"event {event.type}: {e}")
