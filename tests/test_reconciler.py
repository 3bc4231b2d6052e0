"""Tests for the contract reconciler."""

import asyncio
from typing import Any

import pytest

from conftest import FakeTarget, ListOrigin, make_sync
from syncledger.connectors.base import TargetWriteResult
from syncledger.core.ledger import Ledger
from syncledger.core.reconciler import RunSummary
from syncledger.errors import ConfigurationError, OriginReadError
from syncledger.models import (
    CrudAction,
    EventSubscription,
    SubscriptionStyle,
    SynchronizationContract,
    TargetDescriptor,
    TargetResult,
)


def _contract_logs(ledger: Ledger, summary: RunSummary) -> list:
    log = ledger.stores.logs.find_by_uuid(summary.log_uuid)
    return ledger.stores.contract_logs.find_by_run(log.id)


def _audit(ledger: Ledger) -> EventSubscription:
    return ledger.subscriptions.create(EventSubscription(reference="audit", style=SubscriptionStyle.PULL))


class TestLifecycle:
    """First sync, unchanged resync, change, and removal of one object."""

    @pytest.mark.asyncio()
    async def test_first_sync_creates_contract(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test a new origin record creates a target object and a contract."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}]

        summary = await ledger.reconciler.run("people")

        assert summary.found == 1
        assert summary.created == 1
        contract = ledger.stores.contracts.find_by_origin("people", "o1")
        assert contract.target_id == "t1"
        assert contract.origin_hash is not None
        assert summary.contracts == [contract.uuid]
        assert target.objects["t1"] == {"id": "o1", "name": "Alice"}

        entries = _contract_logs(ledger, summary)
        assert [entry.target_result for entry in entries] == [TargetResult.CREATE]
        assert entries[0].synchronization_contract_id == contract.id

    @pytest.mark.asyncio()
    async def test_unchanged_resync_skips(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test an unchanged record makes no target call."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")
        before = ledger.stores.contracts.find_by_origin("people", "o1")

        summary = await ledger.reconciler.run("people")

        after = ledger.stores.contracts.find_by_origin("people", "o1")
        assert summary.skipped == 1
        assert summary.created == summary.updated == 0
        assert target.writes == 1
        assert (after.origin_hash, after.target_hash, after.version) == (
            before.origin_hash, before.target_hash, before.version
        )
        assert _contract_logs(ledger, summary)[0].target_result == TargetResult.SKIP

    @pytest.mark.asyncio()
    async def test_changed_record_updates(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test a changed record updates the same target object."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")
        before = ledger.stores.contracts.find_by_origin("people", "o1")

        origin.records = [{"id": "o1", "name": "Alicia"}]
        summary = await ledger.reconciler.run("people")

        after = ledger.stores.contracts.find_by_origin("people", "o1")
        assert summary.updated == 1
        assert target.calls[-1] == ("update", "t1")
        assert after.origin_hash != before.origin_hash
        assert after.target_id == "t1"
        assert _contract_logs(ledger, summary)[0].target_result == TargetResult.UPDATE

    @pytest.mark.asyncio()
    async def test_removed_origin_clears_origin_side(
        self, ledger: Ledger, origin: ListOrigin
    ) -> None:
        """Test a record missing from a full run is retired from its contract."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")

        origin.records = []
        summary = await ledger.reconciler.run("people")

        assert summary.orphaned == 1
        assert ledger.stores.contracts.find_by_origin("people", "o1") is None
        contract = ledger.stores.contracts.find_by_target("people", "t1")
        assert contract.origin_id is None
        assert contract.origin_hash is None

    @pytest.mark.asyncio()
    async def test_removed_origin_without_target_deletes_contract(
        self, ledger: Ledger, origin: ListOrigin
    ) -> None:
        """Test an origin-only contract is deleted once the origin is gone."""
        ledger.stores.synchronizations.save(make_sync())
        ledger.stores.contracts.insert(SynchronizationContract("people", origin_id="o9", origin_hash="x"))

        summary = await ledger.reconciler.run("people")

        assert summary.orphaned == 1
        assert ledger.stores.contracts.count("people") == 0

    @pytest.mark.asyncio()
    async def test_delete_orphans_removes_target(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test delete_orphans deletes the target object and the contract."""
        ledger.stores.synchronizations.save(make_sync(deleteOrphans=True))
        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")

        origin.records = []
        summary = await ledger.reconciler.run("people")

        assert summary.deleted == 1
        assert target.calls[-1] == ("delete", "t1")
        assert "t1" not in target.objects
        assert ledger.stores.contracts.count("people") == 0

    @pytest.mark.asyncio()
    async def test_removed_origin_keeps_target_with_same_id(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test a target reusing the origin id keeps its side of the contract."""
        target.keep_ids = True
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}, {"id": "o2", "name": "Bob"}]
        await ledger.reconciler.run("people")

        origin.records = [{"id": "o2", "name": "Bob"}]
        summary = await ledger.reconciler.run("people")

        assert summary.orphaned == 1
        assert sorted(target.objects) == ["o1", "o2"]
        assert ledger.stores.contracts.count("people") == 2
        released = ledger.stores.contracts.find_by_target("people", "o1")
        assert released.origin_id is None
        assert released.target_hash is not None
        kept = ledger.stores.contracts.find_by_origin("people", "o2")
        assert kept.target_id == "o2"

    @pytest.mark.asyncio()
    async def test_removed_origin_leaves_other_targets_alone(
        self, ledger: Ledger, origin: ListOrigin
    ) -> None:
        """Test a vanished origin id only clears origin sides, never a matching target id."""
        ledger.stores.synchronizations.save(make_sync())
        ledger.stores.contracts.insert(
            SynchronizationContract("people", origin_id="o1", origin_hash="a", target_id="x1", target_hash="b")
        )
        ledger.stores.contracts.insert(
            SynchronizationContract("people", origin_id="o2", origin_hash="c", target_id="o1", target_hash="d")
        )
        origin.records = [{"id": "o2", "name": "Bob"}]

        summary = await ledger.reconciler.run("people")

        assert summary.orphaned == 1
        gone = ledger.stores.contracts.find_by_target("people", "x1")
        assert gone.origin_id is None
        other = ledger.stores.contracts.find_by_origin("people", "o2")
        assert other.target_id == "o1"
        assert other.target_hash is not None


class TestRunModes:
    """Force and test runs."""

    @pytest.mark.asyncio()
    async def test_force_rewrites_unchanged(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test force ignores the hash short-circuit."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")

        summary = await ledger.reconciler.run("people", force=True)

        assert summary.updated == 1
        assert target.writes == 2
        assert _contract_logs(ledger, summary)[0].force is True

    @pytest.mark.asyncio()
    async def test_test_mode_writes_nothing(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test a test run reports outcomes without contracts, writes or events."""
        ledger.stores.synchronizations.save(make_sync())
        _audit(ledger)
        origin.records = [{"id": "o1"}, {"id": "o2"}]

        summary = await ledger.reconciler.run("people", test=True)

        assert summary.created == 2
        assert summary.test is True
        assert target.calls == []
        assert ledger.stores.contracts.count() == 0
        assert ledger.messages.count() == 0
        assert ledger.stores.logs.find_by_uuid(summary.log_uuid).test is True
        assert all(entry.test for entry in _contract_logs(ledger, summary))


class TestFailures:
    """Per-record failures never abort the run."""

    @pytest.mark.asyncio()
    async def test_failed_write_keeps_previous_hashes(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test a target failure leaves the contract as it was."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}, {"id": "o2", "name": "Bob"}]
        await ledger.reconciler.run("people")
        before = ledger.stores.contracts.find_by_origin("people", "o1")

        origin.records = [{"id": "o1", "name": "Alicia"}, {"id": "o2", "name": "Robert"}]
        target.fail_ids = {"o1"}
        summary = await ledger.reconciler.run("people")

        assert summary.failed == 1
        assert summary.updated == 1
        assert summary.errors and summary.errors[0].startswith("o1:")
        after = ledger.stores.contracts.find_by_origin("people", "o1")
        assert after.origin_hash == before.origin_hash
        assert after.version == before.version

        messages = [entry.message for entry in _contract_logs(ledger, summary)]
        assert any(message.startswith("failed:") for message in messages)

    @pytest.mark.asyncio()
    async def test_missing_id_fails_record(self, ledger: Ledger, origin: ListOrigin) -> None:
        """Test a record without its id field is logged as failed."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"name": "nobody"}]

        summary = await ledger.reconciler.run("people")

        assert summary.failed == 1
        assert ledger.stores.contracts.count() == 0

    @pytest.mark.asyncio()
    async def test_required_fields(self, ledger: Ledger, origin: ListOrigin, target: FakeTarget) -> None:
        """Test records missing required target fields fail before the write."""
        ledger.stores.synchronizations.save(
            make_sync(target={"type": "memory", "requiredFields": ["email"]})
        )
        origin.records = [{"id": "o1"}, {"id": "o2", "email": "b@example.com"}]

        summary = await ledger.reconciler.run("people")

        assert summary.failed == 1
        assert summary.created == 1
        assert target.writes == 1

    @pytest.mark.asyncio()
    async def test_origin_failure_aborts_without_orphans(
        self, ledger: Ledger, origin: ListOrigin
    ) -> None:
        """Test an enumeration error fails the run and retires nothing."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1"}, {"id": "o2"}]
        await ledger.reconciler.run("people")

        origin.fail_after = 1
        with pytest.raises(OriginReadError):
            await ledger.reconciler.run("people")

        assert ledger.stores.contracts.find_by_origin("people", "o2") is not None
        latest = ledger.stores.logs.recent("people", limit=1)[0]
        assert latest.message.startswith("Run failed")

    @pytest.mark.asyncio()
    async def test_unknown_synchronization(self, ledger: Ledger) -> None:
        """Test running an unknown synchronization raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            await ledger.reconciler.run("missing")

    @pytest.mark.asyncio()
    async def test_unexpected_origin_error_is_wrapped(
        self, ledger: Ledger, origin: ListOrigin
    ) -> None:
        """Test a foreign exception from the origin becomes OriginReadError and closes the run log."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1"}, {"id": "o2"}]
        origin.fail_after = 1
        origin.error = RuntimeError("socket closed")

        with pytest.raises(OriginReadError) as exc_info:
            await ledger.reconciler.run("people")

        assert "socket closed" in exc_info.value.message
        latest = ledger.stores.logs.recent("people", limit=1)[0]
        assert latest.message.startswith("Run failed")
        assert latest.result["found"] == 1

    @pytest.mark.asyncio()
    async def test_unexpected_error_still_closes_run_log(
        self, ledger: Ledger, origin: ListOrigin, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a non-ledger error after enumeration is recorded before it propagates."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1"}]

        def broken(*args: Any, **kwargs: Any) -> Any:
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger.stores.contracts, "iter_contracts", broken)

        with pytest.raises(RuntimeError):
            await ledger.reconciler.run("people")

        latest = ledger.stores.logs.recent("people", limit=1)[0]
        assert latest.message == "Run failed: disk full"
        assert latest.result["created"] == 1

    @pytest.mark.asyncio()
    async def test_run_timeout_logs_unfinished_records(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test records cut off by the run timeout are counted and logged as failed."""
        ledger.stores.synchronizations.save(make_sync())
        ledger.reconciler.options.run_timeout_seconds = 0.2
        target.delay = 0.5
        origin.records = [{"id": "o1"}, {"id": "o2"}, {"id": "o3"}]

        summary = await ledger.reconciler.run("people")

        assert summary.timed_out is True
        assert summary.found == 3
        assert summary.failed == 3
        entries = _contract_logs(ledger, summary)
        assert len(entries) == 3
        assert all(entry.message.startswith("failed: Run timed out") for entry in entries)
        assert ledger.stores.contracts.count("people") == 0
        assert ledger.stores.logs.find_by_uuid(summary.log_uuid).message.startswith("Run timed out")


class TestRules:
    """Rules around the target write."""

    @pytest.mark.asyncio()
    async def test_before_rule_veto_skips(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test a vetoed record is skipped with a log row and no contract."""
        ledger.stores.synchronizations.save(make_sync(rules=[{
            "id": "active-only",
            "type": "mapping",
            "conditions": {"origin.status": "active"},
            "configuration": {"mapping": {"passThrough": True}},
        }]))
        origin.records = [{"id": "o1", "status": "archived"}, {"id": "o2", "status": "active"}]

        summary = await ledger.reconciler.run("people")

        assert summary.skipped == 1
        assert summary.created == 1
        assert ledger.stores.contracts.find_by_origin("people", "o1") is None
        messages = [entry.message for entry in _contract_logs(ledger, summary)]
        assert "Skipped by rule active-only for action create" in messages

    @pytest.mark.asyncio()
    async def test_error_rule_fails_record(self, ledger: Ledger, origin: ListOrigin) -> None:
        """Test an error rule rejects the record."""
        ledger.stores.synchronizations.save(make_sync(rules=[{
            "id": "no-updates", "type": "error", "action": "create",
            "configuration": {"code": 409, "name": "Conflict", "message": "read only"},
        }]))
        origin.records = [{"id": "o1"}]

        summary = await ledger.reconciler.run("people")

        assert summary.failed == 1
        assert "Conflict: read only" in summary.errors[0]

    @pytest.mark.asyncio()
    async def test_after_rule_requests_follow_up(self, ledger: Ledger, origin: ListOrigin) -> None:
        """Test synchronization rules collect follow-ups on the summary."""
        ledger.stores.synchronizations.save(make_sync(rules=[{
            "id": "cascade", "type": "synchronization", "timing": "after",
            "configuration": {"synchronizationId": "orders"},
        }]))
        origin.records = [{"id": "o1"}, {"id": "o2"}]

        summary = await ledger.reconciler.run("people")

        assert summary.follow_ups == ["orders"]

    @pytest.mark.asyncio()
    async def test_mapping_shapes_target(
        self, ledger: Ledger, origin: ListOrigin, target: FakeTarget
    ) -> None:
        """Test the synchronization mapping is applied before the write."""
        ledger.stores.synchronizations.save(make_sync(mapping={"mapping": {"fullName": "name"}}))
        origin.records = [{"id": "o1", "name": "Alice"}]

        await ledger.reconciler.run("people")

        assert target.objects["t1"] == {"fullName": "Alice"}


class RacingTarget(FakeTarget):
    """Target whose write lets a concurrent run record the same state first."""

    def __init__(self, ledger: Ledger) -> None:
        super().__init__()
        self.ledger = ledger

    async def write(
        self,
        descriptor: TargetDescriptor,
        record: dict[str, Any],
        action: CrudAction,
        target_id: str | None = None,
    ) -> TargetWriteResult:
        digest = self.ledger.reconciler.hasher.hash(record)
        self.ledger.stores.contracts.insert(SynchronizationContract(
            "people", origin_id=str(record["id"]), origin_hash=digest,
            target_id="other-run", target_hash=digest,
        ))
        return await super().write(descriptor, record, action, target_id)


class TestConcurrency:
    """Concurrent writers for the same object."""

    @pytest.mark.asyncio()
    async def test_same_object_is_serialized(
        self, ledger: Ledger, target: FakeTarget
    ) -> None:
        """Test two concurrent reconciliations of one object write once."""
        ledger.stores.synchronizations.save(make_sync())
        record = {"id": "o1", "name": "Alice"}

        first, second = await asyncio.gather(
            ledger.reconciler.reconcile_object("people", record),
            ledger.reconciler.reconcile_object("people", dict(record)),
        )

        assert first.created + second.created == 1
        assert first.skipped + second.skipped == 1
        assert target.writes == 1

    @pytest.mark.asyncio()
    async def test_concurrent_run_supersedes(self, ledger: Ledger, origin: ListOrigin) -> None:
        """Test a run that loses to an identical concurrent write reports superseded."""
        ledger.registry.register_target("race", RacingTarget(ledger))
        ledger.stores.synchronizations.save(make_sync(target={"type": "race"}))
        origin.records = [{"id": "o1", "name": "Alice"}]

        summary = await ledger.reconciler.run("people")

        assert summary.superseded == 1
        assert summary.created == 0
        assert ledger.stores.contracts.find_by_origin("people", "o1").target_id == "other-run"
        assert _contract_logs(ledger, summary)[0].message.startswith("superseded:")


class TestSingleObject:
    """reconcile_object entry point."""

    @pytest.mark.asyncio()
    async def test_delete_action(self, ledger: Ledger, origin: ListOrigin, target: FakeTarget) -> None:
        """Test a delete notification removes the target object and contract."""
        ledger.stores.synchronizations.save(make_sync())
        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")

        summary = await ledger.reconciler.reconcile_object("people", {"id": "o1"}, action="delete")

        assert summary.deleted == 1
        assert ("delete", "t1") in target.calls
        assert ledger.stores.contracts.count() == 0

    @pytest.mark.asyncio()
    async def test_delete_without_contract(self, ledger: Ledger, target: FakeTarget) -> None:
        """Test deleting an unknown object is a skip."""
        ledger.stores.synchronizations.save(make_sync())

        summary = await ledger.reconciler.reconcile_object("people", {"id": "o1"}, CrudAction.DELETE)

        assert summary.skipped == 1
        assert target.calls == []


class TestEvents:
    """Change events published for contract changes."""

    @pytest.mark.asyncio()
    async def test_events_for_create_update_delete(self, ledger: Ledger, origin: ListOrigin) -> None:
        """Test each contract change publishes one CloudEvent."""
        ledger.stores.synchronizations.save(make_sync(deleteOrphans=True))
        audit = _audit(ledger)

        origin.records = [{"id": "o1", "name": "Alice"}]
        await ledger.reconciler.run("people")
        await ledger.reconciler.run("people")
        origin.records = [{"id": "o1", "name": "Alicia"}]
        await ledger.reconciler.run("people")
        origin.records = []
        await ledger.reconciler.run("people")

        payloads = ledger.delivery.read_pull(audit.id).to_dict()["messages"]
        assert [payload["type"] for payload in payloads] == [
            "syncledger.contract.created",
            "syncledger.contract.updated",
            "syncledger.contract.deleted",
        ]
        assert payloads[0]["source"] == "syncledger/synchronizations/people"
        assert payloads[0]["data"]["object"] == {"id": "o1", "name": "Alice"}
        assert payloads[0]["subject"] == payloads[1]["subject"]
