"""Shared fixtures and in-memory collaborators for SyncLedger tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

import pytest

from syncledger.config import Settings
from syncledger.connectors.base import DeliveryResponse, TargetWriteResult
from syncledger.connectors.local import ConditionEvaluator, KeyPathMapper
from syncledger.connectors.registry import CollaboratorRegistry
from syncledger.connectors.sqlite import Database
from syncledger.core.ledger import Ledger, create_ledger
from syncledger.errors import OriginReadError, TargetWriteError
from syncledger.models import CrudAction, SourceDescriptor, Synchronization, TargetDescriptor


class FrozenClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ListOrigin:
    """Origin client yielding a mutable list of records."""

    def __init__(
        self,
        records: list[dict[str, Any]] | None = None,
        fail_after: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.records = records or []
        self.fail_after = fail_after
        self.error = error

    async def enumerate(self, descriptor: SourceDescriptor) -> AsyncIterator[dict[str, Any]]:
        for index, record in enumerate(list(self.records)):
            if self.fail_after is not None and index >= self.fail_after:
                raise self.error or OriginReadError("origin went away")
            yield dict(record)


class FakeTarget:
    """
    In-memory target client recording every call.

    New objects get ids t1, t2, ... unless ``keep_ids`` is set, in which case
    they keep the record's own id. ``delay`` slows every write down.
    """

    def __init__(self) -> None:
        self.keep_ids = False
        self.delay = 0.0
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.fail_ids: set[str] = set()
        self._next_id = 0

    @property
    def writes(self) -> int:
        return sum(1 for call, _ in self.calls if call in ("create", "update"))

    async def write(
        self,
        descriptor: TargetDescriptor,
        record: dict[str, Any],
        action: CrudAction,
        target_id: str | None = None,
    ) -> TargetWriteResult:
        if str(record.get("id")) in self.fail_ids:
            raise TargetWriteError("target rejected the write", status=500)
        if self.delay:
            await asyncio.sleep(self.delay)
        if target_id is None and self.keep_ids:
            target_id = str(record["id"])
        elif target_id is None:
            self._next_id += 1
            target_id = f"t{self._next_id}"
        self.calls.append((action.value, target_id))
        self.objects[target_id] = dict(record)
        return TargetWriteResult(target_id=target_id, record=dict(record))

    async def read(self, descriptor: TargetDescriptor, target_id: str) -> dict[str, Any] | None:
        return self.objects.get(target_id)

    async def delete(self, descriptor: TargetDescriptor, target_id: str) -> None:
        self.calls.append(("delete", target_id))
        self.objects.pop(target_id, None)


class ScriptedTransport:
    """Push transport answering with a scripted sequence of status codes."""

    def __init__(self, statuses: list[int | None] | None = None, default: int = 200) -> None:
        self.statuses = list(statuses or [])
        self.default = default
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, sink: str, payload: dict[str, Any]) -> DeliveryResponse:
        self.sent.append((sink, payload))
        status = self.statuses.pop(0) if self.statuses else self.default
        if status is None:
            return DeliveryResponse(status=None, error="Connection error: refused")
        return DeliveryResponse(status=status, body={"status": status})


def make_sync(sync_id: str = "people", **overrides: Any) -> Synchronization:
    data: dict[str, Any] = {
        "id": sync_id,
        "name": "People",
        "source": {"type": "memory"},
        "target": {"type": "memory"},
        "intervalSeconds": 60,
    }
    data.update(overrides)
    return Synchronization.from_map(data)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    database = Database(tmp_path / "ledger.db")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database={"path": tmp_path / "ledger.db"},
        delivery={"max_retries": 5, "backoff_base_minutes": 5, "inline": True},
        reconcile={"concurrency": 4, "record_timeout_seconds": 5},
    )


@pytest.fixture
def origin() -> ListOrigin:
    return ListOrigin()


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def registry(origin: ListOrigin, target: FakeTarget, transport: ScriptedTransport) -> CollaboratorRegistry:
    return CollaboratorRegistry(
        mapper=KeyPathMapper(),
        evaluator=ConditionEvaluator(),
        transport=transport,
        origins={"memory": origin},
        targets={"memory": target},
    )


@pytest.fixture
def ledger(
    settings: Settings,
    registry: CollaboratorRegistry,
    db: Database,
    clock: FrozenClock,
) -> Ledger:
    return create_ledger(settings, registry=registry, db=db, clock=clock)
