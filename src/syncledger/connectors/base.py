"""
Collaborator protocols.

The reconciler and the delivery engine only talk to the outside world
through these interfaces. Built-in implementations live in
``syncledger.connectors.local`` and ``syncledger.connectors.http``; tests
provide in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from syncledger.models import CrudAction, MappingConfig, SourceDescriptor, TargetDescriptor


@dataclass
class TargetWriteResult:
    """What the target system returned for a write."""

    target_id: str | None
    record: dict[str, Any] = field(default_factory=dict)
    status: int | None = None


@dataclass
class DeliveryResponse:
    """
    Outcome of a single push attempt.

    ``status`` is None when no HTTP response was received (connection
    error or timeout); ``error`` then describes the failure.
    """

    status: int | None
    body: Any = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "body": self.body,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
        }


@runtime_checkable
class Mapper(Protocol):
    def transform(self, record: dict[str, Any], mapping: MappingConfig) -> dict[str, Any]:
        """Reshape ``record``. Raises TransformationError on failure."""
        ...


@runtime_checkable
class RuleEvaluator(Protocol):
    def evaluate(self, conditions: dict[str, Any], context: dict[str, Any]) -> bool:
        ...


@runtime_checkable
class ScriptRunner(Protocol):
    async def run(self, script: str, context: dict[str, Any]) -> dict[str, Any] | None:
        """Run a script rule; a returned mapping replaces the target record."""
        ...


@runtime_checkable
class OriginClient(Protocol):
    def enumerate(self, descriptor: SourceDescriptor) -> AsyncIterator[dict[str, Any]]:
        """Yield origin records lazily. Raises OriginReadError on failure."""
        ...


@runtime_checkable
class TargetClient(Protocol):
    async def write(
        self,
        descriptor: TargetDescriptor,
        record: dict[str, Any],
        action: CrudAction,
        target_id: str | None = None,
    ) -> TargetWriteResult:
        ...

    async def read(self, descriptor: TargetDescriptor, target_id: str) -> dict[str, Any] | None:
        ...

    async def delete(self, descriptor: TargetDescriptor, target_id: str) -> None:
        ...


@runtime_checkable
class PushTransport(Protocol):
    async def send(self, sink: str, payload: dict[str, Any]) -> DeliveryResponse:
        """Deliver one payload. Must not raise on transport failure."""
        ...
