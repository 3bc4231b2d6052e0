"""
Collaborator registry.

Resolves origin and target clients by descriptor ``type`` and carries the
mapper, rule evaluator, optional script runner and push transport that the
engine components are built with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from syncledger.config import Settings
from syncledger.connectors.base import (
    Mapper,
    OriginClient,
    PushTransport,
    RuleEvaluator,
    ScriptRunner,
    TargetClient,
)
from syncledger.connectors.http import HttpOrigin, HttpPushTransport, HttpTarget
from syncledger.connectors.local import (
    ConditionEvaluator,
    DirectoryTarget,
    JsonLinesOrigin,
    KeyPathMapper,
)
from syncledger.errors import ConfigurationError
from syncledger.models import SourceDescriptor, TargetDescriptor


@dataclass
class CollaboratorRegistry:
    """
    Lookup table for collaborators.

    Example:
        registry = CollaboratorRegistry.default(settings)
        registry.register_target("crm", CrmTarget())

        origin = registry.origin_for(sync.source)
    """

    mapper: Mapper = field(default_factory=KeyPathMapper)
    evaluator: RuleEvaluator = field(default_factory=ConditionEvaluator)
    transport: PushTransport | None = None
    script_runner: ScriptRunner | None = None
    origins: dict[str, OriginClient] = field(default_factory=dict)
    targets: dict[str, TargetClient] = field(default_factory=dict)

    @classmethod
    def default(cls, settings: Settings | None = None) -> "CollaboratorRegistry":
        """Registry with the built-in local and HTTP connectors."""
        settings = settings or Settings()
        timeout = settings.reconcile.record_timeout_seconds
        return cls(
            transport=HttpPushTransport(timeout_seconds=settings.delivery.timeout_seconds),
            origins={"jsonl": JsonLinesOrigin(), "http": HttpOrigin(timeout_seconds=timeout)},
            targets={"directory": DirectoryTarget(), "http": HttpTarget(timeout_seconds=timeout)},
        )

    def register_origin(self, type_name: str, client: OriginClient) -> None:
        self.origins[type_name] = client

    def register_target(self, type_name: str, client: TargetClient) -> None:
        self.targets[type_name] = client

    def origin_for(self, descriptor: SourceDescriptor) -> OriginClient:
        try:
            return self.origins[descriptor.type]
        except KeyError:
            raise ConfigurationError(
                f"No origin client registered for type '{descriptor.type}'",
                code="unknown_origin_type",
            ) from None

    def target_for(self, descriptor: TargetDescriptor) -> TargetClient:
        try:
            return self.targets[descriptor.type]
        except KeyError:
            raise ConfigurationError(
                f"No target client registered for type '{descriptor.type}'",
                code="unknown_target_type",
            ) from None

    async def close(self) -> None:
        """Close every collaborator that holds a connection."""
        collaborators: list[Any] = [self.transport, *self.origins.values(), *self.targets.values()]
        for collaborator in collaborators:
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()
