"""
Ledger wiring.

Builds the database, repositories and engine components from Settings so
the CLI (and embedding applications) get one object to work with.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from syncledger.config import Settings
from syncledger.connectors.registry import CollaboratorRegistry
from syncledger.connectors.sqlite import Database
from syncledger.core.delivery import EventDeliveryEngine
from syncledger.core.event_store import EventMessageStore, EventSubscriptionStore
from syncledger.core.reconciler import ContractReconciler
from syncledger.core.retention import RetentionSweeper
from syncledger.core.scheduler import RetryScheduler
from syncledger.core.store import Clock, LedgerStores
from syncledger.models import utcnow


@dataclass
class Ledger:
    """Every component of a running ledger, sharing one database."""

    settings: Settings
    db: Database
    stores: LedgerStores
    subscriptions: EventSubscriptionStore
    messages: EventMessageStore
    registry: CollaboratorRegistry
    delivery: EventDeliveryEngine
    reconciler: ContractReconciler
    scheduler: RetryScheduler
    retention: RetentionSweeper

    async def close(self) -> None:
        await self.registry.close()
        self.db.close()

    async def __aenter__(self) -> "Ledger":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_ledger(
    settings: Settings | None = None,
    registry: CollaboratorRegistry | None = None,
    db: Database | None = None,
    clock: Clock = utcnow,
) -> Ledger:
    """
    Create a Ledger from settings.

    Args:
        settings: Application settings (defaults to environment)
        registry: Collaborators (defaults to the built-in connectors)
        db: Database handle (defaults to ``settings.database.path``)
        clock: Time source shared by every component
    """
    settings = settings or Settings()
    registry = registry or CollaboratorRegistry.default(settings)
    if db is None:
        db = Database(settings.database.path, settings.database.busy_timeout_seconds)
    db.initialize()

    stores = LedgerStores.from_database(db, settings, clock)
    subscriptions = EventSubscriptionStore(db, clock)
    messages = EventMessageStore(db, settings.retention.event_message_days, clock)

    delivery = EventDeliveryEngine(subscriptions, messages, registry.transport, settings.delivery, clock)
    reconciler = ContractReconciler(stores, registry, settings, events=delivery, clock=clock)
    scheduler = RetryScheduler(delivery, reconciler, stores.synchronizations, settings, clock)
    retention = RetentionSweeper(stores.logs, stores.contract_logs, messages, clock)

    return Ledger(
        settings=settings,
        db=db,
        stores=stores,
        subscriptions=subscriptions,
        messages=messages,
        registry=registry,
        delivery=delivery,
        reconciler=reconciler,
        scheduler=scheduler,
        retention=retention,
    )
