"""Core reconciliation and delivery components for SyncLedger."""

from syncledger.core.hasher import ContentHasher
from syncledger.core.reconciler import ContractReconciler, RunSummary
from syncledger.core.orphans import OrphanHandler
from syncledger.core.delivery import BackoffPolicy, EventDeliveryEngine
from syncledger.core.scheduler import RetryScheduler
from syncledger.core.retention import RetentionSweeper
from syncledger.core.ledger import Ledger, create_ledger

__all__ = [
    "ContentHasher",
    "ContractReconciler",
    "RunSummary",
    "OrphanHandler",
    "BackoffPolicy",
    "EventDeliveryEngine",
    "RetryScheduler",
    "RetentionSweeper",
    "Ledger",
    "create_ledger",
]
