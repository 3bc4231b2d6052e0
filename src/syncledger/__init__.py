"""SyncLedger - synchronization reconciliation ledger with reliable event delivery."""

__version__ = "1.0.0"
__author__ = "SyncLedger Contributors"

from syncledger.config import Settings

__all__ = ["Settings", "__version__"]
