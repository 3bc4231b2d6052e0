"""
Retention sweep.

Log and message rows are stamped with ``expires`` when they are created;
the sweep deletes everything that has passed it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from syncledger.core.event_store import EventMessageStore
from syncledger.core.store import Clock, ContractLogStore, SynchronizationLogStore
from syncledger.models import utcnow
from syncledger.utils.logger import context, get_logger


@dataclass
class CleanupResult:
    synchronization_logs: int = 0
    contract_logs: int = 0
    event_messages: int = 0

    @property
    def total(self) -> int:
        return self.synchronization_logs + self.contract_logs + self.event_messages


class RetentionSweeper:
    """Deletes expired log and message rows."""

    def __init__(
        self,
        logs: SynchronizationLogStore,
        contract_logs: ContractLogStore,
        messages: EventMessageStore,
        clock: Clock = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logs = logs
        self.contract_logs = contract_logs
        self.messages = messages
        self.clock = clock
        self.logger = logger or get_logger("retention")

    def cleanup(self) -> CleanupResult:
        now = self.clock()
        result = CleanupResult(
            synchronization_logs=self.logs.delete_expired(now),
            contract_logs=self.contract_logs.delete_expired(now),
            event_messages=self.messages.delete_expired(now),
        )
        if result.total:
            self.logger.info(
                f"Removed {result.total} expired row(s)",
                extra=context(
                    synchronization_logs=result.synchronization_logs,
                    contract_logs=result.contract_logs,
                    event_messages=result.event_messages,
                ),
            )
        return result
