"""
Retry Scheduler - the periodic driver.

Each tick:
1. Sweeps due push retries in pages (bounded per tick)
2. Runs due synchronizations, concurrently across synchronizations
3. Stamps ``last_run`` / ``next_run`` and marks requested follow-ups due
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from syncledger.config import Settings
from syncledger.core.delivery import DeliverySummary, EventDeliveryEngine
from syncledger.core.reconciler import ContractReconciler, RunSummary
from syncledger.core.store import Clock, SynchronizationStore
from syncledger.errors import SyncLedgerError
from syncledger.models import Synchronization, utcnow
from syncledger.utils.logger import context, get_logger


@dataclass
class TickSummary:
    """What one scheduler tick did."""

    retries: DeliverySummary = field(default_factory=DeliverySummary)
    batches: int = 0
    runs: list[RunSummary] = field(default_factory=list)
    run_errors: dict[str, str] = field(default_factory=dict)
    follow_ups: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "retries": self.retries.to_dict(),
            "batches": self.batches,
            "runs": [run.to_dict() for run in self.runs],
            "run_errors": dict(self.run_errors),
            "follow_ups": list(self.follow_ups),
        }


class RetryScheduler:
    """
    Drives retries and scheduled synchronizations.

    Example:
        scheduler = RetryScheduler(delivery, reconciler, synchronizations, settings)

        summary = await scheduler.tick()

        # Or as a worker
        stop = asyncio.Event()
        await scheduler.run_forever(stop)
    """

    def __init__(
        self,
        delivery: EventDeliveryEngine,
        reconciler: ContractReconciler,
        synchronizations: SynchronizationStore,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self.delivery = delivery
        self.reconciler = reconciler
        self.synchronizations = synchronizations
        self.settings = settings or Settings()
        self.clock = clock
        self.logger = logger or get_logger("scheduler")

    async def tick(self) -> TickSummary:
        """Run one scheduler pass."""
        summary = TickSummary()
        await self._sweep_retries(summary)
        await self._run_due(summary)

        self.logger.info(
            f"Tick: {summary.retries.attempted} retries, {len(summary.runs)} run(s)",
            extra=context(**summary.retries.to_dict(), runs=len(summary.runs)),
        )
        return summary

    async def _sweep_retries(self, summary: TickSummary) -> None:
        config = self.settings.delivery
        for _ in range(config.max_batches_per_tick):
            page = await self.delivery.retry_pending(limit=config.batch_size)
            summary.batches += 1
            summary.retries.merge(page)
            if page.attempted + len(page.errors) < config.batch_size:
                break

    async def _run_due(self, summary: TickSummary) -> None:
        now = self.clock()
        due = self.synchronizations.find_due(now)
        if not due:
            return

        semaphore = asyncio.Semaphore(self.settings.scheduler.concurrent_synchronizations)

        async def run_one(sync: Synchronization) -> None:
            async with semaphore:
                try:
                    result = await self.reconciler.run(sync.id)
                except SyncLedgerError as e:
                    summary.run_errors[sync.id] = e.message
                    self.logger.error(
                        f"Synchronization {sync.id} failed: {e.message}",
                        extra=context(synchronization_id=sync.id, code=e.code),
                    )
                except Exception as e:
                    summary.run_errors[sync.id] = str(e) or type(e).__name__
                    self.logger.exception(
                        f"Synchronization {sync.id} failed unexpectedly",
                        extra=context(synchronization_id=sync.id),
                    )
                else:
                    summary.runs.append(result)
                    for follow_up in result.follow_ups:
                        if follow_up != sync.id and follow_up not in summary.follow_ups:
                            summary.follow_ups.append(follow_up)
                finally:
                    self.synchronizations.mark_ran(
                        sync.id, now, now + timedelta(seconds=sync.interval_seconds)
                    )

        await asyncio.gather(*(run_one(sync) for sync in due))

        for follow_up in summary.follow_ups:
            if not self.synchronizations.mark_due(follow_up):
                self.logger.warning(
                    f"Follow-up synchronization not found: {follow_up}",
                    extra=context(synchronization_id=follow_up),
                )

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Tick every ``scheduler.tick_seconds`` until ``stop`` is set."""
        interval = self.settings.scheduler.tick_seconds
        self.logger.info(f"Scheduler started (tick every {interval}s)")

        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                self.logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        self.logger.info("Scheduler stopped")
