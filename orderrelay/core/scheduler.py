"""Periodic redrive of messages that failed to reach the broker."""

import asyncio
import contextlib
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from orderrelay.backends.base import DeadLetterStore, RetryStore
from orderrelay.core.backoff import BackoffPolicy
from orderrelay.core.config import RelaySettings
from orderrelay.core.dispatcher import Dispatcher
from orderrelay.core.errors import error_summary
from orderrelay.core.logging import get_logger
from orderrelay.core.records import DeadLetterRecord, ErrorType, RetryRecord, utcnow


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@dataclass
class SweepStats:
    """Tally of one sweep.

    ``errors`` counts records whose outcome could not be written back to a
    store; they are picked up again once their lease expires. ``skipped``
    counts records another worker claimed before this one reached them.
    """

    fetched: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    errors: int = 0
    skipped: int = 0


class RetryScheduler:
    """Redrives due retry records through the Dispatcher.

    Sweeps are serialized by a lock within a process; across processes,
    records are protected by the claim lease taken in ``claim_ready``.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        retry_store: RetryStore,
        settings: RelaySettings | None = None,
        dead_letter_store: DeadLetterStore | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.retry_store = retry_store
        self.settings = settings or dispatcher.settings
        self.dead_letter_store = dead_letter_store
        self.worker_id = worker_id or default_worker_id()
        self.backoff = BackoffPolicy(self.settings.initial_backoff, self.settings.max_backoff)
        self._clock = clock or utcnow
        self._log = get_logger("orderrelay.scheduler")
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            self._log.warning(
                "Retry scheduler already running", extra={"worker_id": self.worker_id}
            )
            return
        self._task = asyncio.create_task(self._run(), name=f"retry-scheduler-{self.worker_id}")
        self._log.info(
            "Retry scheduler started",
            extra={
                "worker_id": self.worker_id,
                "interval_seconds": self.settings.sweep_interval.total_seconds(),
            },
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._log.info("Retry scheduler stopped", extra={"worker_id": self.worker_id})

    async def _run(self) -> None:
        interval = self.settings.sweep_interval.total_seconds()
        while True:
            try:
                await self.sweep()
            except Exception as e:
                self._log.error(
                    f"Retry sweep failed: {e}",
                    extra={"worker_id": self.worker_id, "error": str(e)},
                    exc_info=True,
                )
            await asyncio.sleep(interval)

    async def sweep(self) -> SweepStats:
        """Claim due records and redrive each one once."""
        async with self._lock:
            stats = SweepStats()
            now = self._clock()
            records = await self.retry_store.claim_ready(
                now,
                limit=self.settings.batch_size,
                max_attempts=self.settings.max_attempts,
                worker_id=self.worker_id,
                lease_until=now + self.settings.claim_lease,
            )
            stats.fetched = len(records)
            if not records:
                return stats

            self._log.info(
                f"Redriving {len(records)} queued orders",
                extra={"worker_id": self.worker_id, "count": len(records)},
            )
            for record in records:
                await self._redrive(record, stats)

            self._log.info(
                "Retry sweep complete",
                extra={
                    "worker_id": self.worker_id,
                    "fetched": stats.fetched,
                    "succeeded": stats.succeeded,
                    "failed": stats.failed,
                    "exhausted": stats.exhausted,
                    "errors": stats.errors,
                    "skipped": stats.skipped,
                },
            )
            return stats

    async def _redrive(self, record: RetryRecord, stats: SweepStats) -> None:
        # The batch lease was taken at claim time; take a fresh one per send
        lease_until = self._clock() + self.settings.claim_lease
        if not await self.retry_store.extend_claim(record.order_id, self.worker_id, lease_until):
            stats.skipped += 1
            self._log.warning(
                "Retry record claimed by another worker, skipping",
                extra={"order_id": str(record.order_id), "store_id": record.store_id},
            )
            return

        try:
            receipt = await self.dispatcher.send(record.store_id, record.message_payload)
        except Exception as e:
            stats.failed += 1
            await self._reschedule(record, e, stats)
            return

        try:
            deleted = await self.retry_store.delete(record.order_id, self.worker_id)
        except Exception as e:
            stats.errors += 1
            self._log.error(
                f"Redrive succeeded but the retry record could not be deleted: {e}",
                extra={
                    "order_id": str(record.order_id),
                    "store_id": record.store_id,
                    "error": str(e),
                },
            )
            return
        if not deleted:
            self._log.warning(
                "Redrive succeeded after the claim was lost; the record may be sent again",
                extra={"order_id": str(record.order_id), "store_id": record.store_id},
            )

        stats.succeeded += 1
        self._log.info(
            "Queued order redriven",
            extra={
                "order_id": str(record.order_id),
                "store_id": record.store_id,
                "topic": receipt.topic,
                "partition": receipt.partition,
                "offset": receipt.offset,
                "retry_count": record.retry_count,
            },
        )

    async def _reschedule(self, record: RetryRecord, error: Exception, stats: SweepStats) -> None:
        delay = self.backoff.delay(record.retry_count)
        updated = record.rescheduled(self._clock(), delay, error_summary(error))
        exhausted = updated.retry_count >= self.settings.max_attempts

        try:
            if exhausted and self.dead_letter_store is not None:
                if await self._dead_letter(updated):
                    stats.exhausted += 1
                else:
                    stats.skipped += 1
                return
            held = await self.retry_store.reschedule(updated, self.worker_id)
        except Exception as e:
            stats.errors += 1
            self._log.error(
                f"Failed to record redrive failure: {e}",
                extra={
                    "order_id": str(record.order_id),
                    "store_id": record.store_id,
                    "error": str(e),
                },
            )
            return

        if not held:
            stats.skipped += 1
            self._log.warning(
                "Retry record claimed by another worker, failure not recorded",
                extra={"order_id": str(record.order_id), "store_id": record.store_id},
            )
            return

        self._log.warning(
            f"Redrive failed: {updated.last_error}",
            extra={
                "order_id": str(updated.order_id),
                "store_id": updated.store_id,
                "retry_count": updated.retry_count,
                "next_retry_at": updated.next_retry_at.isoformat(),
                "exhausted": exhausted,
                "error": updated.last_error,
            },
        )

    async def _dead_letter(self, record: RetryRecord) -> bool:
        """Move an exhausted record to the dead-letter store.

        Returns False, writing nothing, when another worker holds the record.
        """
        lease_until = self._clock() + self.settings.claim_lease
        if not await self.retry_store.extend_claim(record.order_id, self.worker_id, lease_until):
            self._log.warning(
                "Retry record claimed by another worker, not dead-lettered",
                extra={"order_id": str(record.order_id), "store_id": record.store_id},
            )
            return False

        await self.dead_letter_store.add(
            DeadLetterRecord(
                order_id=record.order_id,
                original_topic=self.settings.incoming_topic,
                message_key=record.store_id,
                message_payload=record.message_payload,
                error_type=ErrorType.RETRIES_EXHAUSTED,
                error_message=f"Gave up after {record.retry_count} redrive attempts: {record.last_error}",
                retry_count=record.retry_count,
            )
        )
        await self.retry_store.delete(record.order_id, self.worker_id)
        self._log.error(
            "Retry attempts exhausted, order moved to dead-letter store",
            extra={
                "order_id": str(record.order_id),
                "store_id": record.store_id,
                "retry_count": record.retry_count,
                "error_type": ErrorType.RETRIES_EXHAUSTED.value,
                "error": record.last_error,
            },
        )
        return True
