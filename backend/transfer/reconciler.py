"""
Reconciler: periodic sweep over the delivery queue.

Surfaces ready transfers to notifiers (``async fn(record) -> bool``) and
revisits every record whose notification has not completed yet on the next
cycle. Notifiers must be idempotent: the same record can be offered to them
many times. The sweep never writes transfer status; delivery is exclusively
acknowledged by the receiver.
"""

import asyncio
import contextlib
import logging

from pydantic import BaseModel

from config import RECONCILE_BATCH_SIZE, RECONCILE_INTERVAL, RECONCILE_SHUTDOWN_GRACE
from transfer.models import TransferRecord, TransferStatus
from transfer.queue import DeliveryQueue

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    scanned: int = 0
    notified: int = 0
    failed: int = 0
    skipped: int = 0


class Reconciler:
    """Single background task sweeping queue state on a fixed interval."""

    def __init__(
        self,
        queue: DeliveryQueue,
        interval: float = RECONCILE_INTERVAL,
        batch_size: int = RECONCILE_BATCH_SIZE,
        shutdown_grace: float = RECONCILE_SHUTDOWN_GRACE,
    ) -> None:
        self._queue = queue
        self._interval = interval
        self._batch_size = batch_size
        self._shutdown_grace = shutdown_grace
        self._notifiers: list = []
        self._loop_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._running = False

    @property
    def is_sweeping(self) -> bool:
        return self._running

    def on_ready(self, notifier) -> None:
        """Register a notifier: async fn(record: TransferRecord) -> bool."""
        self._notifiers.append(notifier)

    async def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(f"Reconciler started (interval {self._interval}s)")

    async def stop(self) -> None:
        """Cancel the loop, then let an in-flight sweep finish."""
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._sweep_task and not self._sweep_task.done():
            logger.info("Waiting for in-flight sweep to finish...")
            try:
                await asyncio.wait_for(asyncio.shield(self._sweep_task), self._shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Sweep still running after {self._shutdown_grace}s, cancelling"
                )
                self._sweep_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._sweep_task
            except Exception as e:
                logger.error(f"Sweep failed during shutdown: {e}")
        logger.info("Reconciler stopped")

    async def _run_loop(self) -> None:
        while True:
            self._sweep_task = asyncio.create_task(self.sweep())
            try:
                # Shielded so that cancelling the loop never interrupts a sweep.
                await asyncio.shield(self._sweep_task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Reconcile sweep crashed: {e}", exc_info=True)
            await asyncio.sleep(self._interval)

    async def sweep(self) -> SweepReport | None:
        """Run one sweep. Returns None if another sweep is still running."""
        if self._running:
            logger.debug("Previous sweep still running, skipping this cycle")
            return None

        self._running = True
        try:
            report = SweepReport()
            records = await asyncio.to_thread(self._queue.list_unnotified, self._batch_size)
            report.scanned = len(records)

            for record in records:
                try:
                    outcome = await self._reconcile_record(record)
                except Exception as e:
                    logger.error(f"Reconciling transfer {record.transfer_id} failed: {e}")
                    outcome = "failed"
                if outcome == "failed":
                    await self._defer(record)
                setattr(report, outcome, getattr(report, outcome) + 1)

            if report.scanned:
                logger.info(
                    f"Sweep done: {report.scanned} scanned, {report.notified} notified, "
                    f"{report.failed} pending retry, {report.skipped} skipped"
                )
            return report
        finally:
            self._running = False

    async def _defer(self, record: TransferRecord) -> None:
        try:
            await asyncio.to_thread(self._queue.mark_notify_attempted, record.transfer_id)
        except Exception as e:
            logger.error(f"Could not defer transfer {record.transfer_id}: {e}")

    async def _reconcile_record(self, record: TransferRecord) -> str:
        current = await asyncio.to_thread(self._queue.get, record.transfer_id)
        if current is None or current.status != TransferStatus.READY or current.notified_at:
            # Delivered or notified concurrently; stale read, nothing to do.
            return "skipped"

        completed = True
        for notifier in self._notifiers:
            try:
                if not await notifier(current):
                    completed = False
            except Exception as e:
                logger.warning(
                    f"Notifier failed for transfer {current.transfer_id}, will retry: {e}"
                )
                completed = False

        if not completed:
            return "failed"

        await asyncio.to_thread(self._queue.mark_notified, current.transfer_id)
        return "notified"
