from __future__ import annotations

import asyncio

from transfer.models import TransferStatus
from transfer.reconciler import Reconciler


def _enqueue(queue, clock, name):
    clock.advance(1)
    return queue.enqueue("p1", "Alice", "p2", f"bafy-{name}", name, 10)


def test_sweep_notifies_ready_records_once(queue, clock):
    records = [_enqueue(queue, clock, n) for n in ("a.txt", "b.txt")]
    seen = []

    async def notifier(record):
        seen.append(record.transfer_id)
        return True

    reconciler = Reconciler(queue, interval=60)
    reconciler.on_ready(notifier)

    report = asyncio.run(reconciler.sweep())
    assert report.scanned == 2
    assert report.notified == 2
    assert seen == [r.transfer_id for r in records]

    report = asyncio.run(reconciler.sweep())
    assert report.scanned == 0
    assert len(seen) == 2
    # The sweep never touches status.
    assert all(r.status == TransferStatus.READY for r in queue.list_pending("p2"))


def test_incomplete_notification_is_retried(queue, clock):
    record = _enqueue(queue, clock, "a.txt")
    attempts = []

    async def notifier(r):
        attempts.append(r.transfer_id)
        return len(attempts) > 1

    reconciler = Reconciler(queue, interval=60)
    reconciler.on_ready(notifier)

    first = asyncio.run(reconciler.sweep())
    assert first.failed == 1
    assert queue.get(record.transfer_id).notified_at is None

    second = asyncio.run(reconciler.sweep())
    assert second.notified == 1
    assert queue.get(record.transfer_id).notified_at is not None


def test_failing_record_does_not_stop_sweep(queue, clock):
    bad = _enqueue(queue, clock, "bad.txt")
    good = _enqueue(queue, clock, "good.txt")

    async def notifier(record):
        if record.transfer_id == bad.transfer_id:
            raise RuntimeError("push service down")
        return True

    reconciler = Reconciler(queue, interval=60)
    reconciler.on_ready(notifier)

    report = asyncio.run(reconciler.sweep())
    assert report.failed == 1
    assert report.notified == 1
    assert queue.get(good.transfer_id).notified_at is not None
    assert queue.get(bad.transfer_id).notified_at is None


def test_record_delivered_mid_sweep_is_skipped(queue, clock):
    first = _enqueue(queue, clock, "a.txt")
    second = _enqueue(queue, clock, "b.txt")
    notified = []

    async def notifier(record):
        notified.append(record.transfer_id)
        if record.transfer_id == first.transfer_id:
            queue.mark_delivered(second.transfer_id, "p2")
        return True

    reconciler = Reconciler(queue, interval=60)
    reconciler.on_ready(notifier)

    report = asyncio.run(reconciler.sweep())
    assert report.scanned == 2
    assert report.notified == 1
    assert report.skipped == 1
    assert notified == [first.transfer_id]
    assert queue.get(second.transfer_id).status == TransferStatus.DELIVERED


def test_overlapping_sweep_is_skipped(queue, clock):
    _enqueue(queue, clock, "a.txt")

    async def scenario():
        release = asyncio.Event()
        entered = asyncio.Event()

        async def notifier(record):
            entered.set()
            await release.wait()
            return True

        reconciler = Reconciler(queue, interval=60)
        reconciler.on_ready(notifier)

        running = asyncio.create_task(reconciler.sweep())
        await entered.wait()
        assert reconciler.is_sweeping
        assert await reconciler.sweep() is None
        release.set()
        report = await running
        assert not reconciler.is_sweeping
        return report

    report = asyncio.run(scenario())
    assert report.notified == 1


def test_background_loop_and_graceful_stop(queue, clock):
    record = _enqueue(queue, clock, "a.txt")

    async def scenario():
        entered = asyncio.Event()

        async def slow_notifier(r):
            entered.set()
            await asyncio.sleep(0.1)
            return True

        reconciler = Reconciler(queue, interval=0.01, shutdown_grace=5)
        reconciler.on_ready(slow_notifier)
        await reconciler.start()
        await asyncio.wait_for(entered.wait(), timeout=5)
        # Stop while the sweep is in flight; it must finish first.
        await reconciler.stop()

    asyncio.run(scenario())
    assert queue.get(record.transfer_id).notified_at is not None


def test_without_notifiers_records_are_marked_seen(queue, clock):
    record = _enqueue(queue, clock, "a.txt")
    report = asyncio.run(Reconciler(queue, interval=60).sweep())
    assert report.notified == 1
    assert queue.get(record.transfer_id).notified_at is not None


def test_undeliverable_backlog_does_not_starve_new_records(queue, clock):
    # Carol has no open session, so her records stay unnotified.
    for name in ("c1.txt", "c2.txt"):
        clock.advance(1)
        queue.enqueue("p1", "Alice", "p3", f"bafy-{name}", name, 10)
    fresh = _enqueue(queue, clock, "fresh.txt")
    seen = []

    async def notifier(record):
        seen.append(record.receiver_peer_id)
        return record.receiver_peer_id == "p2"

    reconciler = Reconciler(queue, interval=60, batch_size=2)
    reconciler.on_ready(notifier)

    first = asyncio.run(reconciler.sweep())
    assert first.failed == 2
    assert seen == ["p3", "p3"]

    clock.advance(1)
    second = asyncio.run(reconciler.sweep())
    assert second.notified == 1
    assert queue.get(fresh.transfer_id).notified_at is not None

    # The backlog keeps rotating through the batch.
    clock.advance(1)
    third = asyncio.run(reconciler.sweep())
    assert third.scanned == 2
    assert third.failed == 2


def test_stop_cancels_sweep_after_grace_period(queue, clock):
    record = _enqueue(queue, clock, "a.txt")

    async def scenario():
        entered = asyncio.Event()

        async def stuck_notifier(r):
            entered.set()
            await asyncio.sleep(30)
            return True

        reconciler = Reconciler(queue, interval=0.01, shutdown_grace=0.05)
        reconciler.on_ready(stuck_notifier)
        await reconciler.start()
        await asyncio.wait_for(entered.wait(), timeout=5)
        await reconciler.stop()
        assert reconciler._sweep_task.done()
        assert not reconciler.is_sweeping

    asyncio.run(scenario())
    assert queue.get(record.transfer_id).notified_at is None
