from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta

import pytest

from errors import NotFoundError, UnauthorizedError, ValidationError
from presence.directory import IdentityDirectory
from storage.database import Database
from transfer.models import TransferStatus
from transfer.queue import DeliveryQueue


def _enqueue(queue, file_name="doc.pdf", receiver="p2", size=1024):
    return queue.enqueue("p1", "Alice", receiver, f"bafy-{file_name}", file_name, size)


def test_enqueue_then_list_pending(queue, clock):
    record = _enqueue(queue)
    assert record.status == TransferStatus.READY
    assert record.ready_at == clock.now
    assert record.delivered_at is None

    pending = queue.list_pending("p2")
    assert len(pending) == 1
    assert pending[0].transfer_id == record.transfer_id
    assert pending[0].file_name == "doc.pdf"
    assert pending[0].file_size == 1024
    assert pending[0].status == TransferStatus.READY


def test_enqueue_unknown_receiver(queue):
    with pytest.raises(NotFoundError):
        _enqueue(queue, receiver="ghost")
    assert queue.list_pending("ghost") == []


def test_enqueue_rejects_missing_fields(queue):
    with pytest.raises(ValidationError):
        queue.enqueue("p1", "Alice", "p2", "", "doc.pdf", 10)
    with pytest.raises(ValidationError):
        queue.enqueue("p1", "Alice", "p2", "bafy", "doc.pdf", -1)


def test_list_pending_newest_first(queue, clock):
    first = _enqueue(queue, "a.txt")
    clock.advance(5)
    second = _enqueue(queue, "b.txt")
    clock.advance(5)
    third = _enqueue(queue, "c.txt")
    _enqueue(queue, "other.txt", receiver="p3")

    ids = [r.transfer_id for r in queue.list_pending("p2")]
    assert ids == [third.transfer_id, second.transfer_id, first.transfer_id]


def test_wrong_peer_cannot_acknowledge(queue):
    record = _enqueue(queue)
    with pytest.raises(UnauthorizedError):
        queue.mark_delivered(record.transfer_id, "p3")

    pending = queue.list_pending("p2")
    assert [r.transfer_id for r in pending] == [record.transfer_id]
    assert pending[0].status == TransferStatus.READY
    assert pending[0].delivered_at is None


def test_acknowledge_unknown_transfer(queue):
    with pytest.raises(NotFoundError):
        queue.mark_delivered("missing", "p2")


def test_acknowledge_is_idempotent(queue, clock):
    record = _enqueue(queue)
    clock.advance(60)
    delivered = queue.mark_delivered(record.transfer_id, "p2")
    assert delivered.status == TransferStatus.DELIVERED
    assert delivered.delivered_at == clock.now
    first_delivered_at = delivered.delivered_at

    clock.advance(60)
    again = queue.mark_delivered(record.transfer_id, "p2")
    assert again.status == TransferStatus.DELIVERED
    assert again.delivered_at == first_delivered_at
    assert queue.list_pending("p2") == []


def test_concurrent_acknowledgements(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'queue.db'}")
    database.init()
    ticks = itertools.count()
    base = datetime(2024, 5, 1, 12, 0, 0)
    lock = threading.Lock()

    def clock():
        with lock:
            return base + timedelta(seconds=next(ticks))

    directory = IdentityDirectory(database, clock=clock)
    directory.register("p2", "Bob")
    queue = DeliveryQueue(database, directory, clock=clock)
    record = queue.enqueue("p1", "Alice", "p2", "bafy", "doc.pdf", 1024)

    barrier = threading.Barrier(2)
    results, errors = [], []

    def ack():
        barrier.wait()
        try:
            results.append(queue.mark_delivered(record.transfer_id, "p2"))
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=ack) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == 2
    stored = queue.get(record.transfer_id)
    assert stored.status == TransferStatus.DELIVERED
    assert all(r.delivered_at == stored.delivered_at for r in results)
    database.close()


def test_unnotified_listing_and_marking(queue, clock):
    first = _enqueue(queue, "a.txt")
    clock.advance(1)
    second = _enqueue(queue, "b.txt")

    assert [r.transfer_id for r in queue.list_unnotified()] == [first.transfer_id, second.transfer_id]
    assert queue.mark_notified(first.transfer_id) is True
    assert queue.mark_notified(first.transfer_id) is False
    assert [r.transfer_id for r in queue.list_unnotified()] == [second.transfer_id]

    queue.mark_delivered(second.transfer_id, "p2")
    assert queue.list_unnotified() == []


def test_attempted_records_move_behind_fresh_ones(queue, clock):
    stuck = _enqueue(queue, "stuck.txt")
    clock.advance(1)
    fresh = _enqueue(queue, "fresh.txt")

    clock.advance(1)
    queue.mark_notify_attempted(stuck.transfer_id)
    assert [r.transfer_id for r in queue.list_unnotified(limit=1)] == [fresh.transfer_id]

    clock.advance(1)
    queue.mark_notify_attempted(fresh.transfer_id)
    assert [r.transfer_id for r in queue.list_unnotified()] == [stuck.transfer_id, fresh.transfer_id]
