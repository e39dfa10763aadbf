from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from errors import UpstreamError
from presence.directory import IdentityDirectory
from presence.tracker import PresenceTracker
from storage.database import Database
from transfer.blobstore import BlobStore
from transfer.channel import ChannelSendError, LiveChannel
from transfer.models import BlobReference
from transfer.queue import DeliveryQueue


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.fail_with: Exception | None = None

    def upload(self, data, file_name, content_type=None, metadata=None):
        if self.fail_with is not None:
            raise self.fail_with
        reference = f"bafy{len(self.blobs):04d}"
        self.blobs[reference] = data
        return BlobReference(reference=reference, url=self.url_for(reference))

    def url_for(self, reference):
        return f"https://blobs.test/ipfs/{reference}"


class ScriptedChannel(LiveChannel):
    """Live channel whose establishment and send results are set by the test."""

    def __init__(self) -> None:
        self.open_peers: set[str] = set()
        self.open_error: Exception | None = None
        self.open_delay = 0.0
        self.send_error: Exception | None = None
        self.send_delay = 0.0
        self.sent: list[tuple[str, object, bytes]] = []
        self.open_calls = 0

    def is_open(self, peer_id):
        return peer_id in self.open_peers

    async def open(self, peer_id):
        self.open_calls += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.open_peers.add(peer_id)

    async def send(self, peer_id, metadata, payload):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        if peer_id not in self.open_peers:
            raise ChannelSendError("not open")
        self.sent.append((peer_id, metadata, payload))

    async def close(self, peer_id):
        self.open_peers.discard(peer_id)


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 5, 1, 12, 0, 0))


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.init()
    yield db
    db.close()


@pytest.fixture
def directory(database, clock):
    d = IdentityDirectory(database, clock=clock)
    d.register("p1", "Alice", "alice@example.com")
    d.register("p2", "Bob", "bob@example.com")
    d.register("p3", "Carol", "carol@example.com")
    return d


@pytest.fixture
def presence(database, clock):
    return PresenceTracker(database, staleness_window=120, clock=clock)


@pytest.fixture
def queue(database, directory, clock):
    return DeliveryQueue(database, directory, clock=clock)


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def upstream_failure():
    return UpstreamError("IPFS upload failed: 503 Service Unavailable")
