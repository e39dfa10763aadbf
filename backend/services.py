"""
Service container.

Every component is constructed here and handed its collaborators
explicitly; ``start()`` / ``stop()`` bound the lifetime of the database
handle, the push hub, the live channel and the reconciler.
"""

import logging

from api.websocket import ConnectionManager
from config import DATABASE_URL, PRESENCE_STALENESS_WINDOW, RECONCILE_INTERVAL
from presence.directory import IdentityDirectory
from presence.tracker import PresenceTracker
from storage.database import Database
from storage.models import utcnow
from transfer.blobstore import BlobStore, PinataBlobStore
from transfer.channel import LiveChannel, TcpChannel
from transfer.queue import DeliveryQueue
from transfer.reconciler import Reconciler
from transfer.router import TransferRouter

logger = logging.getLogger(__name__)


class Services:
    """Explicitly constructed service handles shared by the API layer."""

    def __init__(
        self,
        database: Database | None = None,
        blob_store: BlobStore | None = None,
        channel: LiveChannel | None = None,
        staleness_window: float = PRESENCE_STALENESS_WINDOW,
        reconcile_interval: float = RECONCILE_INTERVAL,
        clock=utcnow,
    ) -> None:
        self.database = database or Database(DATABASE_URL)
        self.blob_store = blob_store or PinataBlobStore()
        self.directory = IdentityDirectory(self.database, clock=clock)
        self.presence = PresenceTracker(
            self.database, staleness_window=staleness_window, clock=clock
        )
        self.queue = DeliveryQueue(self.database, self.directory, clock=clock)
        self.channel = channel or TcpChannel(self.presence, self.directory)
        self.router = TransferRouter(
            self.channel, self.blob_store, self.queue, self.directory, self.presence
        )
        self.hub = ConnectionManager()
        self.reconciler = Reconciler(self.queue, interval=reconcile_interval)
        self.reconciler.on_ready(self.hub.notify_transfer_ready)

    async def start(self) -> None:
        self.database.init()
        await self.reconciler.start()
        logger.info("Services started")

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.channel.close_all()
        self.blob_store.close()
        self.database.close()
        logger.info("Services stopped")
