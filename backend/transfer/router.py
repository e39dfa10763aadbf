"""
Transfer Router: sender-side delivery decision.

Tries the live channel first. Only a classified ``PeerUnreachableError``
during channel establishment falls back to staging the file in the blob
store and the delivery queue; connection errors and unknown peers are
propagated to the caller, and a failure on an already established channel
is reported as ``TransferFailed`` without queuing.
"""

import asyncio
import logging
import uuid

from config import BLOB_UPLOAD_TIMEOUT, CHANNEL_CONNECT_TIMEOUT, CHANNEL_SEND_TIMEOUT
from errors import UpstreamError
from presence.directory import IdentityDirectory
from presence.tracker import PresenceTracker
from transfer.blobstore import BlobStore
from transfer.channel import (
    ChannelConnectionError,
    ChannelError,
    LiveChannel,
    PeerUnknownError,
    PeerUnreachableError,
)
from transfer.models import (
    ChannelMetadata,
    DeliveredLive,
    Outcome,
    Queued,
    TransferFailed,
)
from transfer.queue import DeliveryQueue
from transfer.staging import stage_offline

logger = logging.getLogger(__name__)


class TransferRouter:
    """Chooses between live delivery and queued fallback."""

    def __init__(
        self,
        channel: LiveChannel,
        blob_store: BlobStore,
        queue: DeliveryQueue,
        directory: IdentityDirectory,
        presence: PresenceTracker,
        connect_timeout: float = CHANNEL_CONNECT_TIMEOUT,
        send_timeout: float = CHANNEL_SEND_TIMEOUT,
        upload_timeout: float = BLOB_UPLOAD_TIMEOUT,
    ) -> None:
        self._channel = channel
        self._blob_store = blob_store
        self._queue = queue
        self._directory = directory
        self._presence = presence
        self._connect_timeout = connect_timeout
        self._send_timeout = send_timeout
        self._upload_timeout = upload_timeout

    async def send(
        self,
        sender_peer_id: str,
        sender_display_name: str,
        receiver_peer_id: str,
        payload: bytes,
        file_name: str,
        content_type: str | None = None,
    ) -> Outcome:
        """
        Deliver ``payload`` to ``receiver_peer_id``.

        Raises:
            PeerUnknownError: no registered identity for the receiver.
            ChannelConnectionError: transient failure while establishing
                the channel (including timeouts); the caller decides on retry.
        """
        identity = await asyncio.to_thread(self._directory.get, receiver_peer_id)
        if identity is None:
            raise PeerUnknownError(f"Unknown peer: {receiver_peer_id}")

        metadata = ChannelMetadata(
            transfer_id=uuid.uuid4().hex,
            file_name=file_name,
            file_size=len(payload),
            content_type=content_type,
            sender_peer_id=sender_peer_id,
            sender_display_name=sender_display_name,
        )

        if not self._channel.is_open(receiver_peer_id):
            try:
                await asyncio.wait_for(
                    self._channel.open(receiver_peer_id), timeout=self._connect_timeout
                )
            except asyncio.TimeoutError as e:
                raise ChannelConnectionError(
                    f"Connecting to {receiver_peer_id} timed out after {self._connect_timeout}s"
                ) from e
            except PeerUnreachableError as e:
                logger.info(f"{receiver_peer_id} unreachable ({e}), falling back to queue")
                return await self._queue_fallback(metadata, receiver_peer_id, payload, identity.display_name)

        return await self._send_live(metadata, receiver_peer_id, payload)

    async def _send_live(
        self, metadata: ChannelMetadata, receiver_peer_id: str, payload: bytes
    ) -> Outcome:
        try:
            await asyncio.wait_for(
                self._channel.send(receiver_peer_id, metadata, payload),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Live send of {metadata.file_name} to {receiver_peer_id} timed out")
            return TransferFailed(
                receiver_peer_id=receiver_peer_id,
                file_name=metadata.file_name,
                error_message=f"Send timed out after {self._send_timeout}s",
            )
        except (ChannelError, OSError) as e:
            logger.warning(f"Live send of {metadata.file_name} to {receiver_peer_id} failed: {e}")
            return TransferFailed(
                receiver_peer_id=receiver_peer_id,
                file_name=metadata.file_name,
                error_message=str(e),
            )

        logger.info(f"Delivered {metadata.file_name} live to {receiver_peer_id}")
        return DeliveredLive(
            receiver_peer_id=receiver_peer_id,
            file_name=metadata.file_name,
            file_size=metadata.file_size,
        )

    async def _queue_fallback(
        self,
        metadata: ChannelMetadata,
        receiver_peer_id: str,
        payload: bytes,
        identity_name: str,
    ) -> Outcome:
        presence = await asyncio.to_thread(self._presence.get, receiver_peer_id)
        display_name = presence.display_name if presence else identity_name

        try:
            record, blob = await stage_offline(
                self._blob_store,
                self._queue,
                self._directory,
                sender_peer_id=metadata.sender_peer_id,
                sender_display_name=metadata.sender_display_name,
                receiver_peer_id=receiver_peer_id,
                data=payload,
                file_name=metadata.file_name,
                content_type=metadata.content_type,
                upload_timeout=self._upload_timeout,
            )
        except UpstreamError as e:
            logger.error(f"Could not stage {metadata.file_name} for {receiver_peer_id}: {e}")
            return TransferFailed(
                receiver_peer_id=receiver_peer_id,
                file_name=metadata.file_name,
                error_message=str(e),
            )

        return Queued(
            receiver_peer_id=receiver_peer_id,
            receiver_display_name=display_name,
            blob_reference=blob.reference,
            blob_url=blob.url,
            record=record,
        )
