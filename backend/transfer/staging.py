"""Offline staging: upload to the blob store, then record the transfer."""

import asyncio
import logging

from config import BLOB_UPLOAD_TIMEOUT
from errors import NotFoundError, UpstreamError, ValidationError
from presence.directory import IdentityDirectory
from transfer.blobstore import BlobStore
from transfer.models import BlobReference, TransferRecord
from transfer.queue import DeliveryQueue

logger = logging.getLogger(__name__)


async def stage_offline(
    blob_store: BlobStore,
    queue: DeliveryQueue,
    directory: IdentityDirectory,
    sender_peer_id: str,
    sender_display_name: str,
    receiver_peer_id: str,
    data: bytes,
    file_name: str,
    content_type: str | None = None,
    upload_timeout: float = BLOB_UPLOAD_TIMEOUT,
) -> tuple[TransferRecord, BlobReference]:
    """
    Stage a file for asynchronous pickup.

    The upload must finish before the record is created; if it fails or
    times out, no record exists and ``UpstreamError`` is raised.

    Raises:
        ValidationError: missing sender, receiver or file name.
        NotFoundError: the receiver identity does not exist.
        UpstreamError: the blob store upload failed.
    """
    if not sender_peer_id or not sender_display_name or not receiver_peer_id or not file_name:
        raise ValidationError("Missing required fields")

    if not await asyncio.to_thread(directory.exists, receiver_peer_id):
        raise NotFoundError(f"Receiver not found: {receiver_peer_id}")

    try:
        blob = await asyncio.wait_for(
            asyncio.to_thread(
                blob_store.upload,
                data,
                file_name,
                content_type,
                {"sender": sender_display_name, "receiver": receiver_peer_id},
            ),
            timeout=upload_timeout,
        )
    except asyncio.TimeoutError as e:
        raise UpstreamError(f"Blob upload timed out after {upload_timeout}s") from e

    record = await asyncio.to_thread(
        queue.enqueue,
        sender_peer_id,
        sender_display_name,
        receiver_peer_id,
        blob.reference,
        file_name,
        len(data),
        content_type,
    )
    return record, blob
