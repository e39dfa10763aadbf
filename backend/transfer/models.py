"""Pydantic models for staged transfers, router outcomes and the live channel."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class TransferStatus(str, Enum):
    """Transfer record status. Moves ready -> delivered only."""
    READY = "ready"
    DELIVERED = "delivered"


class TransferRecord(BaseModel):
    """A file staged in the blob store for pickup by its receiver."""
    transfer_id: str
    sender_peer_id: str
    sender_display_name: str
    receiver_peer_id: str
    blob_reference: str
    file_name: str
    file_size: int
    content_type: str | None = None
    status: TransferStatus = TransferStatus.READY
    created_at: datetime
    ready_at: datetime
    delivered_at: datetime | None = None
    notified_at: datetime | None = None


class BlobReference(BaseModel):
    """Stable reference returned by the blob store."""
    reference: str
    url: str


# --- Router outcomes ---

class OutcomeKind(str, Enum):
    DELIVERED_LIVE = "delivered_live"
    QUEUED = "queued"
    FAILED = "failed"


class DeliveredLive(BaseModel):
    kind: OutcomeKind = OutcomeKind.DELIVERED_LIVE
    receiver_peer_id: str
    file_name: str
    file_size: int


class Queued(BaseModel):
    kind: OutcomeKind = OutcomeKind.QUEUED
    receiver_peer_id: str
    receiver_display_name: str
    blob_reference: str
    blob_url: str
    record: TransferRecord


class TransferFailed(BaseModel):
    kind: OutcomeKind = OutcomeKind.FAILED
    receiver_peer_id: str
    file_name: str
    error_message: str


Outcome = DeliveredLive | Queued | TransferFailed


# --- Live channel wire protocol ---

class MessageType:
    HANDSHAKE_PUBKEY = 0x01
    METADATA = 0x02
    DATA_CHUNK = 0x06
    TRANSFER_COMPLETE = 0x0A
    ACK = 0x0B
    ERROR = 0x0C


class ChannelMetadata(BaseModel):
    """Metadata sent before file data on a live channel."""
    transfer_id: str
    file_name: str
    file_size: int
    content_type: str | None = None
    sender_peer_id: str
    sender_display_name: str
