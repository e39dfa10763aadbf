"""
Delivery Queue: durable transfer records and their status machine.

Records are created in status ``ready`` once their blob is already stored,
listed for the receiver, and moved to ``delivered`` only by the receiver's
acknowledgement. The delivered transition is a conditional update so that
duplicate or concurrent acknowledgements never rewrite ``delivered_at``.
"""

import logging
import uuid

from sqlalchemy import update

from errors import NotFoundError, UnauthorizedError, ValidationError
from presence.directory import IdentityDirectory
from storage.database import Database
from storage.models import TransferRow, utcnow
from transfer.models import TransferRecord, TransferStatus

logger = logging.getLogger(__name__)


def _to_model(row: TransferRow) -> TransferRecord:
    return TransferRecord(
        transfer_id=row.id,
        sender_peer_id=row.sender_peer_id,
        sender_display_name=row.sender_display_name,
        receiver_peer_id=row.receiver_peer_id,
        blob_reference=row.blob_reference,
        file_name=row.file_name,
        file_size=row.file_size,
        content_type=row.content_type,
        status=TransferStatus(row.status),
        created_at=row.created_at,
        ready_at=row.ready_at,
        delivered_at=row.delivered_at,
        notified_at=row.notified_at,
    )


class DeliveryQueue:
    """Owns transfer records."""

    def __init__(self, database: Database, directory: IdentityDirectory, clock=utcnow) -> None:
        self._db = database
        self._directory = directory
        self._clock = clock

    def enqueue(
        self,
        sender_peer_id: str,
        sender_display_name: str,
        receiver_peer_id: str,
        blob_reference: str,
        file_name: str,
        file_size: int,
        content_type: str | None = None,
    ) -> TransferRecord:
        """Record a transfer whose blob upload has already completed."""
        missing = [
            name for name, value in (
                ("sender_peer_id", sender_peer_id),
                ("sender_display_name", sender_display_name),
                ("receiver_peer_id", receiver_peer_id),
                ("blob_reference", blob_reference),
                ("file_name", file_name),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if file_size is None or file_size < 0:
            raise ValidationError("file_size must be a non-negative integer")

        if not self._directory.exists(receiver_peer_id):
            raise NotFoundError(f"Receiver not found: {receiver_peer_id}")

        now = self._clock()
        row = TransferRow(
            id=uuid.uuid4().hex,
            sender_peer_id=sender_peer_id,
            sender_display_name=sender_display_name,
            receiver_peer_id=receiver_peer_id,
            blob_reference=blob_reference,
            file_name=file_name,
            file_size=file_size,
            content_type=content_type,
            status=TransferStatus.READY.value,
            created_at=now,
            ready_at=now,
        )
        with self._db.session() as session:
            session.add(row)
            session.flush()
            record = _to_model(row)

        logger.info(
            f"Queued {record.file_name} ({record.file_size} bytes) "
            f"from {sender_peer_id} for {receiver_peer_id} as {record.transfer_id}"
        )
        return record

    def get(self, transfer_id: str) -> TransferRecord | None:
        with self._db.session() as session:
            row = session.get(TransferRow, transfer_id)
            return _to_model(row) if row else None

    def list_pending(self, receiver_peer_id: str) -> list[TransferRecord]:
        """Ready records for a receiver, most recently staged first."""
        with self._db.session() as session:
            rows = (
                session.query(TransferRow)
                .filter(
                    TransferRow.receiver_peer_id == receiver_peer_id,
                    TransferRow.status == TransferStatus.READY.value,
                )
                .order_by(TransferRow.ready_at.desc(), TransferRow.id.desc())
                .all()
            )
            return [_to_model(r) for r in rows]

    def mark_delivered(self, transfer_id: str, requesting_peer_id: str) -> TransferRecord:
        """Receiver acknowledgement. Repeated calls succeed without changes."""
        with self._db.session() as session:
            row = session.get(TransferRow, transfer_id)
            if row is None:
                raise NotFoundError(f"Transfer not found: {transfer_id}")
            if row.receiver_peer_id != requesting_peer_id:
                logger.warning(
                    f"Peer {requesting_peer_id} tried to acknowledge transfer "
                    f"{transfer_id} addressed to {row.receiver_peer_id}"
                )
                raise UnauthorizedError("Only the receiver may acknowledge a transfer")

            result = session.execute(
                update(TransferRow)
                .where(
                    TransferRow.id == transfer_id,
                    TransferRow.status == TransferStatus.READY.value,
                )
                .values(status=TransferStatus.DELIVERED.value, delivered_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if applied:
            logger.info(f"Transfer {transfer_id} delivered to {requesting_peer_id}")
        else:
            logger.debug(f"Transfer {transfer_id} was already delivered")

        return self.get(transfer_id)

    def list_unnotified(self, limit: int = 200) -> list[TransferRecord]:
        """
        Ready records whose push notification has not completed.

        Never-attempted records come first (oldest first), then the least
        recently attempted ones, so a backlog of receivers without a session
        cannot starve newer transfers out of a bounded batch.
        """
        with self._db.session() as session:
            rows = (
                session.query(TransferRow)
                .filter(
                    TransferRow.status == TransferStatus.READY.value,
                    TransferRow.notified_at.is_(None),
                )
                .order_by(
                    TransferRow.notify_attempted_at.is_not(None),
                    TransferRow.notify_attempted_at.asc(),
                    TransferRow.ready_at.asc(),
                    TransferRow.id.asc(),
                )
                .limit(limit)
                .all()
            )
            return [_to_model(r) for r in rows]

    def mark_notify_attempted(self, transfer_id: str) -> None:
        """Stamp an incomplete notification; moves the record to the back of the scan."""
        with self._db.session() as session:
            session.execute(
                update(TransferRow)
                .where(
                    TransferRow.id == transfer_id,
                    TransferRow.notified_at.is_(None),
                )
                .values(notify_attempted_at=self._clock())
                .execution_options(synchronize_session=False)
            )

    def mark_notified(self, transfer_id: str) -> bool:
        """Record the first completed notification. Returns False if already set."""
        with self._db.session() as session:
            result = session.execute(
                update(TransferRow)
                .where(
                    TransferRow.id == transfer_id,
                    TransferRow.notified_at.is_(None),
                )
                .values(notified_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
