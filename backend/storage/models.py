"""SQLAlchemy tables for identities, presence and staged transfers."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Index, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PeerIdentityRow(Base):
    __tablename__ = "peer_identities"

    peer_id = Column(String(100), primary_key=True)
    display_name = Column(String(200), nullable=False)
    contact = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PeerPresenceRow(Base):
    __tablename__ = "peer_presence"

    peer_id = Column(String(100), primary_key=True)
    display_name = Column(String(200), nullable=False)
    contact = Column(String(255), nullable=False, default="")
    status = Column(String(16), nullable=False)  # "online" | "offline"
    last_heartbeat = Column(DateTime, nullable=False)


class TransferRow(Base):
    __tablename__ = "transfers"

    id = Column(String(32), primary_key=True)
    sender_peer_id = Column(String(100), nullable=False)
    sender_display_name = Column(String(200), nullable=False)
    receiver_peer_id = Column(String(100), nullable=False)
    blob_reference = Column(String(255), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    content_type = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False)  # "ready" | "delivered"
    created_at = Column(DateTime, nullable=False)
    ready_at = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    notified_at = Column(DateTime, nullable=True)
    notify_attempted_at = Column(DateTime, nullable=True)  # last incomplete notification

    __table_args__ = (
        Index("idx_transfers_receiver_status", "receiver_peer_id", "status"),
        Index("idx_transfers_status_notified", "status", "notified_at"),
    )

    def __repr__(self):
        return (
            f"<TransferRow(id='{self.id}', receiver='{self.receiver_peer_id}', "
            f"status='{self.status}')>"
        )
