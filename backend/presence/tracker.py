"""
Presence tracker.

Stores the last heartbeat and the last explicit status of each peer.
Liveness is never stored: ``is_reachable`` compares the heartbeat age
against the staleness window on every read, so a peer that crashed without
a disconnect signal turns unreachable once its heartbeat goes stale, with
no background expiry sweep.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from config import PRESENCE_STALENESS_WINDOW
from errors import NotFoundError, ValidationError
from presence.models import PeerPresence, PresenceStatus
from storage.database import Database
from storage.models import PeerPresenceRow, utcnow

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Owns peer liveness records."""

    def __init__(
        self,
        database: Database,
        staleness_window: float = PRESENCE_STALENESS_WINDOW,
        clock=utcnow,
    ) -> None:
        self._db = database
        self._window = timedelta(seconds=staleness_window)
        self._clock = clock

    @property
    def staleness_window(self) -> timedelta:
        return self._window

    def _to_model(self, row: PeerPresenceRow) -> PeerPresence:
        status = PresenceStatus(row.status)
        return PeerPresence(
            peer_id=row.peer_id,
            display_name=row.display_name,
            contact=row.contact or "",
            status=status,
            last_heartbeat=row.last_heartbeat,
            reachable=self._is_live(status, row.last_heartbeat),
        )

    def _is_live(self, status: PresenceStatus, last_heartbeat) -> bool:
        if status != PresenceStatus.ONLINE:
            return False
        return self._clock() - last_heartbeat < self._window

    def mark_online(self, peer_id: str, display_name: str, contact: str = "") -> PeerPresence:
        """Idempotent upsert: status online, heartbeat refreshed."""
        if not peer_id or not display_name:
            raise ValidationError("peer_id and display_name are required")

        try:
            return self._upsert_online(peer_id, display_name, contact)
        except IntegrityError:
            # Lost the first-insert race to a concurrent session start; the
            # row exists now, so the retry takes the update path.
            logger.debug(f"Concurrent presence insert for {peer_id}, retrying as update")
            return self._upsert_online(peer_id, display_name, contact)

    def _upsert_online(self, peer_id: str, display_name: str, contact: str) -> PeerPresence:
        now = self._clock()
        with self._db.session() as session:
            row = session.get(PeerPresenceRow, peer_id)
            if row is None:
                row = PeerPresenceRow(peer_id=peer_id)
                session.add(row)
                logger.info(f"Peer {peer_id} ({display_name}) is now online")
            row.display_name = display_name
            row.contact = contact
            row.status = PresenceStatus.ONLINE.value
            row.last_heartbeat = now
            session.flush()
            return self._to_model(row)

    def heartbeat(self, peer_id: str) -> PeerPresence:
        """Refresh the heartbeat timestamp. Heartbeats never create a record."""
        with self._db.session() as session:
            row = session.get(PeerPresenceRow, peer_id)
            if row is None:
                raise NotFoundError(f"No presence record for peer {peer_id}")
            row.last_heartbeat = self._clock()
            session.flush()
            return self._to_model(row)

    def mark_offline(self, peer_id: str) -> PeerPresence:
        with self._db.session() as session:
            row = session.get(PeerPresenceRow, peer_id)
            if row is None:
                raise NotFoundError(f"No presence record for peer {peer_id}")
            row.status = PresenceStatus.OFFLINE.value
            row.last_heartbeat = self._clock()
            session.flush()
            logger.info(f"Peer {peer_id} marked offline")
            return self._to_model(row)

    def get(self, peer_id: str) -> PeerPresence | None:
        with self._db.session() as session:
            row = session.get(PeerPresenceRow, peer_id)
            return self._to_model(row) if row else None

    def is_reachable(self, peer_id: str) -> bool:
        presence = self.get(peer_id)
        return presence is not None and presence.reachable

    def list_all(self) -> list[PeerPresence]:
        with self._db.session() as session:
            rows = session.query(PeerPresenceRow).order_by(PeerPresenceRow.peer_id).all()
            return [self._to_model(r) for r in rows]
