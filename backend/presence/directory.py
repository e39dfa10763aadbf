"""Identity directory: which peer identifiers exist at all."""

import logging

from errors import ValidationError
from presence.models import PeerIdentity
from storage.database import Database
from storage.models import PeerIdentityRow, utcnow

logger = logging.getLogger(__name__)


def _to_model(row: PeerIdentityRow) -> PeerIdentity:
    return PeerIdentity(
        peer_id=row.peer_id,
        display_name=row.display_name,
        contact=row.contact or "",
        created_at=row.created_at,
    )


class IdentityDirectory:
    """Lookup of registered peer identities.

    Registration proper (credentials, verification codes) lives outside this
    service; ``register`` only provisions the identity row other components
    check against.
    """

    def __init__(self, database: Database, clock=utcnow) -> None:
        self._db = database
        self._clock = clock

    def register(self, peer_id: str, display_name: str, contact: str = "") -> PeerIdentity:
        """Create or update an identity."""
        if not peer_id or not display_name:
            raise ValidationError("peer_id and display_name are required")

        with self._db.session() as session:
            row = session.get(PeerIdentityRow, peer_id)
            if row is None:
                row = PeerIdentityRow(
                    peer_id=peer_id,
                    display_name=display_name,
                    contact=contact,
                    created_at=self._clock(),
                )
                session.add(row)
                logger.info(f"Registered identity {peer_id} ({display_name})")
            else:
                row.display_name = display_name
                row.contact = contact
            session.flush()
            return _to_model(row)

    def get(self, peer_id: str) -> PeerIdentity | None:
        with self._db.session() as session:
            row = session.get(PeerIdentityRow, peer_id)
            return _to_model(row) if row else None

    def exists(self, peer_id: str) -> bool:
        return self.get(peer_id) is not None

    def list_all(self) -> list[PeerIdentity]:
        with self._db.session() as session:
            rows = session.query(PeerIdentityRow).order_by(PeerIdentityRow.peer_id).all()
            return [_to_model(r) for r in rows]
