"""Pydantic models for peer identity and presence."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class PresenceStatus(str, Enum):
    """Stored presence status. Liveness additionally depends on heartbeat age."""
    ONLINE = "online"
    OFFLINE = "offline"


class PeerIdentity(BaseModel):
    """A peer known to the identity directory."""
    peer_id: str
    display_name: str
    contact: str = ""
    created_at: datetime


class PeerPresence(BaseModel):
    """Presence record as seen by a reader at a given instant."""
    peer_id: str
    display_name: str
    contact: str = ""
    status: PresenceStatus
    last_heartbeat: datetime
    reachable: bool = False  # computed at read time, never stored
