"""WebSocket presence sessions and real-time push."""

import asyncio
import json
import logging
from typing import Annotated, Literal, Union

from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from errors import NotFoundError, ValidationError
from presence.tracker import PresenceTracker
from transfer.models import TransferRecord

logger = logging.getLogger(__name__)


# --- Session events ---

class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserOnline(_Event):
    type: Literal["user_online"] = "user_online"
    peer_id: str = Field(alias="peerId", min_length=1)
    display_name: str = Field(alias="displayName", min_length=1)
    contact: str = ""


class Heartbeat(_Event):
    type: Literal["heartbeat"] = "heartbeat"
    peer_id: str = Field(alias="peerId", min_length=1)


class UserOffline(_Event):
    type: Literal["user_offline"] = "user_offline"
    peer_id: str = Field(alias="peerId", min_length=1)


class SessionClosed(_Event):
    type: Literal["session_closed"] = "session_closed"


SessionEvent = Annotated[
    Union[UserOnline, Heartbeat, UserOffline, SessionClosed],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(SessionEvent)


def parse_event(raw: str) -> UserOnline | Heartbeat | UserOffline | SessionClosed:
    """Parse a client frame. Raises pydantic.ValidationError on bad input."""
    return _event_adapter.validate_json(raw)


# --- Connection hub ---

class ConnectionManager:
    """Tracks WebSocket connections and the peer each one is bound to."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._peers: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
            self._unbind_locked(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def bind(self, peer_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._unbind_locked(websocket)
            self._peers.setdefault(peer_id, set()).add(websocket)

    async def unbind(self, websocket: WebSocket) -> int:
        """Detach a connection from its peer. Returns the peer's remaining sessions."""
        async with self._lock:
            return self._unbind_locked(websocket)

    def _unbind_locked(self, websocket: WebSocket) -> int:
        for peer_id, sockets in list(self._peers.items()):
            if websocket in sockets:
                sockets.discard(websocket)
                if not sockets:
                    del self._peers[peer_id]
                return len(sockets)
        return 0

    def session_count(self, peer_id: str) -> int:
        return len(self._peers.get(peer_id, ()))

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)
                self._unbind_locked(ws)

    async def send_to_peer(self, peer_id: str, event: str, data: dict) -> int:
        """Send an event to every session of one peer. Returns how many got it."""
        message = json.dumps({"event": event, "data": data})
        sent = 0
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in list(self._peers.get(peer_id, ())):
                try:
                    await ws.send_text(message)
                    sent += 1
                except Exception:
                    dead.append(ws)
            for ws in dead:
                if ws in self._connections:
                    self._connections.remove(ws)
                self._unbind_locked(ws)
        return sent

    async def notify_transfer_ready(self, record: TransferRecord) -> bool:
        """
        Reconciler notifier: push ``transfer_ready`` to the receiver.
        Completed only if at least one of the receiver's sessions got it.
        """
        sent = await self.send_to_peer(
            record.receiver_peer_id, "transfer_ready", record.model_dump(mode="json")
        )
        return sent > 0


# --- Per-connection session ---

class PresenceSession:
    """Presence state of one WebSocket connection.

    The session binds to a peer on ``UserOnline``; heartbeats and offline
    events for any other peer are ignored.
    """

    def __init__(
        self,
        websocket: WebSocket,
        presence: PresenceTracker,
        hub: ConnectionManager,
    ) -> None:
        self.websocket = websocket
        self.peer_id: str | None = None
        self._presence = presence
        self._hub = hub

    async def handle(self, event) -> None:
        if isinstance(event, UserOnline):
            await self._on_user_online(event)
        elif isinstance(event, Heartbeat):
            await self._on_heartbeat(event)
        elif isinstance(event, UserOffline):
            await self._on_user_offline(event)
        elif isinstance(event, SessionClosed):
            await self._on_session_closed()
        else:
            logger.warning(f"Unhandled session event: {event!r}")

    async def _on_user_online(self, event: UserOnline) -> None:
        try:
            presence = await asyncio.to_thread(
                self._presence.mark_online, event.peer_id, event.display_name, event.contact
            )
        except ValidationError as e:
            await self._send_error(str(e))
            return

        if self.peer_id is not None and self.peer_id != event.peer_id:
            logger.info(f"Session rebinding from {self.peer_id} to {event.peer_id}")
            await self._release_peer()

        self.peer_id = event.peer_id
        await self._hub.bind(event.peer_id, self.websocket)
        await self._send("presence", presence.model_dump(mode="json"))

    async def _on_heartbeat(self, event: Heartbeat) -> None:
        if event.peer_id != self.peer_id:
            logger.warning(
                f"Ignoring heartbeat for {event.peer_id} on session bound to {self.peer_id}"
            )
            return
        try:
            await asyncio.to_thread(self._presence.heartbeat, event.peer_id)
        except NotFoundError as e:
            logger.warning(f"Heartbeat without presence record: {e}")
            await self._send_error(str(e))

    async def _on_user_offline(self, event: UserOffline) -> None:
        if event.peer_id != self.peer_id:
            logger.warning(
                f"Ignoring offline event for {event.peer_id} on session bound to {self.peer_id}"
            )
            return
        await self._hub.unbind(self.websocket)
        self.peer_id = None
        try:
            await asyncio.to_thread(self._presence.mark_offline, event.peer_id)
        except NotFoundError as e:
            logger.warning(f"Offline event without presence record: {e}")

    async def _on_session_closed(self) -> None:
        if self.peer_id is not None:
            await self._release_peer()

    async def _release_peer(self) -> None:
        """Detach the bound peer; it goes offline unless another session holds it."""
        peer_id, self.peer_id = self.peer_id, None
        remaining = await self._hub.unbind(self.websocket)
        if remaining:
            logger.info(f"Session released {peer_id}, {remaining} other session(s) still open")
            return
        try:
            await asyncio.to_thread(self._presence.mark_offline, peer_id)
        except NotFoundError as e:
            logger.warning(f"Released peer without presence record: {e}")

    async def _send(self, event: str, data: dict) -> None:
        try:
            await self.websocket.send_text(json.dumps({"event": event, "data": data}))
        except Exception as e:
            logger.debug(f"Could not send {event} to session: {e}")

    async def _send_error(self, message: str) -> None:
        await self._send("error", {"message": message})
