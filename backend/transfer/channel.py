"""
Live channel: direct peer-to-peer delivery.

``LiveChannel`` is the interface the Transfer Router talks to. Establishment
failures are classified into exactly one of ``PeerUnknownError``,
``PeerUnreachableError`` or ``ChannelConnectionError``; only the unreachable
case lets the router fall back to the delivery queue.

``TcpChannel`` resolves the receiver's endpoint from presence (the peer's
contact is its ``host:port``) and speaks a type-length-payload protocol:

    METADATA (json) -> HANDSHAKE_PUBKEY <-> HANDSHAKE_PUBKEY
    -> DATA_CHUNK* -> TRANSFER_COMPLETE <- ACK | ERROR

``ChannelListener`` is the receiving end of the same protocol.
"""

import asyncio
import json
import logging
import struct
from abc import ABC, abstractmethod

from config import CHUNK_SIZE
from presence.directory import IdentityDirectory
from presence.tracker import PresenceTracker
from security.crypto import (
    ChunkAuthenticationError,
    derive_session_key,
    generate_keypair,
    open_chunk,
    seal_chunk,
)
from transfer.models import ChannelMetadata, MessageType

logger = logging.getLogger(__name__)


# --- Failure classification ---

class ChannelError(Exception):
    """Base class for live channel failures."""


class PeerUnknownError(ChannelError):
    """The identifier does not correspond to any registered identity."""


class PeerUnreachableError(ChannelError):
    """The peer is known but not currently present."""


class ChannelConnectionError(ChannelError):
    """Transient network or signaling failure."""


class ChannelSendError(ChannelError):
    """An established channel failed mid-transfer or the receiver refused it."""


class LiveChannel(ABC):
    """Point-to-point delivery to a peer."""

    @abstractmethod
    def is_open(self, peer_id: str) -> bool:
        ...

    @abstractmethod
    async def open(self, peer_id: str) -> None:
        """Establish a channel or raise a classified ``ChannelError``."""

    @abstractmethod
    async def send(self, peer_id: str, metadata: ChannelMetadata, payload: bytes) -> None:
        """Send over an open channel; returns once the receiver acknowledged."""

    @abstractmethod
    async def close(self, peer_id: str) -> None:
        ...

    async def close_all(self) -> None:
        pass


# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 16 * 1024 * 1024


async def send_frame(
    writer: asyncio.StreamWriter, msg_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, msg_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    msg_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ChannelSendError(f"Frame of {length} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return msg_type, payload


def parse_endpoint(contact: str) -> tuple[str, int]:
    """Split a ``host:port`` contact; IPv6 hosts go in brackets."""
    host, sep, port = contact.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Contact {contact!r} is not a host:port endpoint")
    return host.strip("[]"), int(port)


class TcpChannel(LiveChannel):
    """Live channel over direct TCP connections, one per receiver."""

    def __init__(
        self,
        presence: PresenceTracker,
        directory: IdentityDirectory,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._presence = presence
        self._directory = directory
        self._chunk_size = chunk_size
        self._connections: dict[str, tuple[asyncio.StreamReader, asyncio.StreamWriter]] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}

    def is_open(self, peer_id: str) -> bool:
        conn = self._connections.get(peer_id)
        return conn is not None and not conn[1].is_closing()

    async def open(self, peer_id: str) -> None:
        if self.is_open(peer_id):
            return

        # Signaling: the presence store is the rendezvous point.
        identity = await asyncio.to_thread(self._directory.get, peer_id)
        if identity is None:
            raise PeerUnknownError(f"Unknown peer: {peer_id}")

        presence = await asyncio.to_thread(self._presence.get, peer_id)
        if presence is None or not presence.reachable:
            raise PeerUnreachableError(f"Peer {peer_id} is not online")

        try:
            host, port = parse_endpoint(presence.contact)
        except ValueError as e:
            raise ChannelConnectionError(str(e)) from e

        try:
            reader, writer = await asyncio.open_connection(host, port)
        except ConnectionRefusedError as e:
            raise PeerUnreachableError(f"Peer {peer_id} refused the connection") from e
        except OSError as e:
            raise ChannelConnectionError(f"Could not reach {host}:{port}: {e}") from e

        self._connections[peer_id] = (reader, writer)
        logger.info(f"Live channel open to {peer_id} at {host}:{port}")

    async def send(self, peer_id: str, metadata: ChannelMetadata, payload: bytes) -> None:
        conn = self._connections.get(peer_id)
        if conn is None:
            raise ChannelSendError(f"No open channel to {peer_id}")

        lock = self._send_locks.setdefault(peer_id, asyncio.Lock())
        async with lock:
            reader, writer = conn
            try:
                await self._send_transfer(reader, writer, metadata, payload)
            except (asyncio.CancelledError, Exception):
                # Stream position is unknown after a partial transfer.
                await self.close(peer_id)
                raise

    async def _send_transfer(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        metadata: ChannelMetadata,
        payload: bytes,
    ) -> None:
        try:
            await send_frame(writer, MessageType.METADATA, metadata.model_dump_json().encode("utf-8"))

            private_key, pub_bytes = generate_keypair()
            await send_frame(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)
            msg_type, peer_pub = await recv_frame(reader)
            if msg_type == MessageType.ERROR:
                raise ChannelSendError(f"Receiver refused transfer: {peer_pub.decode('utf-8', 'replace')}")
            if msg_type != MessageType.HANDSHAKE_PUBKEY:
                raise ChannelSendError(f"Expected HANDSHAKE_PUBKEY, got {msg_type:#x}")
            key = derive_session_key(private_key, peer_pub, metadata.transfer_id)

            for seq, offset in enumerate(range(0, len(payload), self._chunk_size)):
                chunk = payload[offset:offset + self._chunk_size]
                sealed = await asyncio.to_thread(seal_chunk, key, seq, chunk)
                await send_frame(writer, MessageType.DATA_CHUNK, sealed)

            await send_frame(writer, MessageType.TRANSFER_COMPLETE)

            msg_type, body = await recv_frame(reader)
        except (asyncio.IncompleteReadError, ConnectionError, ValueError) as e:
            raise ChannelSendError(f"Channel failed during transfer: {e}") from e

        if msg_type == MessageType.ERROR:
            raise ChannelSendError(f"Receiver rejected transfer: {body.decode('utf-8', 'replace')}")
        if msg_type != MessageType.ACK:
            raise ChannelSendError(f"Expected ACK, got {msg_type:#x}")

        logger.info(f"Transfer {metadata.transfer_id} acknowledged by receiver")

    async def close(self, peer_id: str) -> None:
        conn = self._connections.pop(peer_id, None)
        self._send_locks.pop(peer_id, None)
        if conn is None:
            return
        writer = conn[1]
        writer.close()
        try:
            await writer.wait_closed()
        except Exception as e:
            logger.debug(f"Error while closing channel to {peer_id}: {e}")

    async def close_all(self) -> None:
        for peer_id in list(self._connections):
            await self.close(peer_id)


class ChannelListener:
    """Receiving end of ``TcpChannel``.

    ``on_receive`` is ``async fn(metadata, data)``; the sender gets its ACK
    only after the callback returned without raising.
    """

    def __init__(self, on_receive, host: str = "0.0.0.0", port: int = 0) -> None:
        self._on_receive = on_receive
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port
        )
        logger.info(f"Channel listener on {self._host}:{self.port}")

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            while True:
                try:
                    msg_type, raw = await recv_frame(reader)
                except asyncio.IncompleteReadError:
                    break  # sender closed the channel between transfers
                if msg_type != MessageType.METADATA:
                    raise ChannelSendError(f"Expected METADATA, got {msg_type:#x}")
                await self._receive_transfer(reader, writer, raw)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Receive error: {e}")
            try:
                await send_frame(writer, MessageType.ERROR, str(e).encode("utf-8"))
            except Exception:
                pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def _receive_transfer(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        raw_metadata: bytes,
    ) -> None:
        metadata = ChannelMetadata(**json.loads(raw_metadata.decode("utf-8")))

        msg_type, peer_pub = await recv_frame(reader)
        if msg_type != MessageType.HANDSHAKE_PUBKEY:
            raise ChannelSendError(f"Expected HANDSHAKE_PUBKEY, got {msg_type:#x}")
        private_key, pub_bytes = generate_keypair()
        await send_frame(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)
        key = derive_session_key(private_key, peer_pub, metadata.transfer_id)

        chunks: list[bytes] = []
        received = 0
        seq = 0
        while True:
            msg_type, payload = await recv_frame(reader)
            if msg_type == MessageType.TRANSFER_COMPLETE:
                break
            if msg_type != MessageType.DATA_CHUNK:
                raise ChannelSendError(f"Unexpected message type during receive: {msg_type:#x}")
            try:
                chunk = await asyncio.to_thread(open_chunk, key, seq, payload)
            except ChunkAuthenticationError as e:
                raise ChannelSendError(str(e)) from e
            received += len(chunk)
            if received > metadata.file_size:
                raise ChannelSendError("Received more data than announced")
            chunks.append(chunk)
            seq += 1

        if received != metadata.file_size:
            raise ChannelSendError(
                f"Expected {metadata.file_size} bytes, received {received}"
            )

        await self._on_receive(metadata, b"".join(chunks))
        await send_frame(writer, MessageType.ACK)
        logger.info(
            f"Received {metadata.file_name} ({received} bytes) from {metadata.sender_peer_id}"
        )
