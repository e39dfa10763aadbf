from __future__ import annotations

import asyncio
import uuid

import pytest

from transfer.channel import (
    ChannelConnectionError,
    ChannelListener,
    ChannelSendError,
    PeerUnknownError,
    PeerUnreachableError,
    TcpChannel,
    parse_endpoint,
)
from transfer.models import ChannelMetadata


def _metadata(payload: bytes, file_name="doc.pdf") -> ChannelMetadata:
    return ChannelMetadata(
        transfer_id=uuid.uuid4().hex,
        file_name=file_name,
        file_size=len(payload),
        sender_peer_id="p1",
        sender_display_name="Alice",
    )


def test_parse_endpoint():
    assert parse_endpoint("127.0.0.1:9000") == ("127.0.0.1", 9000)
    assert parse_endpoint("[::1]:9000") == ("::1", 9000)
    with pytest.raises(ValueError):
        parse_endpoint("bob@example.com")


def test_round_trip_over_tcp(presence, directory):
    received = []

    async def on_receive(metadata, data):
        received.append((metadata, data))

    async def scenario():
        listener = ChannelListener(on_receive, host="127.0.0.1", port=0)
        await listener.start()
        presence.mark_online("p2", "Bob", f"127.0.0.1:{listener.port}")
        channel = TcpChannel(presence, directory, chunk_size=7)
        try:
            await channel.open("p2")
            assert channel.is_open("p2")
            for payload in (b"first payload, several chunks long", b""):
                await channel.send("p2", _metadata(payload), payload)
        finally:
            await channel.close_all()
            await listener.stop()
        assert not channel.is_open("p2")

    asyncio.run(scenario())
    assert [data for _, data in received] == [b"first payload, several chunks long", b""]
    assert received[0][0].sender_peer_id == "p1"


def test_unknown_identity(presence, directory):
    channel = TcpChannel(presence, directory)
    with pytest.raises(PeerUnknownError):
        asyncio.run(channel.open("ghost"))


def test_offline_peer_is_unreachable(presence, directory, clock):
    channel = TcpChannel(presence, directory)
    with pytest.raises(PeerUnreachableError):
        asyncio.run(channel.open("p2"))

    presence.mark_online("p2", "Bob", "127.0.0.1:1")
    clock.advance(600)
    with pytest.raises(PeerUnreachableError):
        asyncio.run(channel.open("p2"))


def test_refused_connection_is_unreachable(presence, directory):
    async def closed_port():
        listener = ChannelListener(lambda m, d: None, host="127.0.0.1", port=0)
        await listener.start()
        port = listener.port
        await listener.stop()
        return port

    port = asyncio.run(closed_port())
    presence.mark_online("p2", "Bob", f"127.0.0.1:{port}")
    with pytest.raises(PeerUnreachableError):
        asyncio.run(TcpChannel(presence, directory).open("p2"))


def test_malformed_contact_is_connection_error(presence, directory):
    presence.mark_online("p2", "Bob", "bob@example.com")
    with pytest.raises(ChannelConnectionError):
        asyncio.run(TcpChannel(presence, directory).open("p2"))


def test_receiver_failure_fails_send_and_closes_channel(presence, directory):
    async def on_receive(metadata, data):
        raise OSError("disk full")

    async def scenario():
        listener = ChannelListener(on_receive, host="127.0.0.1", port=0)
        await listener.start()
        presence.mark_online("p2", "Bob", f"127.0.0.1:{listener.port}")
        channel = TcpChannel(presence, directory)
        try:
            await channel.open("p2")
            with pytest.raises(ChannelSendError):
                await channel.send("p2", _metadata(b"data"), b"data")
            assert not channel.is_open("p2")
        finally:
            await channel.close_all()
            await listener.stop()

    asyncio.run(scenario())
