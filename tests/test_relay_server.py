import asyncio
import json

import pytest

from conftest import wait_for
from relay.relay_server import RelayServer
from relay.session_manager import SessionManager
from shared.protocol import FRAME_HEADER, MAX_FRAME_SIZE, SignalingAction, encode_signaling_message


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _read_message(reader: asyncio.StreamReader) -> dict:
    header = await asyncio.wait_for(reader.readexactly(FRAME_HEADER.size), 2.0)
    (length,) = FRAME_HEADER.unpack(header)
    body = await asyncio.wait_for(reader.readexactly(length), 2.0)
    return json.loads(body)


async def _assert_silent(reader: asyncio.StreamReader) -> None:
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(reader.read(1), 0.2)


async def _connect(server: RelayServer, manager: SessionManager, count: int):
    connections = []
    for index in range(count):
        connections.append(await asyncio.open_connection("127.0.0.1", server.port))
        expected = index + 1
        await wait_for(lambda: _has_count(manager, expected))
    return connections


async def _has_count(manager: SessionManager, expected: int) -> bool:
    return await manager.channel_count() == expected


async def _close(connections) -> None:
    for _, writer in connections:
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass


@pytest.mark.anyio
async def test_offer_and_answer_reach_only_the_other_participant() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    await server.start()
    (c1_reader, c1_writer), (c2_reader, c2_writer) = connections = await _connect(server, manager, 2)

    c1_writer.write(encode_signaling_message(SignalingAction.OFFER, {"type": "offer", "sdp": "X"}))
    await c1_writer.drain()
    message = await _read_message(c2_reader)
    assert message == {"action": "offer", "data": {"type": "offer", "sdp": "X"}}
    await _assert_silent(c1_reader)

    c2_writer.write(encode_signaling_message(SignalingAction.ANSWER, {"type": "answer", "sdp": "Y"}))
    await c2_writer.drain()
    message = await _read_message(c1_reader)
    assert message == {"action": "answer", "data": {"type": "answer", "sdp": "Y"}}
    await _assert_silent(c2_reader)

    await _close(connections)
    await server.stop()


@pytest.mark.anyio
async def test_every_other_channel_receives_a_broadcast() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    await server.start()
    connections = await _connect(server, manager, 3)
    sender_reader, sender_writer = connections[0]

    sender_writer.write(encode_signaling_message(SignalingAction.ICE_CANDIDATE, {"candidate": "c"}))
    await sender_writer.drain()

    for reader, _ in connections[1:]:
        assert (await _read_message(reader))["action"] == "ice-candidate"
    await _assert_silent(sender_reader)

    await _close(connections)
    await server.stop()


@pytest.mark.anyio
async def test_messages_are_forwarded_in_send_order_without_validation() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    await server.start()
    (a_reader, a_writer), (b_reader, b_writer) = connections = await _connect(server, manager, 2)

    garbage = b"\x00not json"
    a_writer.write(FRAME_HEADER.pack(len(garbage)) + garbage)
    for index in range(5):
        a_writer.write(encode_signaling_message(SignalingAction.ICE_CANDIDATE, {"index": index}))
    await a_writer.drain()

    header = await asyncio.wait_for(b_reader.readexactly(FRAME_HEADER.size), 2.0)
    assert await b_reader.readexactly(FRAME_HEADER.unpack(header)[0]) == garbage
    received = [(await _read_message(b_reader))["data"]["index"] for _ in range(5)]
    assert received == [0, 1, 2, 3, 4]

    await _close(connections)
    await server.stop()


@pytest.mark.anyio
async def test_disconnected_channel_no_longer_receives() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    await server.start()
    connections = await _connect(server, manager, 3)
    (_, a_writer), (_, b_writer), (c_reader, _) = connections

    b_writer.close()
    await wait_for(lambda: _has_count(manager, 2))
    snapshot = await manager.snapshot()
    assert snapshot["channel_ids"] == ["channel-1", "channel-3"]

    a_writer.write(encode_signaling_message(SignalingAction.OFFER, {"sdp": "Z"}))
    await a_writer.drain()
    assert (await _read_message(c_reader))["data"] == {"sdp": "Z"}

    await _close([connections[0], connections[2]])
    await server.stop()


@pytest.mark.anyio
async def test_oversized_frame_drops_the_sender() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    await server.start()
    (a_reader, a_writer), (b_reader, _) = connections = await _connect(server, manager, 2)

    a_writer.write(FRAME_HEADER.pack(MAX_FRAME_SIZE + 1))
    await a_writer.drain()

    assert await asyncio.wait_for(a_reader.read(), 2.0) == b""
    await wait_for(lambda: _has_count(manager, 1))
    await _assert_silent(b_reader)

    await _close(connections)
    await server.stop()


@pytest.mark.anyio
async def test_stop_closes_connected_channels() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    await server.start()
    connections = await _connect(server, manager, 2)

    closed = await asyncio.wait_for(server.stop(), 2.0)

    assert closed == 2
    for reader, _ in connections:
        assert await asyncio.wait_for(reader.read(), 2.0) == b""
    await _close(connections)


class _Writer:
    def __init__(self, *, stalled: bool = False) -> None:
        self.buffer = bytearray()
        self.stalled = stalled
        self.closed = False

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        if self.stalled:
            await asyncio.Event().wait()

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


@pytest.mark.anyio
async def test_stalled_channel_does_not_delay_the_senders_next_frame() -> None:
    manager = SessionManager()
    server = RelayServer("127.0.0.1", 0, manager)
    sender = await server.on_connect(_Writer())
    await server.on_connect(_Writer(stalled=True))
    healthy = _Writer()
    await server.on_connect(healthy)

    await asyncio.wait_for(server.on_message(sender.channel_id, b"one"), 0.5)
    await asyncio.wait_for(server.on_message(sender.channel_id, b"two"), 0.5)

    assert bytes(healthy.buffer) == FRAME_HEADER.pack(3) + b"one" + FRAME_HEADER.pack(3) + b"two"
    await manager.disconnect_all()
