"""
LanChat - Session layer tests.

Tests for sessions, the connection manager's reconnection policy, and the
inbound listener running on localhost.
"""

import asyncio
import json
import socket
import time

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidStatus

from conftest import MockWebSocket, free_port, make_peer
from lanchat.errors import BindConflictError, SessionError
from lanchat.network import OUTBOUND, ConnectionManager, InboundListener, Session
from lanchat.protocol import BroadcastMessage, DirectMessage, encode_message

OWN_ID = "a" * 32


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll until predicate() is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FailingConnectionManager(ConnectionManager):
    """Connection manager whose dials always fail, recording when they happen."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.dial_times = []

    async def _dial(self, peer):
        self.dial_times.append(time.monotonic())
        raise SessionError(message="connection refused")


async def start_listener(**kwargs) -> InboundListener:
    kwargs.setdefault("host", "127.0.0.1")
    kwargs.setdefault("port", free_port())
    listener = InboundListener(**kwargs)
    await listener.start()
    return listener


def chat_uri(port: int, peer_id: str = "", username: str = "") -> str:
    query = []
    if peer_id:
        query.append(f"id={peer_id}")
    if username:
        query.append(f"username={username}")
    return f"ws://127.0.0.1:{port}/chat?{'&'.join(query)}"


def frame_with_timestamp(sender: str, timestamp: str) -> str:
    """Broadcast frame carrying a raw JSON timestamp token such as NaN or Infinity."""
    return f'{{"type": "broadcast", "from": "{sender}", "content": "x", "timestamp": {timestamp}}}'


async def http_get(port: int, path: str) -> tuple:
    """Plain HTTP request; returns (status line, headers text, body)."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\nConnection: close\r\n\r\n".encode())
    await writer.drain()
    raw = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    head, _, body = raw.decode().partition("\r\n\r\n")
    status, _, headers = head.partition("\r\n")
    return status, headers, body


@pytest.mark.asyncio
class TestSession:
    """Test the per-session send queue."""

    async def test_frames_are_written_in_order(self):
        websocket = MockWebSocket()
        session = Session(websocket, "b" * 32, "bob", OUTBOUND)
        session.start()

        assert session.send("one")
        assert session.send("two")
        await session.close()

        assert websocket.sent == ["one", "two"]
        assert websocket.closed

    async def test_send_on_closed_session_fails(self):
        websocket = MockWebSocket()
        session = Session(websocket, "b" * 32, "bob", OUTBOUND)
        await websocket.close()

        assert session.send("late") is False

    async def test_full_queue_drops(self, caplog):
        session = Session(MockWebSocket(), "b" * 32, "bob", OUTBOUND)
        session.send_queue = asyncio.Queue(maxsize=1)

        assert session.send("first")
        assert session.send("second") is False
        assert "Send queue full" in caplog.text


@pytest.mark.asyncio
class TestReconnection:
    """Test the exponential backoff policy."""

    async def test_backoff_schedule_and_cap(self):
        manager = FailingConnectionManager(OWN_ID, "alice", base_delay=0.01, max_attempts=5)
        peer = make_peer()

        assert await manager.connect(peer) is False
        await wait_until(lambda: len(manager.dial_times) == 6)
        await asyncio.sleep(0.4)

        # Initial dial plus five reconnection attempts, then nothing more
        assert len(manager.dial_times) == 6
        gaps = [b - a for a, b in zip(manager.dial_times, manager.dial_times[1:])]
        for attempt, gap in enumerate(gaps):
            assert gap >= 0.01 * 2 ** attempt * 0.9
        assert manager.reconnect_attempts(peer.id) == 0
        assert not manager._reconnect_tasks

    async def test_failed_dial_reports_disconnect(self):
        manager = FailingConnectionManager(OWN_ID, "alice", base_delay=10)
        events = []
        manager.on_peer_disconnected = lambda pid, name: events.append((pid, name))
        peer = make_peer(username="bob")

        await manager.connect(peer)

        assert events == [(peer.id, "bob")]
        assert manager.reconnect_attempts(peer.id) == 1
        await manager.stop()

    async def test_disconnect_cancels_pending_reconnect(self):
        manager = FailingConnectionManager(OWN_ID, "alice", base_delay=10)
        peer = make_peer()
        await manager.connect(peer)
        pending = manager._reconnect_tasks[peer.id]

        await manager.disconnect(peer.id)

        assert pending.cancelled()
        assert not manager._reconnect_tasks
        assert manager.reconnect_attempts(peer.id) == 0
        assert len(manager.dial_times) == 1

    async def test_rediscovery_dials_immediately(self):
        """connect() during a pending backoff cancels it and starts over."""
        manager = FailingConnectionManager(OWN_ID, "alice", base_delay=10)
        peer = make_peer()
        await manager.connect(peer)
        first_pending = manager._reconnect_tasks[peer.id]

        await manager.connect(peer)
        await asyncio.sleep(0.01)

        assert len(manager.dial_times) == 2
        assert first_pending.cancelled()
        assert manager.reconnect_attempts(peer.id) == 1
        await manager.stop()

    async def test_stopped_manager_does_not_dial(self):
        manager = FailingConnectionManager(OWN_ID, "alice", base_delay=0.01)
        await manager.stop()

        assert await manager.connect(make_peer()) is False
        assert manager.dial_times == []


@pytest.mark.asyncio
class TestFanOut:
    """Test best-effort sends."""

    async def test_broadcast_counts_open_sessions(self, caplog):
        manager = ConnectionManager(OWN_ID, "alice")
        bob, carol, dave = make_peer("bob"), make_peer("carol"), make_peer("dave")
        sockets = {}
        for peer in (bob, carol):
            sockets[peer.id] = MockWebSocket()
            manager.sessions[peer.id] = Session(sockets[peer.id], peer.id, peer.username, OUTBOUND)

        message = BroadcastMessage(sender=OWN_ID, content="hello", timestamp=1)
        sent = manager.broadcast(message, [bob, carol, dave])

        assert sent == 2
        assert "No open session to dave" in caplog.text
        for peer in (bob, carol):
            assert manager.sessions[peer.id].send_queue.get_nowait() == encode_message(message)

    async def test_send_to_closed_session_fails(self):
        manager = ConnectionManager(OWN_ID, "alice")
        bob = make_peer("bob")
        websocket = MockWebSocket()
        manager.sessions[bob.id] = Session(websocket, bob.id, "bob", OUTBOUND)
        await websocket.close()

        assert manager.send_to(bob, "frame") is False
        assert manager.connection_count() == 0


@pytest.mark.asyncio
class TestInboundListener:
    """Test the listener on localhost."""

    async def test_bind_conflict_moves_to_next_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("0.0.0.0", 0))
            blocker.listen()
            taken = blocker.getsockname()[1]

            listener = await start_listener(port=taken)
            try:
                assert listener.port == taken + 1
            finally:
                await listener.stop()

    async def test_bind_conflict_cap(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("0.0.0.0", 0))
            blocker.listen()
            taken = blocker.getsockname()[1]

            listener = InboundListener(host="127.0.0.1", port=taken, max_bind_attempts=1)
            with pytest.raises(BindConflictError):
                await listener.start()

    async def test_health_probe(self):
        listener = await start_listener()
        try:
            status, headers, body = await http_get(listener.port, "/health")

            assert "200" in status
            assert "application/json" in headers
            health = json.loads(body)
            assert health["status"] == "ok"
            assert health["connections"] == 0
            assert health["uptime"] >= 0
        finally:
            await listener.stop()

    async def test_unknown_path_is_404(self):
        listener = await start_listener()
        try:
            status, _, _ = await http_get(listener.port, "/nope")
            assert "404" in status
        finally:
            await listener.stop()

    async def test_session_without_id_is_rejected(self):
        listener = await start_listener()
        try:
            with pytest.raises(InvalidStatus) as exc_info:
                await connect(chat_uri(listener.port, username="bob"))
            assert exc_info.value.response.status_code == 400
        finally:
            await listener.stop()

    async def test_session_tags_and_messages(self):
        listener = await start_listener()
        connected, received = [], []
        listener.on_peer_connected = lambda pid, name: connected.append((pid, name))
        listener.on_message = received.append
        try:
            async with connect(chat_uri(listener.port, peer_id="b" * 32)) as client:
                await wait_until(lambda: connected)
                assert connected == [("b" * 32, "Anonymous")]

                await client.send("not json")
                await client.send(json.dumps({"type": "shout", "from": "b" * 32}))
                await client.send(frame_with_timestamp("b" * 32, "Infinity"))
                await client.send(encode_message(BroadcastMessage(sender="b" * 32, content="hi", timestamp=1)))
                await wait_until(lambda: received)
                assert listener.connection_count() == 1

            assert [m.content for m in received] == ["hi"]
            await wait_until(lambda: listener.connection_count() == 0)
        finally:
            await listener.stop()

    async def test_direct_message_is_relayed(self):
        listener = await start_listener()
        bob_id, carol_id = "b" * 32, "c" * 32
        try:
            async with connect(chat_uri(listener.port, bob_id, "bob")) as bob, connect(
                chat_uri(listener.port, carol_id, "carol")
            ) as carol:
                await wait_until(lambda: listener.connection_count() == 2)

                frame = encode_message(
                    DirectMessage(
                        sender=bob_id,
                        recipient=carol_id,
                        content="00" * 16 + ":" + "11" * 16,
                        sender_public_key="02" + "ab" * 32,
                        timestamp=1,
                    )
                )
                await bob.send(frame)

                assert await asyncio.wait_for(carol.recv(), timeout=3) == frame
        finally:
            await listener.stop()

    async def test_broadcast_to_inbound_sessions(self):
        listener = await start_listener()
        try:
            async with connect(chat_uri(listener.port, "b" * 32, "bob")) as bob:
                await wait_until(lambda: listener.connection_count() == 1)

                assert listener.broadcast("hello") == 1
                assert listener.broadcast("hello", exclude=["b" * 32]) == 0
                assert await asyncio.wait_for(bob.recv(), timeout=3) == "hello"
        finally:
            await listener.stop()


@pytest.mark.asyncio
class TestEndToEnd:
    """Test a connection manager talking to a listener."""

    async def test_outbound_session_delivers(self):
        listener = await start_listener()
        manager = ConnectionManager(OWN_ID, "alice", base_delay=10)
        received, inbound = [], []
        listener.on_message = received.append
        listener.on_peer_connected = lambda pid, name: inbound.append((pid, name))
        peer = make_peer("bob", port=listener.port)
        try:
            assert await manager.connect(peer)
            assert manager.is_connected(peer.id)
            await wait_until(lambda: inbound)
            # The handshake carries our own id, not the target's
            assert inbound == [(OWN_ID, "alice")]

            assert manager.send_to(peer, BroadcastMessage(sender=OWN_ID, content="hi bob", timestamp=1))
            await wait_until(lambda: received)
            assert received[0].content == "hi bob"

            # Already connected: connect() is a no-op
            assert await manager.connect(peer)
            assert listener.connection_count() == 1
        finally:
            await manager.stop()
            await listener.stop()

    async def test_remote_close_schedules_reconnect(self):
        listener = await start_listener()
        manager = ConnectionManager(OWN_ID, "alice", base_delay=10)
        lost = []
        manager.on_peer_disconnected = lambda pid, name: lost.append(pid)
        peer = make_peer("bob", port=listener.port)
        try:
            await manager.connect(peer)
            await listener.stop()

            await wait_until(lambda: lost)
            assert lost == [peer.id]
            assert not manager.is_connected(peer.id)
            assert manager.reconnect_attempts(peer.id) == 1
        finally:
            await manager.stop()

    async def test_deliberate_disconnect_never_reconnects(self):
        listener = await start_listener()
        manager = ConnectionManager(OWN_ID, "alice", base_delay=0.01)
        peer = make_peer("bob", port=listener.port)
        try:
            await manager.connect(peer)
            await manager.disconnect(peer.id)
            await asyncio.sleep(0.1)

            assert not manager.is_connected(peer.id)
            assert manager.reconnect_attempts(peer.id) == 0
            assert not manager._reconnect_tasks
            assert not manager._peers
            assert not manager._reader_tasks
        finally:
            await manager.stop()
            await listener.stop()

    async def test_malformed_frame_from_peer_keeps_session(self):
        listener = await start_listener()
        manager = ConnectionManager(OWN_ID, "alice", base_delay=10)
        received = []
        manager.on_message = received.append
        peer = make_peer("bob", port=listener.port)
        try:
            await manager.connect(peer)
            await wait_until(lambda: listener.connection_count() == 1)

            listener.send_to(OWN_ID, frame_with_timestamp(peer.id, "NaN"))
            listener.send_to(OWN_ID, BroadcastMessage(sender=peer.id, content="still here", timestamp=1))
            await wait_until(lambda: received)

            assert [m.content for m in received] == ["still here"]
            assert manager.is_connected(peer.id)

            await manager.stop()
            assert manager.sessions == {}
        finally:
            await manager.stop()
            await listener.stop()

    async def test_update_peer_redirects_reconnects(self):
        old_listener = await start_listener()
        new_listener = await start_listener()
        manager = ConnectionManager(OWN_ID, "alice", base_delay=0.01)
        peer = make_peer("bob", port=old_listener.port)
        try:
            await manager.connect(peer)
            moved = make_peer("bob", port=new_listener.port, peer_id=peer.id)
            manager.update_peer(moved)

            await old_listener.stop()

            await wait_until(lambda: new_listener.connection_count() == 1)
            assert manager.is_connected(peer.id)
        finally:
            await manager.stop()
            await old_listener.stop()
            await new_listener.stop()


class BrokenWebSocket(MockWebSocket):
    """Open session whose receive side fails with an unexpected error."""

    async def __anext__(self):
        raise RuntimeError("decoder exploded")


@pytest.mark.asyncio
class TestReaderFailures:
    """Test that a failing outbound reader never wedges the manager."""

    async def test_failed_reader_closes_session_and_reconnects(self, caplog):
        manager = ConnectionManager(OWN_ID, "alice", base_delay=10)
        peer = make_peer("bob")
        lost = []
        manager.on_peer_disconnected = lambda pid, name: lost.append(pid)
        manager._peers[peer.id] = peer
        session = Session(BrokenWebSocket(), peer.id, "bob", OUTBOUND)
        manager.sessions[peer.id] = session
        manager._reader_tasks[peer.id] = asyncio.create_task(manager._read_loop(session))

        await wait_until(lambda: lost)

        assert lost == [peer.id]
        assert not manager.is_connected(peer.id)
        assert peer.id in manager._reconnect_tasks
        assert "decoder exploded" in caplog.text

        await manager.stop()
        assert not manager._reconnect_tasks

    async def test_disconnect_survives_crashed_reader(self):
        manager = ConnectionManager(OWN_ID, "alice")
        peer = make_peer("bob")

        async def crashed():
            raise ValueError("reader bug")

        manager.sessions[peer.id] = Session(MockWebSocket(), peer.id, "bob", OUTBOUND)
        manager._reader_tasks[peer.id] = asyncio.create_task(crashed())
        await asyncio.sleep(0)

        await manager.stop()

        assert manager.sessions == {}
        assert manager._reader_tasks == {}
