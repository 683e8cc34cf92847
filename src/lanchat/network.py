"""
LanChat - Asynchronous peer-to-peer session layer.

This module implements:
- WebSocket sessions with a bounded per-session send queue
- Inbound listener with bind retry, local relay and a health probe
- Outbound connection manager with exponential reconnection backoff
- Best-effort fan-out of messages to open sessions

Every component exposes plain callback attributes (None to unsubscribe):
on_message(message), on_peer_connected(peer_id, username) and
on_peer_disconnected(peer_id, username).
"""

import asyncio
import contextlib
import errno
import json
import logging
import time
from http import HTTPStatus
from typing import Any, Callable, Dict, Iterable, Optional, Set, Union
from urllib.parse import parse_qs, urlencode, urlsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.http11 import Request, Response
from websockets.protocol import State

from .constants import (
    ANONYMOUS_USERNAME,
    CHAT_PATH,
    CLOSE_TIMEOUT,
    CONNECT_TIMEOUT,
    DEFAULT_HOST,
    DEFAULT_LISTEN_PORT,
    HEALTH_PATH,
    MAX_BIND_ATTEMPTS,
    MAX_MESSAGE_SIZE,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BACKOFF_MULTIPLIER,
    RECONNECT_DELAY,
    SEND_QUEUE_MAX_SIZE,
)
from .errors import BindConflictError, ErrorCode, ProtocolParseError, SessionError
from .peer import Peer
from .protocol import DirectMessage, Message, decode_message, encode_message
from .utils import dispatch_callback, short_id

logger = logging.getLogger(__name__)

INBOUND = "inbound"
OUTBOUND = "outbound"


class Session:
    """
    One open WebSocket to a peer.

    Outgoing frames go through a bounded queue drained by a writer task, so a
    slow peer never blocks sends to the others.
    """

    def __init__(self, websocket: Any, peer_id: str, username: str, direction: str):
        self.websocket = websocket
        self.peer_id = peer_id
        self.username = username
        self.direction = direction

        self.send_queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=SEND_QUEUE_MAX_SIZE)
        self.send_task: Optional[asyncio.Task] = None
        self.opened_at = time.monotonic()

        self.messages_sent = 0
        self.messages_received = 0

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    @property
    def label(self) -> str:
        return f"{self.username} ({short_id(self.peer_id)}, {self.direction})"

    def start(self) -> None:
        """Start the writer task."""
        if self.send_task is None:
            self.send_task = asyncio.create_task(self._send_loop())

    def send(self, frame: str) -> bool:
        """
        Queue an encoded frame for sending.

        Returns:
            True if the frame was queued, False if the session is closed or
            its queue is full
        """
        if not self.is_open:
            return False
        try:
            self.send_queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(f"Send queue full for {self.label}, dropping message")
            return False
        return True

    async def close(self, flush: bool = True) -> None:
        """
        Close the session.

        Args:
            flush: Give queued frames up to CLOSE_TIMEOUT seconds to go out first
        """
        if flush and self.send_task is not None and not self.send_task.done():
            try:
                await asyncio.wait_for(self.send_queue.join(), timeout=CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug(f"Timed out flushing send queue for {self.label}")

        if self.send_task is not None:
            self.send_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.send_task
            self.send_task = None

        await self.websocket.close()

    async def _send_loop(self) -> None:
        """Background task for sending frames."""
        logger.debug(f"Send loop started for {self.label}")
        try:
            while True:
                frame = await self.send_queue.get()
                try:
                    await self.websocket.send(frame)
                    self.messages_sent += 1
                except ConnectionClosed as e:
                    logger.debug(f"Session {self.label} closed while sending: {e}")
                    break
                finally:
                    self.send_queue.task_done()
        except asyncio.CancelledError:
            logger.debug(f"Send loop cancelled for {self.label}")
        finally:
            logger.debug(f"Send loop ended for {self.label}")


def _encode(message: Union[Message, str]) -> str:
    return message if isinstance(message, str) else encode_message(message)


def _as_text(raw: Union[str, bytes]) -> str:
    return raw if isinstance(raw, str) else raw.decode("utf-8")


class InboundListener:
    """
    Accepts sessions opened by other peers.

    Sessions are opened on ``/chat?id=<peer id>&username=<name>``. Direct
    messages addressed to another peer holding an inbound session here are
    relayed to it unchanged.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_LISTEN_PORT,
        max_bind_attempts: int = MAX_BIND_ATTEMPTS,
    ):
        self.host = host
        self.requested_port = port
        self.port = port
        self.max_bind_attempts = max_bind_attempts

        self.server: Optional[Server] = None
        self.sessions: Dict[str, Session] = {}
        self.started_at: Optional[float] = None

        # Callbacks
        self.on_message: Optional[Callable[[Message], Any]] = None
        self.on_peer_connected: Optional[Callable[[str, str], Any]] = None
        self.on_peer_disconnected: Optional[Callable[[str, str], Any]] = None

    async def start(self) -> int:
        """
        Bind and start accepting sessions.

        If the port is taken, the next port up is tried, up to
        max_bind_attempts ports in total.

        Returns:
            The port actually bound

        Raises:
            BindConflictError: If every candidate port was in use
        """
        for attempt in range(self.max_bind_attempts):
            candidate = self.requested_port + attempt if self.requested_port else 0
            try:
                self.server = await serve(
                    self._handle_session,
                    self.host,
                    candidate,
                    process_request=self._process_request,
                    max_size=MAX_MESSAGE_SIZE,
                    close_timeout=CLOSE_TIMEOUT,
                )
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise
                logger.warning(f"Port {candidate} is in use, trying {candidate + 1}")
                continue

            self.port = self.server.sockets[0].getsockname()[1]
            self.started_at = time.monotonic()
            logger.info(f"Listening for sessions on {self.host}:{self.port}")
            return self.port

        last = self.requested_port + self.max_bind_attempts - 1
        raise BindConflictError(
            ErrorCode.E801_BIND_CONFLICT,
            f"Ports {self.requested_port}-{last} are all in use",
            {"first_port": self.requested_port, "attempts": self.max_bind_attempts},
        )

    async def stop(self) -> None:
        """Close every session and the server."""
        if self.server is None:
            return

        logger.info("Stopping inbound listener...")
        self.server.close()
        await self.server.wait_closed()
        for session in list(self.sessions.values()):
            await session.close(flush=False)
        self.sessions.clear()
        self.server = None
        logger.info("Inbound listener stopped")

    def uptime(self) -> float:
        """Seconds since the listener was bound."""
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    def connection_count(self) -> int:
        return len(self.sessions)

    def health(self) -> Dict[str, Any]:
        """Body of the status probe."""
        return {
            "status": "ok",
            "connections": self.connection_count(),
            "uptime": round(self.uptime(), 3),
        }

    def send_to(self, peer_id: str, message: Union[Message, str]) -> bool:
        """Send to one peer's inbound session, if it has one."""
        session = self.sessions.get(peer_id)
        if session is None:
            logger.warning(f"No inbound session for {short_id(peer_id)}; message not sent")
            return False
        return session.send(_encode(message))

    def broadcast(self, message: Union[Message, str], exclude: Optional[Iterable[str]] = None) -> int:
        """
        Send to every inbound session.

        Returns:
            Number of sessions the message was queued on
        """
        excluded = set(exclude or ())
        frame = _encode(message)
        return sum(
            1 for pid, session in list(self.sessions.items()) if pid not in excluded and session.send(frame)
        )

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Serve the status probe and reject anything that is not a valid session request."""
        url = urlsplit(request.path)

        if url.path == HEALTH_PATH:
            response = connection.respond(HTTPStatus.OK, json.dumps(self.health()) + "\n")
            del response.headers["Content-Type"]
            response.headers["Content-Type"] = "application/json"
            return response

        if url.path != CHAT_PATH:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")

        if not parse_qs(url.query).get("id", [""])[0]:
            logger.warning(f"Rejected session without peer id from {connection.remote_address}")
            return connection.respond(HTTPStatus.BAD_REQUEST, "Missing peer id\n")

        return None

    async def _handle_session(self, websocket: ServerConnection) -> None:
        params = parse_qs(urlsplit(websocket.request.path).query)
        peer_id = params["id"][0]
        username = params.get("username", [""])[0] or ANONYMOUS_USERNAME

        session = Session(websocket, peer_id, username, INBOUND)
        session.start()

        # A reconnecting peer replaces its stale session
        previous = self.sessions.get(peer_id)
        self.sessions[peer_id] = session
        if previous is not None:
            await previous.close(flush=False)

        logger.info(f"Inbound session opened: {session.label} from {websocket.remote_address}")
        dispatch_callback(self.on_peer_connected, peer_id, username)

        try:
            async for raw in websocket:
                session.messages_received += 1
                try:
                    self._handle_frame(session, raw)
                except Exception as e:
                    logger.error(f"Error handling message from {session.label}: {e}", exc_info=True)
        except ConnectionClosed as e:
            logger.debug(f"Inbound session {session.label} closed: {e}")
        finally:
            current = self.sessions.get(peer_id) is session
            if current:
                del self.sessions[peer_id]
            await session.close(flush=False)
            if current:
                logger.info(f"Inbound session closed: {session.label}")
                dispatch_callback(self.on_peer_disconnected, peer_id, username)

    def _handle_frame(self, session: Session, raw: Union[str, bytes]) -> None:
        try:
            message = decode_message(raw)
        except ProtocolParseError as e:
            logger.warning(f"Dropping malformed message from {session.label}: {e}")
            return

        if isinstance(message, DirectMessage):
            target = self.sessions.get(message.recipient)
            if target is not None and target is not session:
                logger.debug(f"Relaying direct message from {session.label} to {target.label}")
                target.send(_as_text(raw))

        dispatch_callback(self.on_message, message)


class ConnectionManager:
    """
    Owns the outbound sessions this process opens to discovered peers.

    A session that fails to open, or that closes on its own, is retried after
    base_delay * 2^attempt seconds, at most max_attempts times. Sessions closed
    through disconnect(), disconnect_all() or stop() are never retried.
    """

    def __init__(
        self,
        peer_id: str,
        username: str,
        base_delay: float = RECONNECT_DELAY,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.peer_id = peer_id
        self.username = username
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.connect_timeout = connect_timeout

        self.running = True
        self.sessions: Dict[str, Session] = {}
        self._peers: Dict[str, Peer] = {}
        self._reader_tasks: Dict[str, asyncio.Task] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._attempts: Dict[str, int] = {}
        self._connecting: Set[str] = set()

        # Callbacks
        self.on_message: Optional[Callable[[Message], Any]] = None
        self.on_peer_connected: Optional[Callable[[str, str], Any]] = None
        self.on_peer_disconnected: Optional[Callable[[str, str], Any]] = None

    def is_connected(self, peer_id: str) -> bool:
        session = self.sessions.get(peer_id)
        return session is not None and session.is_open

    def connection_count(self) -> int:
        return sum(1 for session in self.sessions.values() if session.is_open)

    def reconnect_attempts(self, peer_id: str) -> int:
        """Reconnection attempts scheduled since the last successful open."""
        return self._attempts.get(peer_id, 0)

    async def connect(self, peer: Peer) -> bool:
        """
        Open an outbound session to a peer.

        No-op if a live session already exists or one is being opened. A
        pending reconnection is cancelled and the attempt counter reset, so a
        rediscovered peer is dialled immediately.

        Returns:
            True if a session to the peer is open afterwards
        """
        if not self.running:
            return False
        if self.is_connected(peer.id) or peer.id in self._connecting:
            return self.is_connected(peer.id)

        self._peers[peer.id] = peer.copy()
        self._cancel_reconnect(peer.id)
        self._attempts.pop(peer.id, None)
        return await self._attempt(peer.id)

    def update_peer(self, peer: Peer) -> None:
        """Point later dials at the address, port and name a peer now advertises."""
        if peer.id in self._peers:
            self._peers[peer.id] = peer.copy()

    def send_to(self, peer: Peer, message: Union[Message, str]) -> bool:
        """
        Send to one peer, best-effort.

        Returns:
            True if the message was queued on an open session
        """
        session = self.sessions.get(peer.id)
        if session is None or not session.is_open:
            logger.warning(f"No open session to {peer.label}; message not sent")
            return False
        return session.send(_encode(message))

    def broadcast(self, message: Union[Message, str], peers: Iterable[Peer]) -> int:
        """
        Send to every listed peer that has an open session.

        Returns:
            Number of peers the message was queued for
        """
        frame = _encode(message)
        return sum(1 for peer in peers if self.send_to(peer, frame))

    async def disconnect(self, peer_id: str) -> None:
        """Close the session to a peer and cancel any pending reconnection."""
        # Peers missing from _peers are never dialled again
        self._peers.pop(peer_id, None)
        self._attempts.pop(peer_id, None)
        pending = self._cancel_reconnect(peer_id)
        if pending is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await pending

        reader = self._reader_tasks.pop(peer_id, None)
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader

        session = self.sessions.pop(peer_id, None)
        if session is not None:
            await session.close()
            logger.info(f"Disconnected from {session.label}")
            dispatch_callback(self.on_peer_disconnected, peer_id, session.username)

    async def disconnect_all(self) -> None:
        """Close every session and cancel every pending reconnection."""
        peer_ids = set(self.sessions) | set(self._reconnect_tasks) | set(self._peers)
        for peer_id in peer_ids:
            await self.disconnect(peer_id)

    async def stop(self) -> None:
        logger.info("Stopping connection manager...")
        self.running = False
        await self.disconnect_all()
        logger.info("Connection manager stopped")

    async def _dial(self, peer: Peer) -> ClientConnection:
        """
        Open the WebSocket to a peer, identifying ourselves in the query string.

        Raises:
            SessionError: If the session could not be opened
        """
        query = urlencode({"id": self.peer_id, "username": self.username})
        uri = f"ws://{peer.address}:{peer.port}{CHAT_PATH}?{query}"
        try:
            return await connect(
                uri,
                open_timeout=self.connect_timeout,
                close_timeout=CLOSE_TIMEOUT,
                max_size=MAX_MESSAGE_SIZE,
            )
        except asyncio.TimeoutError as e:
            raise SessionError(ErrorCode.E202_CONNECTION_TIMEOUT, "Timed out opening session", {"uri": uri}) from e
        except InvalidHandshake as e:
            raise SessionError(ErrorCode.E209_HANDSHAKE_FAILED, f"Handshake rejected: {e}", {"uri": uri}) from e
        except (OSError, InvalidURI) as e:
            raise SessionError(ErrorCode.E201_CONNECTION_FAILED, str(e), {"uri": uri}) from e

    async def _attempt(self, peer_id: str) -> bool:
        peer = self._peers.get(peer_id)
        if peer is None or not self.running:
            return False

        self._connecting.add(peer_id)
        try:
            websocket = await self._dial(peer)
        except SessionError as e:
            logger.warning(f"Failed to connect to {peer.label} at {peer.address}:{peer.port}: {e.message}")
            dispatch_callback(self.on_peer_disconnected, peer_id, peer.username)
            self._schedule_reconnect(peer_id)
            return False
        finally:
            self._connecting.discard(peer_id)

        # disconnect() may have run while we were dialling
        if not self.running or peer_id not in self._peers:
            await websocket.close()
            return False

        session = Session(websocket, peer_id, peer.username, OUTBOUND)
        session.start()
        self.sessions[peer_id] = session
        self._attempts.pop(peer_id, None)
        self._reader_tasks[peer_id] = asyncio.create_task(self._read_loop(session))

        logger.info(f"Connected to {session.label} at {peer.address}:{peer.port}")
        dispatch_callback(self.on_peer_connected, peer_id, peer.username)
        return True

    async def _read_loop(self, session: Session) -> None:
        """Background task receiving frames on an outbound session."""
        try:
            async for raw in session.websocket:
                session.messages_received += 1
                try:
                    message = decode_message(raw)
                except ProtocolParseError as e:
                    logger.warning(f"Dropping malformed message from {session.label}: {e}")
                    continue
                except Exception as e:
                    logger.error(f"Error decoding message from {session.label}: {e}", exc_info=True)
                    continue
                dispatch_callback(self.on_message, message)
        except ConnectionClosed as e:
            logger.debug(f"Outbound session {session.label} closed: {e}")
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"Reader for {session.label} failed: {e}", exc_info=True)

        await self._session_closed(session)

    async def _session_closed(self, session: Session) -> None:
        peer_id = session.peer_id
        if self.sessions.get(peer_id) is not session:
            return

        del self.sessions[peer_id]
        self._reader_tasks.pop(peer_id, None)
        await session.close(flush=False)

        logger.info(f"Session to {session.label} closed")
        dispatch_callback(self.on_peer_disconnected, peer_id, session.username)
        self._schedule_reconnect(peer_id)

    def _schedule_reconnect(self, peer_id: str) -> None:
        if not self.running or peer_id not in self._peers or peer_id in self._reconnect_tasks:
            return

        attempts = self._attempts.get(peer_id, 0)
        if attempts >= self.max_attempts:
            logger.warning(f"Giving up on {short_id(peer_id)} after {attempts} reconnection attempts")
            self._attempts.pop(peer_id, None)
            return

        delay = self.base_delay * (RECONNECT_BACKOFF_MULTIPLIER ** attempts)
        self._attempts[peer_id] = attempts + 1
        logger.info(
            f"Reconnecting to {short_id(peer_id)} in {delay:g}s "
            f"(attempt {attempts + 1}/{self.max_attempts})"
        )
        self._reconnect_tasks[peer_id] = asyncio.create_task(self._reconnect_after(peer_id, delay))

    async def _reconnect_after(self, peer_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_tasks.pop(peer_id, None)
        await self._attempt(peer_id)

    def _cancel_reconnect(self, peer_id: str) -> Optional[asyncio.Task]:
        task = self._reconnect_tasks.pop(peer_id, None)
        if task is None or task is asyncio.current_task():
            return None
        task.cancel()
        return task
