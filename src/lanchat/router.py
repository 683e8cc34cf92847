"""
LanChat - Message router.

Wires discovery, the inbound listener, the connection manager and the crypto
engine together, keeps the merged live peer registry, and turns inbound
messages into display items for the user interface.
"""

import asyncio
import contextlib
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .config import DEFAULT_CONFIG, Config
from .constants import DECRYPTION_FAILED
from .crypto import CryptoEngine, generate_peer_id
from .discovery import DiscoveryService
from .errors import ErrorCode, FormatError, PeerNotFoundError
from .network import ConnectionManager, InboundListener
from .peer import Peer, PeerRegistry
from .protocol import (
    BroadcastMessage,
    DirectMessage,
    Message,
    MessageKind,
    PresenceMessage,
    TypingMessage,
)
from .utils import dispatch_callback, now_ms, short_id

logger = logging.getLogger(__name__)

PRESENCE_LEFT = "left"


@dataclass
class DisplayItem:
    """Something the user interface should show."""

    kind: MessageKind
    sender_id: str
    sender_name: str
    text: str
    timestamp: int = field(default_factory=now_ms)
    decrypted: bool = False


class MessageRouter:
    """
    Central coordinator of a chat process.

    Callbacks (assign a callable, or None to unsubscribe):
        on_peer_found(peer), on_peer_lost(peer)
        on_peer_connected(peer_id, username), on_peer_disconnected(peer_id, username)
        on_display(item)
    """

    def __init__(
        self,
        username: str,
        config: Optional[Config] = None,
        crypto: Optional[CryptoEngine] = None,
        peer_id: Optional[str] = None,
        listener: Optional[InboundListener] = None,
        connections: Optional[ConnectionManager] = None,
    ):
        """
        Initialize the router.

        Args:
            username: Our display name
            config: Loaded configuration (default: built-in defaults)
            crypto: Crypto engine (default: fresh key pair)
            peer_id: Our process id (default: freshly generated)
            listener: Inbound listener (default: built from config)
            connections: Connection manager (default: built from config)
        """
        settings = config.to_dict() if config is not None else copy.deepcopy(DEFAULT_CONFIG)
        network = settings["network"]
        reconnect = settings["reconnect"]
        self.discovery_settings: Dict[str, Any] = settings["discovery"]

        self.username = username
        self.peer_id = peer_id or generate_peer_id()
        self.crypto = crypto or CryptoEngine()
        self.registry = PeerRegistry()

        self.listener = listener or InboundListener(
            host=network["host"],
            port=network["port"],
            max_bind_attempts=network["max_bind_attempts"],
        )
        self.connections = connections or ConnectionManager(
            self.peer_id,
            username,
            base_delay=reconnect["base_delay"],
            max_attempts=reconnect["max_attempts"],
        )
        self.discovery: Optional[DiscoveryService] = None

        self.listener.on_message = self._handle_message
        self.listener.on_peer_connected = self._handle_inbound_opened
        self.listener.on_peer_disconnected = self._handle_inbound_closed
        self.connections.on_message = self._handle_message
        self.connections.on_peer_connected = self._handle_peer_connected
        self.connections.on_peer_disconnected = self._handle_peer_disconnected

        self.started_at: Optional[float] = None
        self._stopped = False
        self._tasks: Set[asyncio.Task] = set()

        # Callbacks
        self.on_peer_found: Optional[Callable[[Peer], Any]] = None
        self.on_peer_lost: Optional[Callable[[Peer], Any]] = None
        self.on_peer_connected: Optional[Callable[[str, str], Any]] = None
        self.on_peer_disconnected: Optional[Callable[[str, str], Any]] = None
        self.on_display: Optional[Callable[[DisplayItem], Any]] = None

    async def start(self) -> int:
        """
        Start the listener, then discovery advertising the bound port.

        Returns:
            The listen port actually bound

        Raises:
            BindConflictError: If no listen port could be bound
        """
        port = await self.listener.start()

        self.discovery = DiscoveryService(
            self.peer_id,
            self.username,
            port,
            self.crypto.public_key,
            group=self.discovery_settings["group"],
            multicast_port=self.discovery_settings["port"],
            ttl=self.discovery_settings["ttl"],
            announce_interval=self.discovery_settings["announce_interval"],
            cleanup_interval=self.discovery_settings["cleanup_interval"],
            peer_timeout=self.discovery_settings["peer_timeout"],
        )
        self.discovery.on_peer_found = self._handle_peer_found
        self.discovery.on_peer_lost = self._handle_peer_lost
        self.discovery.on_peer_updated = self._handle_peer_updated
        if not await self.discovery.start():
            logger.error("Discovery unavailable; peers on the network will not be found")

        self.started_at = time.monotonic()
        logger.info(f"Chat started as {self.username} ({short_id(self.peer_id)}) on port {port}")
        return port

    async def shutdown(self) -> None:
        """Say goodbye, then stop discovery, every session and the listener."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down...")

        self.send_presence(PRESENCE_LEFT)

        if self.discovery is not None:
            await self.discovery.stop()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        await self.connections.stop()
        await self.listener.stop()
        logger.info("Shutdown complete")

    def peers(self) -> List[Peer]:
        """Copies of every live peer, in discovery order."""
        return [peer.copy() for peer in self.registry]

    def status(self) -> Dict[str, Any]:
        """Summary of this process for status displays."""
        return {
            "peer_id": self.peer_id,
            "username": self.username,
            "port": self.listener.port,
            "peers": len(self.registry),
            "outbound_sessions": self.connections.connection_count(),
            "inbound_sessions": self.listener.connection_count(),
            "uptime": time.monotonic() - self.started_at if self.started_at is not None else 0.0,
            "discovery": self.discovery.get_statistics() if self.discovery is not None else None,
        }

    def send_broadcast(self, text: str) -> int:
        """
        Send a plaintext message to every peer with an open session.

        Returns:
            Number of peers the message was queued for
        """
        message = BroadcastMessage(sender=self.peer_id, content=text, username=self.username)
        sent = self.connections.broadcast(message, self.registry.all())
        logger.debug(f"Broadcast queued for {sent}/{len(self.registry)} peers")
        return sent

    def send_direct(self, target_username: str, text: str) -> bool:
        """
        Encrypt a message for one peer and send it over that peer's session.

        When several peers share the name, the first discovered wins.

        Returns:
            True if the peer's session accepted the message

        Raises:
            PeerNotFoundError: If no live peer has that username
            CryptoError: If the peer advertised an unusable public key
        """
        peer = self.registry.find_by_username(target_username)
        if peer is None:
            raise PeerNotFoundError(
                ErrorCode.E401_PEER_NOT_FOUND,
                f"No peer named '{target_username}'",
                {"username": target_username},
            )

        message = DirectMessage(
            sender=self.peer_id,
            recipient=peer.id,
            content=self.crypto.encrypt(text, peer.public_key),
            sender_public_key=self.crypto.public_key,
            username=self.username,
        )
        return self.connections.send_to(peer, message)

    def send_typing(self) -> int:
        """Tell every connected peer we are typing."""
        message = TypingMessage(sender=self.peer_id, username=self.username)
        return self.connections.broadcast(message, self.registry.all())

    def send_presence(self, text: str) -> int:
        """Send a presence notice such as 'joined' or 'left' to every connected peer."""
        message = PresenceMessage(sender=self.peer_id, content=text, username=self.username)
        return self.connections.broadcast(message, self.registry.all())

    def _handle_peer_found(self, peer: Peer) -> None:
        if self.registry.upsert(peer):
            dispatch_callback(self.on_peer_found, peer.copy())
        self._spawn(self.connections.connect(peer))

    def _handle_peer_updated(self, peer: Peer) -> None:
        self.registry.upsert(peer)
        self.connections.update_peer(peer)

    def _handle_peer_lost(self, peer_id: str) -> None:
        peer = self.registry.remove(peer_id)
        if peer is not None:
            dispatch_callback(self.on_peer_lost, peer)
        self._spawn(self.connections.disconnect(peer_id))

    def _handle_peer_connected(self, peer_id: str, username: str) -> None:
        dispatch_callback(self.on_peer_connected, peer_id, username)

    def _handle_peer_disconnected(self, peer_id: str, username: str) -> None:
        dispatch_callback(self.on_peer_disconnected, peer_id, username)

    def _handle_inbound_opened(self, peer_id: str, username: str) -> None:
        logger.debug(f"{username} ({short_id(peer_id)}) opened a session to us")

    def _handle_inbound_closed(self, peer_id: str, username: str) -> None:
        logger.debug(f"{username} ({short_id(peer_id)}) closed its session to us")

    def _handle_message(self, message: Message) -> None:
        if message.sender == self.peer_id:
            return

        if isinstance(message, DirectMessage):
            # Relayed direct messages for someone else pass through the listener
            if message.recipient != self.peer_id:
                return
            try:
                text = self.crypto.decrypt(message.content, message.sender_public_key)
            except FormatError as e:
                logger.warning(f"Malformed direct message from {short_id(message.sender)}: {e}")
                text = DECRYPTION_FAILED
            self._display(message, text, decrypted=text != DECRYPTION_FAILED)
        elif isinstance(message, (BroadcastMessage, PresenceMessage, TypingMessage)):
            self._display(message, message.content)

    def _display(self, message: Message, text: str, decrypted: bool = False) -> None:
        item = DisplayItem(
            kind=message.kind,
            sender_id=message.sender,
            sender_name=self._sender_name(message),
            text=text,
            timestamp=message.timestamp,
            decrypted=decrypted,
        )
        dispatch_callback(self.on_display, item)

    def _sender_name(self, message: Message) -> str:
        peer = self.registry.get(message.sender)
        if peer is not None:
            return peer.username
        return message.username or short_id(message.sender)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}", exc_info=task.exception())
