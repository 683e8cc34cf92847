"""
LanChat - Peer Discovery Service for automatic peer finding.

This module implements serverless peer discovery on the local network using
UDP multicast. Every process periodically announces itself to a well-known
group and queries the group once on startup; peers not heard from within the
expiry window are reported lost.
"""

import asyncio
import contextlib
import logging
import random
import socket
import struct
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .constants import (
    ANNOUNCE_INTERVAL,
    CLEANUP_INTERVAL,
    MAX_DATAGRAM_SIZE,
    MULTICAST_GROUP,
    MULTICAST_PORT,
    MULTICAST_TTL,
    PEER_TIMEOUT,
    QUERY_REPLY_JITTER,
)
from .errors import ProtocolParseError
from .peer import Peer
from .protocol import DiscoveryKind, DiscoveryPacket
from .utils import dispatch_callback, get_local_ip, short_id

logger = logging.getLogger(__name__)


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """Feeds received datagrams to the owning DiscoveryService."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if len(data) > MAX_DATAGRAM_SIZE:
            logger.warning(f"Dropping oversized discovery datagram from {addr[0]}")
            return
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery socket error: {exc}")


class DiscoveryService:
    """
    Peer discovery service using UDP multicast.

    Callbacks (assign a callable, or None to unsubscribe):
        on_peer_found(peer): a previously unknown id sent its first datagram
        on_peer_lost(peer_id): a peer was not heard from within peer_timeout
        on_peer_updated(peer): a known peer now advertises a different address,
            port, username or public key

    Callbacks are invoked synchronously, in the order the datagrams and sweeps
    that caused them are processed. Peers handed to callbacks are copies; the
    registry kept here is private.
    """

    def __init__(
        self,
        peer_id: str,
        username: str,
        port: int,
        public_key: str,
        address: Optional[str] = None,
        group: str = MULTICAST_GROUP,
        multicast_port: int = MULTICAST_PORT,
        ttl: int = MULTICAST_TTL,
        announce_interval: float = ANNOUNCE_INTERVAL,
        cleanup_interval: float = CLEANUP_INTERVAL,
        peer_timeout: float = PEER_TIMEOUT,
        reply_jitter: float = QUERY_REPLY_JITTER,
    ):
        """
        Initialize discovery service.

        Args:
            peer_id: This process's unique id
            username: This process's display name
            port: Session listen port to advertise
            public_key: Public key to advertise (hex)
            address: Address to advertise (default: detected LAN address)
            group: Multicast group address
            multicast_port: Multicast UDP port
            ttl: Multicast TTL
            announce_interval: Seconds between announcements
            cleanup_interval: Seconds between stale peer sweeps
            peer_timeout: Seconds of silence before a peer is lost
            reply_jitter: Upper bound of the random delay before answering a query
        """
        self.peer_id = peer_id
        self.username = username
        self.port = port
        self.public_key = public_key
        self.address = address or get_local_ip()

        self.group = group
        self.multicast_port = multicast_port
        self.ttl = ttl
        self.announce_interval = announce_interval
        self.cleanup_interval = cleanup_interval
        self.peer_timeout = peer_timeout
        self.reply_jitter = reply_jitter

        self.peers: Dict[str, Peer] = {}

        self.running = False
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._sock: Optional[socket.socket] = None
        self._joined = False
        self.announce_task: Optional[asyncio.Task] = None
        self.cleanup_task: Optional[asyncio.Task] = None
        self._reply_tasks: Set[asyncio.Task] = set()

        # Callbacks
        self.on_peer_found: Optional[Callable[[Peer], Any]] = None
        self.on_peer_lost: Optional[Callable[[str], Any]] = None
        self.on_peer_updated: Optional[Callable[[Peer], Any]] = None

    async def start(self) -> bool:
        """
        Join the multicast group and start announcing.

        Sends one query immediately, then announces immediately and every
        announce_interval seconds.

        Returns:
            True if started successfully
        """
        if self.running:
            return True

        try:
            self._sock = self._create_socket()
            loop = asyncio.get_running_loop()
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(self), sock=self._sock
            )
        except OSError as e:
            logger.error(f"Failed to start discovery service: {e}", exc_info=True)
            if self._sock is not None:
                self._sock.close()
                self._sock = None
            return False

        self.running = True
        logger.info(
            f"Discovery listening on {self.group}:{self.multicast_port} "
            f"as {self.username} ({short_id(self.peer_id)}) at {self.address}:{self.port}"
        )

        self.send_query()
        self.announce_task = asyncio.create_task(self._announcement_loop())
        self.cleanup_task = asyncio.create_task(self._cleanup_loop())
        return True

    async def stop(self) -> None:
        """Stop discovery service, cancelling every timer and leaving the group."""
        logger.info("Stopping discovery service...")
        self.running = False

        tasks = [t for t in (self.announce_task, self.cleanup_task) if t is not None]
        tasks.extend(self._reply_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.announce_task = None
        self.cleanup_task = None
        self._reply_tasks.clear()

        if self._sock is not None and self._joined:
            try:
                self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, self._membership())
            except OSError as e:
                logger.debug(f"Error leaving multicast group: {e}")
            self._joined = False

        if self.transport is not None:
            self.transport.close()
            self.transport = None
        self._sock = None

        logger.info("Discovery service stopped")

    def current_peers(self) -> List[Peer]:
        """Get copies of all live peers."""
        return [peer.copy() for peer in self.peers.values()]

    def get_peer(self, peer_id: str) -> Optional[Peer]:
        """Get a copy of a specific peer by id."""
        peer = self.peers.get(peer_id)
        return peer.copy() if peer else None

    def get_statistics(self) -> Dict[str, Any]:
        """Get discovery statistics."""
        return {
            "running": self.running,
            "peer_id": self.peer_id,
            "address": self.address,
            "port": self.port,
            "known_peers": len(self.peers),
            "joined_group": self._joined,
        }

    def handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        """Process one received datagram."""
        try:
            packet = DiscoveryPacket.from_bytes(data)
        except ProtocolParseError as e:
            logger.warning(f"Dropping malformed discovery datagram from {addr[0]}: {e}")
            return

        # Multicast loopback delivers our own datagrams back to us
        if packet.id == self.peer_id:
            return

        now = time.monotonic()
        peer = self.peers.get(packet.id)
        if peer is None:
            peer = Peer(
                id=packet.id,
                username=packet.username,
                address=packet.ip,
                port=packet.port,
                public_key=packet.public_key,
                last_seen=now,
            )
            self.peers[packet.id] = peer
            logger.info(f"Discovered peer: {peer.label} at {peer.address}:{peer.port}")
            dispatch_callback(self.on_peer_found, peer.copy())
        else:
            advertised = (peer.address, peer.port, peer.username, peer.public_key)
            peer.touch(packet.ip, packet.port, packet.username, packet.public_key, now)
            if advertised != (peer.address, peer.port, peer.username, peer.public_key):
                logger.info(f"Peer changed: {peer.label} now at {peer.address}:{peer.port}")
                dispatch_callback(self.on_peer_updated, peer.copy())

        if packet.kind is DiscoveryKind.QUERY:
            self._schedule_reply()

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        Remove peers not seen within peer_timeout.

        Returns:
            Ids of the peers that were removed
        """
        if now is None:
            now = time.monotonic()

        stale = [pid for pid, peer in self.peers.items() if not peer.is_fresh(self.peer_timeout, now)]
        for pid in stale:
            peer = self.peers.pop(pid)
            logger.info(f"Peer lost: {peer.label}")
            dispatch_callback(self.on_peer_lost, pid)
        return stale

    def send_announce(self) -> None:
        """Announce our presence to the group."""
        self._send(DiscoveryKind.ANNOUNCE)

    def send_query(self) -> None:
        """Ask every peer on the group to announce itself."""
        self._send(DiscoveryKind.QUERY)

    def _send(self, kind: DiscoveryKind) -> None:
        if self.transport is None or self.transport.is_closing():
            return

        packet = DiscoveryPacket(
            kind=kind,
            id=self.peer_id,
            username=self.username,
            ip=self.address,
            port=self.port,
            public_key=self.public_key,
        )
        try:
            self.transport.sendto(packet.to_bytes(), (self.group, self.multicast_port))
        except OSError as e:
            logger.warning(f"Failed to send discovery {kind.value}: {e}")

    def _schedule_reply(self) -> None:
        """Answer a query after a random delay so repliers do not all fire at once."""
        if not self.running:
            return
        delay = random.uniform(0, self.reply_jitter)
        task = asyncio.create_task(self._delayed_announce(delay))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _delayed_announce(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.running:
            self.send_announce()

    async def _announcement_loop(self) -> None:
        """Announce immediately, then every announce_interval seconds."""
        while self.running:
            try:
                self.send_announce()
                await asyncio.sleep(self.announce_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in announcement loop: {e}")

    async def _cleanup_loop(self) -> None:
        """Sweep stale peers every cleanup_interval seconds."""
        while self.running:
            try:
                await asyncio.sleep(self.cleanup_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")

    def _membership(self) -> bytes:
        return struct.pack("4s4s", socket.inet_aton(self.group), socket.inet_aton("0.0.0.0"))

    def _create_socket(self) -> socket.socket:
        """Create the multicast socket, bound to the group port on all interfaces."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                with contextlib.suppress(OSError):
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", self.multicast_port))

            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, self._membership())
                self._joined = True
            except OSError as e:
                logger.error(f"Failed to join multicast group {self.group}: {e}")

            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock
