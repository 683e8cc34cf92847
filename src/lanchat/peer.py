"""
LanChat - Peer model and peer registry.

A Peer is a remote process found through discovery. Its identity is the
random per-process id; usernames are display names only and may collide.
"""

import dataclasses
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .constants import PEER_TIMEOUT
from .utils import short_id

logger = logging.getLogger(__name__)


@dataclass
class Peer:
    """Represents a discovered peer."""

    id: str
    username: str
    address: str
    port: int
    public_key: str
    last_seen: float = field(default_factory=time.monotonic)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def copy(self) -> "Peer":
        """Independent copy, so registries never share Peer objects."""
        return dataclasses.replace(self)

    def is_fresh(self, timeout: float = PEER_TIMEOUT, now: Optional[float] = None) -> bool:
        """Check whether the peer has been heard from within ``timeout`` seconds."""
        if now is None:
            now = time.monotonic()
        return (now - self.last_seen) <= timeout

    def touch(self, address: str, port: int, username: str, public_key: str, now: Optional[float] = None) -> None:
        """Refresh the peer from a newer discovery datagram."""
        if now is None:
            now = time.monotonic()
        self.address = address
        self.port = port
        self.username = username
        self.public_key = public_key
        self.last_seen = max(self.last_seen, now)

    @property
    def label(self) -> str:
        """Username plus abbreviated id, for logs and notices."""
        return f"{self.username} ({short_id(self.id)})"


class PeerRegistry:
    """
    Live peers keyed by id.

    This is the Router's merged view of what Discovery reported. Discovery keeps
    its own private registry; peers are copied on the way in.
    """

    def __init__(self):
        self._peers: Dict[str, Peer] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    def __iter__(self) -> Iterator[Peer]:
        return iter(list(self._peers.values()))

    def upsert(self, peer: Peer) -> bool:
        """
        Add or update a peer.

        Returns:
            True if the peer id was not previously known
        """
        existing = self._peers.get(peer.id)
        if existing is None:
            self._peers[peer.id] = peer.copy()
            return True
        existing.touch(peer.address, peer.port, peer.username, peer.public_key, peer.last_seen)
        return False

    def remove(self, peer_id: str) -> Optional[Peer]:
        """Remove a peer, returning it if it was present."""
        return self._peers.pop(peer_id, None)

    def get(self, peer_id: str) -> Optional[Peer]:
        """Get a peer by id."""
        return self._peers.get(peer_id)

    def find_by_username(self, username: str) -> Optional[Peer]:
        """
        Resolve a display name to a peer.

        Usernames are not unique: this is a linear scan in insertion order and
        the first match wins. Other peers sharing the name are unreachable by
        name.
        """
        for peer in self._peers.values():
            if peer.username == username:
                return peer
        return None

    def all(self) -> List[Peer]:
        """All known peers, in discovery order."""
        return list(self._peers.values())

    def clear(self) -> None:
        self._peers.clear()
