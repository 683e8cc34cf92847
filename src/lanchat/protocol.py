"""
LanChat - Wire protocol definitions.

This module defines the two wire formats used between peers, both UTF-8 JSON
objects with a mandatory ``type`` discriminant:

Discovery datagrams (UDP multicast)::

    {"type": "announce"|"query", "id", "username", "ip", "port",
     "publicKey", "timestamp"}

Session messages (one WebSocket text frame each)::

    {"type": "broadcast"|"dm"|"typing"|"presence", "from", "to"?, "content",
     "timestamp", "encrypted"?, "senderPublicKey"?, "username"?}

``from`` and ``to`` carry peer ids. Timestamps are Unix milliseconds.
Decoding validates every field a variant requires and raises
ProtocolParseError otherwise.
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from .errors import ErrorCode, ProtocolParseError
from .utils import now_ms, validate_port


class DiscoveryKind(str, Enum):
    """Discovery datagram types."""

    ANNOUNCE = "announce"
    QUERY = "query"


class MessageKind(str, Enum):
    """Session message types."""

    BROADCAST = "broadcast"
    DIRECT = "dm"
    TYPING = "typing"
    PRESENCE = "presence"


@dataclass(frozen=True)
class DiscoveryPacket:
    """An announce or query datagram."""

    kind: DiscoveryKind
    id: str
    username: str
    ip: str
    port: int
    public_key: str
    timestamp: int = field(default_factory=now_ms)

    def to_bytes(self) -> bytes:
        """Encode for sending on the multicast socket."""
        return json.dumps(
            {
                "type": self.kind.value,
                "id": self.id,
                "username": self.username,
                "ip": self.ip,
                "port": self.port,
                "publicKey": self.public_key,
                "timestamp": self.timestamp,
            }
        ).encode("utf-8")

    @staticmethod
    def from_bytes(data: bytes) -> "DiscoveryPacket":
        """
        Decode and validate a received datagram.

        Raises:
            ProtocolParseError: If the datagram is not a well-formed announce/query
        """
        payload = _load_json_object(data)

        try:
            kind = DiscoveryKind(payload.get("type"))
        except ValueError:
            raise ProtocolParseError(
                message="Unknown discovery datagram type",
                details={"type": payload.get("type")},
            )

        port = payload.get("port")
        if not validate_port(port):
            raise ProtocolParseError(message="Invalid port in discovery datagram", details={"port": port})

        return DiscoveryPacket(
            kind=kind,
            id=_require_str(payload, "id"),
            username=_require_str(payload, "username"),
            ip=_require_str(payload, "ip"),
            port=port,
            public_key=_require_str(payload, "publicKey"),
            timestamp=_timestamp(payload),
        )


@dataclass(frozen=True)
class BroadcastMessage:
    """Plaintext message sent to every peer."""

    KIND: ClassVar[MessageKind] = MessageKind.BROADCAST

    sender: str
    content: str
    timestamp: int = field(default_factory=now_ms)
    username: Optional[str] = None

    @property
    def kind(self) -> MessageKind:
        return self.KIND


@dataclass(frozen=True)
class DirectMessage:
    """Private message; ``content`` is the ciphertext blob, opaque in transit."""

    KIND: ClassVar[MessageKind] = MessageKind.DIRECT

    sender: str
    recipient: str
    content: str
    sender_public_key: str
    timestamp: int = field(default_factory=now_ms)
    username: Optional[str] = None

    @property
    def kind(self) -> MessageKind:
        return self.KIND


@dataclass(frozen=True)
class TypingMessage:
    """Transient 'is typing' notification."""

    KIND: ClassVar[MessageKind] = MessageKind.TYPING

    sender: str
    timestamp: int = field(default_factory=now_ms)
    username: Optional[str] = None

    @property
    def kind(self) -> MessageKind:
        return self.KIND

    @property
    def content(self) -> str:
        return ""


@dataclass(frozen=True)
class PresenceMessage:
    """Transient presence notification such as 'joined' or 'left'."""

    KIND: ClassVar[MessageKind] = MessageKind.PRESENCE

    sender: str
    content: str
    timestamp: int = field(default_factory=now_ms)
    username: Optional[str] = None

    @property
    def kind(self) -> MessageKind:
        return self.KIND


Message = Union[BroadcastMessage, DirectMessage, TypingMessage, PresenceMessage]


def encode_message(message: Message) -> str:
    """Serialize a session message to its JSON text frame."""
    payload: Dict[str, Any] = {
        "type": message.kind.value,
        "from": message.sender,
        "content": message.content,
        "timestamp": message.timestamp,
    }
    if isinstance(message, DirectMessage):
        payload["to"] = message.recipient
        payload["encrypted"] = True
        payload["senderPublicKey"] = message.sender_public_key
    if message.username is not None:
        payload["username"] = message.username
    return json.dumps(payload)


def decode_message(raw: Union[str, bytes]) -> Message:
    """
    Parse and validate a session message.

    Raises:
        ProtocolParseError: If the type or sender is missing, the type is
            unknown, or a variant's required fields are absent
    """
    payload = _load_json_object(raw)

    if not payload.get("type") or not payload.get("from"):
        raise ProtocolParseError(message="Message missing type or sender")

    try:
        kind = MessageKind(payload["type"])
    except ValueError:
        raise ProtocolParseError(message="Unknown message type", details={"type": payload["type"]})

    sender = _require_str(payload, "from")
    timestamp = _timestamp(payload)
    username = _optional_str(payload, "username")
    content = payload.get("content", "")
    if not isinstance(content, str):
        raise ProtocolParseError(message="Message content must be a string")

    if kind is MessageKind.BROADCAST:
        return BroadcastMessage(sender=sender, content=content, timestamp=timestamp, username=username)
    if kind is MessageKind.DIRECT:
        if not content:
            raise ProtocolParseError(message="Direct message has no ciphertext")
        return DirectMessage(
            sender=sender,
            recipient=_require_str(payload, "to"),
            content=content,
            sender_public_key=_require_str(payload, "senderPublicKey"),
            timestamp=timestamp,
            username=username,
        )
    if kind is MessageKind.TYPING:
        return TypingMessage(sender=sender, timestamp=timestamp, username=username)
    return PresenceMessage(sender=sender, content=content, timestamp=timestamp, username=username)


def _load_json_object(raw: Union[str, bytes]) -> Dict[str, Any]:
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolParseError(ErrorCode.E206_INVALID_MESSAGE, "Payload is not valid JSON", {"error": str(e)})
    if not isinstance(payload, dict):
        raise ProtocolParseError(message="Payload is not a JSON object")
    return payload


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolParseError(message=f"Missing or invalid field '{key}'", details={"field": key})
    return value


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolParseError(message=f"Field '{key}' must be a string", details={"field": key})
    return value


def _timestamp(payload: Dict[str, Any]) -> int:
    value = payload.get("timestamp")
    if value is None:
        return now_ms()
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolParseError(message="Invalid timestamp", details={"timestamp": value})
    # JSON NaN, Infinity and 1e400 decode to non-finite floats
    if isinstance(value, float) and not math.isfinite(value):
        raise ProtocolParseError(message="Invalid timestamp", details={"timestamp": value})
    return int(value)
