"""
LanChat - Utility functions.

Provides helpers for local address detection, validation, timestamps
and callback dispatch shared by the networking components.
"""

import asyncio
import inspect
import logging
import socket
import time
from datetime import datetime
from typing import Any, Callable, Optional, Set

from .constants import LOCALHOST, MAX_USERNAME_LENGTH

logger = logging.getLogger(__name__)

# Scheduled coroutine callbacks, held until they finish
_callback_tasks: Set["asyncio.Future[Any]"] = set()


def now_ms() -> int:
    """Current Unix time in milliseconds, as carried on the wire."""
    return int(time.time() * 1000)


def format_timestamp(timestamp_ms: int, format_str: str = "%H:%M:%S") -> str:
    """
    Format a wire timestamp (Unix milliseconds) for display.

    Args:
        timestamp_ms: Unix timestamp in milliseconds
        format_str: strftime format string

    Returns:
        Formatted local time, or an empty string if the timestamp is invalid
    """
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000).strftime(format_str)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.debug(f"Failed to format timestamp {timestamp_ms!r}: {e}")
        return ""


def get_local_ip() -> str:
    """
    Determine the IPv4 address other LAN hosts can reach us on.

    Connects a UDP socket towards a non-routable multicast address (no packet
    is sent) and reads back the source address the kernel picked. Falls back
    to the hostname lookup, then to localhost.

    Returns:
        Dotted-quad IPv4 address
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("239.255.255.250", 1))
            address = probe.getsockname()[0]
            if address and not address.startswith("0."):
                return address
    except OSError as e:
        logger.debug(f"Route probe for local address failed: {e}")

    try:
        for family, _, _, _, sockaddr in socket.getaddrinfo(socket.gethostname(), None):
            if family == socket.AF_INET and not sockaddr[0].startswith("127."):
                return sockaddr[0]
    except OSError as e:
        logger.warning(f"Error getting local addresses: {e}")

    return LOCALHOST


def validate_port(port: int) -> bool:
    """
    Validate a port number.

    Args:
        port: Port number to validate

    Returns:
        True if valid, False otherwise
    """
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535


def validate_username(username: Optional[str]) -> Optional[str]:
    """
    Check a display name chosen by the user.

    Returns:
        An error description, or None if the username is acceptable
    """
    if not username or not username.strip():
        return "Username is required"
    if len(username) > MAX_USERNAME_LENGTH:
        return f"Username must be {MAX_USERNAME_LENGTH} characters or less"
    if any(ch.isspace() for ch in username):
        return "Username must not contain spaces"
    return None


def short_id(peer_id: str) -> str:
    """Abbreviated peer id for log lines."""
    return peer_id[:8]


def dispatch_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """
    Invoke an event callback without letting it break the caller.

    Synchronous callbacks run immediately, so events are delivered in the order
    they are emitted. A coroutine returned by the callback is scheduled as a
    task on the running loop. Exceptions are logged and swallowed.
    """
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            _callback_tasks.add(task)
            task.add_done_callback(_log_callback_failure)
    except Exception as e:
        logger.error(f"Error in event callback {getattr(callback, '__name__', callback)}: {e}", exc_info=True)


def _log_callback_failure(task: "asyncio.Future[Any]") -> None:
    _callback_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Error in async event callback: {exc}", exc_info=exc)
