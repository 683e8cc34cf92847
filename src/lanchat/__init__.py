"""
LanChat - Serverless chat for the local network

Peers find each other with UDP multicast, talk over WebSocket sessions,
and encrypt private messages end to end with per-pair ECDH keys.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    BindConflictError,
    ConfigError,
    CryptoError,
    DecryptionError,
    ErrorCode,
    FormatError,
    LanChatError,
    PeerNotFoundError,
    ProtocolParseError,
    SessionError,
)

__all__ = [
    "APP_NAME",
    "VERSION",
    "BindConflictError",
    "Config",
    "ConfigError",
    "CryptoError",
    "DecryptionError",
    "ErrorCode",
    "FormatError",
    "LanChatError",
    "PeerNotFoundError",
    "ProtocolParseError",
    "SessionError",
    "__license__",
    "__version__",
]
