"""
LanChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the LanChat application. Each error has a unique code for logging and debugging.

Only BindConflictError is fatal; every other error in this module is handled
at the component boundary where it occurs and never terminates the process.

Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all LanChat error codes."""

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_INVALID_CIPHERTEXT_FORMAT = "E104"

    # Network Errors (E200-E299)
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E206_INVALID_MESSAGE = "E206"
    E209_HANDSHAKE_FAILED = "E209"

    # Peer Errors (E400-E499)
    E401_PEER_NOT_FOUND = "E401"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Listener Errors (E800-E899)
    E801_BIND_CONFLICT = "E801"


class LanChatError(Exception):
    """Base exception class for all LanChat errors.

    All custom exceptions in LanChat inherit from this class.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a LanChat error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class ProtocolParseError(LanChatError):
    """Exception raised for malformed discovery datagrams or session payloads.

    Always handled by logging and dropping the offending payload.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E206_INVALID_MESSAGE,
        message: str = "Malformed payload",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SessionError(LanChatError):
    """Exception raised when an outbound session cannot be opened."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_CONNECTION_FAILED,
        message: str = "Session operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class CryptoError(LanChatError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionError(CryptoError):
    """Exception raised when a private payload cannot be decrypted."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class FormatError(DecryptionError):
    """Exception raised when an encrypted blob is not '<iv hex>:<ciphertext hex>'."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E104_INVALID_CIPHERTEXT_FORMAT,
        message: str = "Invalid encrypted message format",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class BindConflictError(LanChatError):
    """Exception raised when no listen port could be bound within the retry cap."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E801_BIND_CONFLICT,
        message: str = "Could not bind a listen port",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PeerNotFoundError(LanChatError):
    """Exception raised when a direct message target cannot be resolved."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E401_PEER_NOT_FOUND,
        message: str = "Peer not found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(LanChatError):
    """Exception raised for configuration failures.

    This covers loading and parsing configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
