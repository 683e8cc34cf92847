"""
LanChat - Global Constants and Configuration Values

This module defines all constants used throughout the LanChat application.
All magic numbers and protocol defaults are centralized here.

Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "LanChat"

# Network Constants
DEFAULT_LISTEN_PORT = 9876
DEFAULT_HOST = "0.0.0.0"
LOCALHOST = "127.0.0.1"
MAX_BIND_ATTEMPTS = 10

# Session endpoints
CHAT_PATH = "/chat"
HEALTH_PATH = "/health"
ANONYMOUS_USERNAME = "Anonymous"

# Connection Timeouts (seconds)
CONNECT_TIMEOUT = 10
CLOSE_TIMEOUT = 2

# Retry Configuration
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 2  # seconds, doubled per attempt
RECONNECT_BACKOFF_MULTIPLIER = 2

# Message Limits
MAX_MESSAGE_SIZE = 16 * 1024 * 1024  # 16 MB
SEND_QUEUE_MAX_SIZE = 1000  # per session
MAX_USERNAME_LENGTH = 20
MAX_DATAGRAM_SIZE = 65507

# Peer Discovery Constants
MULTICAST_GROUP = "239.255.255.250"
MULTICAST_PORT = 54321
MULTICAST_TTL = 128
ANNOUNCE_INTERVAL = 5  # seconds
CLEANUP_INTERVAL = 10  # seconds
PEER_TIMEOUT = 15  # seconds without a datagram before a peer is lost
QUERY_REPLY_JITTER = 1.0  # seconds, upper bound of uniform reply delay

# Cryptography Constants
IV_SIZE = 16  # AES block size
CIPHERTEXT_DELIMITER = ":"
PEER_ID_BYTES = 16  # 128-bit random peer ids
DECRYPTION_FAILED = "[Unable to decrypt message]"

# UI Configuration
UI_TYPING_INDICATOR_TIMEOUT = 3  # seconds
UI_TYPING_SEND_INTERVAL = 2  # seconds between outgoing typing notifications
UI_MAX_MESSAGE_HISTORY = 1000

# File Paths
DEFAULT_DATA_DIR = "~/.lanchat"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "lanchat.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
