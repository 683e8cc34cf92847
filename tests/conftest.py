"""
Pytest configuration and fixtures for LanChat tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import os
import shutil
import socket
import tempfile
import time
from pathlib import Path
from typing import Generator, List

import pytest
from websockets.protocol import State

from lanchat.crypto import CryptoEngine, generate_peer_id
from lanchat.peer import Peer


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="lanchat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep LANCHAT_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("LANCHAT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def alice_crypto() -> CryptoEngine:
    return CryptoEngine()


@pytest.fixture
def bob_crypto() -> CryptoEngine:
    return CryptoEngine()


def make_peer(username: str = "bob", port: int = 9876, public_key: str = "", peer_id: str = "") -> Peer:
    """Build a peer as discovery would report it."""
    return Peer(
        id=peer_id or generate_peer_id(),
        username=username,
        address="127.0.0.1",
        port=port,
        public_key=public_key or CryptoEngine().public_key,
        last_seen=time.monotonic(),
    )


@pytest.fixture
def sample_peer() -> Peer:
    """
    Provide a sample peer for testing.

    Returns:
        Peer: A peer named bob on localhost
    """
    return make_peer()


def free_port() -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class MockWebSocket:
    """Stands in for a websockets connection in session tests."""

    def __init__(self):
        self.state = State.OPEN
        self.sent: List[str] = []
        self.closed = False

    async def send(self, frame: str) -> None:
        self.sent.append(frame)

    async def close(self) -> None:
        self.closed = True
        self.state = State.CLOSED

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
