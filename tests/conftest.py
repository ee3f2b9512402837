"""Pytest configuration and shared fixtures."""

import pytest

from message_bridge.transport import MemoryTransport


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def memory_pair():
    """Two in-process transport endpoints wired to each other."""
    return MemoryTransport.pair()
