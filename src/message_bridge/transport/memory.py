"""In-process transport.

Two linked endpoints in the same event loop. Each payload is delivered to the
peer on the next loop iteration, in send order, one at a time. No handshake:
``connect`` only marks the endpoint ready.

Usage:
    left, right = MemoryTransport.pair()
    a = Bridge(left)
    b = Bridge(right)

Also useful for testing: sent payloads are recorded, connects can be made to
fail or to take time, and ``sever()`` simulates losing the channel.
"""

from __future__ import annotations

import asyncio
import logging

from .base import CloseCallback, MessageCallback, dispatch_inbound

logger = logging.getLogger(__name__)


class MemoryTransport:
    """One endpoint of an in-process channel."""

    def __init__(self, *, connect_failures: int = 0, connect_delay: float = 0.0):
        """Initialize the endpoint.

        Args:
            connect_failures: Number of initial connect calls that raise
                ConnectionError
            connect_delay: Seconds each connect call takes
        """
        self.peer: MemoryTransport | None = None
        self.connect_failures = connect_failures
        self.connect_delay = connect_delay
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._sent: list[str] = []
        self._connected = False
        self._on_message: MessageCallback | None = None
        self._on_close: CloseCallback | None = None

    @classmethod
    def pair(
        cls, *, connect_failures: int = 0, connect_delay: float = 0.0
    ) -> tuple[MemoryTransport, MemoryTransport]:
        """Create two endpoints wired to each other."""
        left = cls(connect_failures=connect_failures, connect_delay=connect_delay)
        right = cls(connect_failures=connect_failures, connect_delay=connect_delay)
        left.peer = right
        right.peer = left
        return left, right

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def sent(self) -> list[str]:
        """Payloads sent through this endpoint, oldest first."""
        return self._sent.copy()

    def bind(self, on_message: MessageCallback, on_close: CloseCallback | None = None) -> None:
        self._on_message = on_message
        self._on_close = on_close

    async def connect(self, await_connect: bool = False) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionError("memory transport refused the connection")
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def send(self, raw: str) -> None:
        self._sent.append(raw)
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer.deliver, raw)

    def deliver(self, raw: str) -> None:
        """Receive one payload from the peer."""
        dispatch_inbound(self._on_message, raw)

    def sever(self) -> None:
        """Simulate the channel going away on both ends."""
        for endpoint in (self, self.peer):
            if endpoint is None:
                continue
            endpoint._connected = False
            if endpoint._on_close is not None:
                endpoint._on_close()
