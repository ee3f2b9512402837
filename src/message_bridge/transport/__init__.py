"""Transport adapters.

A Bridge rides on exactly one adapter:
- MemoryTransport - paired in-process endpoints, also the test double
- ChannelTransport - any channel exposed as a ``post(str)`` callable
- StreamTransport - newline-delimited over asyncio streams (pipes, sockets, stdio)
- WebSocketClientTransport / WebSocketServerTransport - full-duplex WebSocket

All but MemoryTransport negotiate the connection with the CONNECT /
CONNECT_SUCCESS / DISCONNECT handshake implemented by HandshakeTransport.
"""

from .base import (
    COMMAND_PREFIX,
    DEFAULT_CONNECT_TIMEOUT,
    CloseCallback,
    HandshakeCommand,
    HandshakeTransport,
    MessageCallback,
    TransportAdapter,
    dispatch_inbound,
    encode_command,
    try_decode_command,
)
from .channel import ChannelTransport
from .memory import MemoryTransport
from .stream import StreamTransport
from .websocket import WebSocketClientTransport, WebSocketServerTransport

__all__ = [
    # Contract and handshake
    "COMMAND_PREFIX",
    "DEFAULT_CONNECT_TIMEOUT",
    "CloseCallback",
    "HandshakeCommand",
    "HandshakeTransport",
    "MessageCallback",
    "TransportAdapter",
    "dispatch_inbound",
    "encode_command",
    "try_decode_command",
    # Implementations
    "ChannelTransport",
    "MemoryTransport",
    "StreamTransport",
    "WebSocketClientTransport",
    "WebSocketServerTransport",
]
