"""Error kinds raised by the bridge engine, the router and transports.

Every error derives from BridgeError and from the closest builtin, so callers
can catch either ``BridgeError`` or e.g. ``TimeoutError``/``ConnectionError``.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for all message bridge errors."""


class InvalidArgumentError(BridgeError, ValueError):
    """Malformed constructor options, non-callable handler, bad allow-list."""


class InvalidStateError(BridgeError, RuntimeError):
    """Illegal state transition (double connect, disconnect while disconnected)."""


class DisconnectedError(BridgeError, ConnectionError):
    """Operation attempted outside Connected, or cancelled by a disconnect."""


class RequestTimeoutError(BridgeError, TimeoutError):
    """A request's deadline elapsed with no response."""


class ProtocolError(BridgeError, ValueError):
    """Malformed envelope or application message, or undeclared message type."""


class HandlerError(BridgeError, RuntimeError):
    """A handler broke the response contract or raised while a response was expected."""


class RemoteError(BridgeError):
    """The remote side answered a request with an error response.

    The envelope's ``data`` is kept on ``self.data``.
    """

    def __init__(self, data: Any) -> None:
        super().__init__(f"Error response received: {data}")
        self.data = data
