"""Message Bridge.

Transport-agnostic request/response and event messaging between two
endpoints. A Bridge owns the connection lifecycle and correlates requests
with their responses; a MessageApp routes typed application messages to
handlers on top of it.

Usage:
    from message_bridge import Bridge, MessageApp
    from message_bridge.transport import MemoryTransport

    left, right = MemoryTransport.pair()
    server = MessageApp({"ping": on_ping}, Bridge(left))
    client = MessageApp({}, Bridge(right))
"""

from .app import MessageApp
from .bridge import VALID_TRANSITIONS, Bridge, BridgeState, PendingRequest
from .config import DEFAULT_TIMEOUT, NO_TIMEOUT, BridgeOptions
from .errors import (
    BridgeError,
    DisconnectedError,
    HandlerError,
    InvalidArgumentError,
    InvalidStateError,
    ProtocolError,
    RemoteError,
    RequestTimeoutError,
)
from .protocol import (
    Envelope,
    LogLevel,
    LogPayload,
    Message,
    is_envelope,
    is_message,
    log_message,
)
from .validation import BridgeLike, ValidationResult, check_bridge, check_transport

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Engine
    "Bridge",
    "BridgeState",
    "PendingRequest",
    "VALID_TRANSITIONS",
    # Router
    "MessageApp",
    # Config
    "BridgeOptions",
    "DEFAULT_TIMEOUT",
    "NO_TIMEOUT",
    # Errors
    "BridgeError",
    "DisconnectedError",
    "HandlerError",
    "InvalidArgumentError",
    "InvalidStateError",
    "ProtocolError",
    "RemoteError",
    "RequestTimeoutError",
    # Protocol
    "Envelope",
    "LogLevel",
    "LogPayload",
    "Message",
    "is_envelope",
    "is_message",
    "log_message",
    # Validation
    "BridgeLike",
    "ValidationResult",
    "check_bridge",
    "check_transport",
]
