"""Typed message routing on top of a Bridge.

MessageApp installs itself as the bridge's inbound handler and dispatches
application messages (``{"type", "payload"?, "meta"?}``) to the handlers
registered for their type.

Dispatch policy:
- Handlers for a type are kept in registration order and all of them are
  called with the message payload.
- The first awaitable result is the answer to a request. Later awaitable
  results run in the background; their failures are logged.
- A handler raising synchronously stops dispatch and the exception reaches
  the bridge, which turns it into an error response when one is expected.

Example:
    async def on_ping(payload):
        return "pong"

    app = MessageApp({"ping": on_ping}, Bridge(transport))
    async with app:
        await app.request({"type": "ping"})
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping, Sequence
from typing import Any

from .errors import InvalidArgumentError, ProtocolError
from .protocol import (
    Message,
    is_valid_handler_collection,
    is_valid_message_type_list,
    validate_message,
)
from .validation import BridgeLike, check_bridge

logger = logging.getLogger(__name__)

PayloadHandler = Callable[[Any], Any]


class MessageApp:
    """Routes application messages between a Bridge and typed handlers."""

    def __init__(
        self,
        handlers: Mapping[str, PayloadHandler | None] | None,
        bridge: BridgeLike,
        *,
        incoming_types: Sequence[str] | None = None,
        outgoing_types: Sequence[str] | None = None,
    ):
        """Initialize the app.

        Args:
            handlers: Message type to handler; None entries are skipped
            bridge: Anything offering the Bridge capabilities
            incoming_types: Optional allow-list of types handlers may register for
            outgoing_types: Optional allow-list of types emit/request may send

        Raises:
            InvalidArgumentError: If handlers, bridge or an allow-list is invalid
            ProtocolError: If a handler is declared for an undeclared incoming type
        """
        if handlers is None:
            handlers = {}
        if not is_valid_handler_collection(handlers):
            raise InvalidArgumentError("handler must be callable or None")

        result = check_bridge(bridge)
        if not result:
            raise InvalidArgumentError(
                f"invalid argument: bridge is not a valid bridge ({result.describe()})"
            )

        self._incoming_types = self._allow_list("incoming_types", incoming_types)
        self._outgoing_types = self._allow_list("outgoing_types", outgoing_types)
        self._bridge = bridge
        self._handlers: dict[str, list[PayloadHandler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

        for message_type, handler in handlers.items():
            if handler is not None:
                self.on(message_type, handler)

    @staticmethod
    def _allow_list(name: str, types: Sequence[str] | None) -> frozenset[str] | None:
        if types is None:
            return None
        if not is_valid_message_type_list(types):
            raise InvalidArgumentError(
                f"invalid argument: {name} must be unique [a-zA-Z_]+ strings, got {types!r}"
            )
        return frozenset(types)

    @property
    def bridge(self) -> BridgeLike:
        return self._bridge

    @property
    def is_connected(self) -> bool:
        return self._bridge.is_connected

    @property
    def incoming_types(self) -> frozenset[str] | None:
        return self._incoming_types

    @property
    def outgoing_types(self) -> frozenset[str] | None:
        return self._outgoing_types

    # =========================================================================
    # Handler registry
    # =========================================================================

    def on(self, message_type: str, handler: PayloadHandler) -> MessageApp:
        """Register ``handler`` for ``message_type``.

        Raises:
            InvalidArgumentError: If handler is not callable
            ProtocolError: If an incoming allow-list does not declare the type
        """
        if not callable(handler):
            raise InvalidArgumentError("handler must be callable or None")
        if not isinstance(message_type, str):
            raise InvalidArgumentError(f"message type must be a string, got {message_type!r}")
        if self._incoming_types is not None and message_type not in self._incoming_types:
            raise ProtocolError(f"unknown message type {message_type!r}")

        self._handlers.setdefault(message_type, []).append(handler)
        return self

    def off(self, handler: PayloadHandler) -> MessageApp:
        """Unregister ``handler`` from every type it was registered for."""
        for message_type in list(self._handlers):
            remaining = [h for h in self._handlers[message_type] if h is not handler]
            if remaining:
                self._handlers[message_type] = remaining
            else:
                del self._handlers[message_type]
        return self

    def handlers_for(self, message_type: str) -> list[PayloadHandler]:
        """Handlers registered for ``message_type``, in dispatch order."""
        return list(self._handlers.get(message_type, ()))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self, await_connection: bool = False, attempts: int = 1) -> Awaitable[None]:
        """Connect the bridge with this app as its inbound handler."""
        return self._bridge.connect(self.receive, await_connection, attempts)

    def disconnect(self) -> Awaitable[None]:
        return self._bridge.disconnect()

    async def __aenter__(self) -> MessageApp:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._bridge.is_connected or self._bridge.is_connecting:
            await self.disconnect()

    # =========================================================================
    # Outbound
    # =========================================================================

    def emit(self, message: Message | Mapping[str, Any]) -> None:
        """Send a fire-and-forget application message.

        Raises:
            ProtocolError: If the message is malformed or its type undeclared
        """
        wire = self._outgoing(message)
        self._bridge.send({"data": wire})

    def request(
        self, message: Message | Mapping[str, Any], timeout: float | None = None
    ) -> Awaitable[Any]:
        """Send an application message and return an awaitable for the answer.

        Raises:
            ProtocolError: If the message is malformed or its type undeclared
        """
        wire = self._outgoing(message)
        return self._bridge.request(wire, timeout=timeout)

    def _outgoing(self, message: Message | Mapping[str, Any]) -> dict[str, Any]:
        checked = validate_message(message)
        if self._outgoing_types is not None and checked.type not in self._outgoing_types:
            raise ProtocolError(f"unknown message type {checked.type!r}")
        return checked.to_wire()

    # =========================================================================
    # Inbound
    # =========================================================================

    def receive(self, data: Any) -> Awaitable[Any] | None:
        """Dispatch one inbound message; called by the bridge.

        Returns:
            The first awaitable handler result, or None

        Raises:
            ProtocolError: If ``data`` is not an application message, or its
                type is not declared as incoming
        """
        message = validate_message(data)
        if self._incoming_types is not None and message.type not in self._incoming_types:
            raise ProtocolError(f"unknown message type {message.type!r}")

        handlers = self.handlers_for(message.type)
        if not handlers:
            logger.debug(f"No handler registered for message type {message.type!r}")
            return None

        response: Awaitable[Any] | None = None
        try:
            for handler in handlers:
                result = handler(message.payload)
                if not inspect.isawaitable(result):
                    continue
                if response is None:
                    response = result
                else:
                    self._spawn(self._run_extra(message.type, result))
        except Exception:
            if inspect.iscoroutine(response):
                response.close()
            raise

        return response

    async def _run_extra(self, message_type: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception as e:
            logger.exception(f"Handler for {message_type!r} failed: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
