"""Transport adapter contract and the shared connect handshake.

A transport adapter moves already-encoded envelopes across some channel.
The Bridge drives it through:

- ``bind(on_message, on_close)``: called once by the Bridge; the adapter must
  call ``on_message(raw)`` for every inbound payload and ``on_close()`` when
  the channel goes away without a local disconnect
- ``connect(await_connect)`` / ``disconnect()``: lifecycle, may be retried
- ``send(raw)``: fire-and-forget, must preserve order

HandshakeTransport implements the connect handshake on top of any channel
that can post strings. Control frames share the channel with envelopes and
are told apart by a prefix:

    ___{"type": "CONNECT", "data": null}
    ___{"type": "CONNECT_SUCCESS", "data": null}
    ___{"type": "DISCONNECT", "data": null}
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..errors import BridgeError, HandlerError, ProtocolError

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], Any]
CloseCallback = Callable[[], None]

COMMAND_PREFIX = "___"

DEFAULT_CONNECT_TIMEOUT = 1.0


@runtime_checkable
class TransportAdapter(Protocol):
    """Protocol every transport adapter implements."""

    def bind(self, on_message: MessageCallback, on_close: CloseCallback | None = None) -> None:
        """Install the inbound entry points of the owning Bridge."""
        ...

    async def connect(self, await_connect: bool = False) -> None:
        """Establish the channel.

        Raises:
            ConnectionError: If the channel could not be established
        """
        ...

    async def disconnect(self) -> None:
        """Tear down the channel."""
        ...

    def send(self, raw: str) -> Any:
        """Push one encoded envelope."""
        ...


def dispatch_inbound(on_message: MessageCallback | None, raw: str) -> None:
    """Hand an inbound payload to the bound receiver.

    Failures are logged, never raised: a malformed payload must not kill the
    channel's read loop.
    """
    if on_message is None:
        logger.debug("Dropping inbound payload, no receiver bound")
        return

    try:
        on_message(raw)
    except BridgeError as e:
        logger.warning(f"Inbound payload rejected: {e}", exc_info=isinstance(e, HandlerError))
    except Exception as e:
        logger.exception(f"Inbound payload handler failed: {e}")


class HandshakeCommand(str, Enum):
    """Control frames exchanged by handshake transports."""

    CONNECT = "CONNECT"
    CONNECT_SUCCESS = "CONNECT_SUCCESS"
    DISCONNECT = "DISCONNECT"


def encode_command(command: HandshakeCommand, data: Any = None) -> str:
    """Serialize a control frame."""
    return COMMAND_PREFIX + json.dumps({"type": command.value, "data": data})


def try_decode_command(raw: Any) -> dict[str, Any] | None:
    """Return the control frame in ``raw``, or None for a regular payload.

    Raises:
        ProtocolError: If ``raw`` carries the prefix but is not a valid frame
    """
    if not isinstance(raw, str) or not raw.startswith(COMMAND_PREFIX):
        return None

    try:
        command = json.loads(raw[len(COMMAND_PREFIX) :])
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid control frame: {e}") from e
    if not isinstance(command, dict):
        raise ProtocolError("Invalid control frame: expected an object")
    return command


class HandshakeTransport(ABC):
    """Base class for transports that negotiate the connection in-band.

    Subclasses provide the channel:
    - ``_do_open`` / ``_do_close``: acquire and release the channel
    - ``_post``: write one string to the channel, in order
    and feed every inbound string to ``deliver``. When the channel ends on its
    own they call ``_connection_lost``.
    """

    def __init__(self, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout
        self._on_message: MessageCallback | None = None
        self._on_close: CloseCallback | None = None
        self._pending_connect: asyncio.Future[None] | None = None
        self._awaiting_connect = False
        self._open = False
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_open(self) -> bool:
        """True while the underlying channel is held."""
        return self._open

    def bind(self, on_message: MessageCallback, on_close: CloseCallback | None = None) -> None:
        """Install the inbound entry points of the owning Bridge."""
        self._on_message = on_message
        self._on_close = on_close

    async def connect(self, await_connect: bool = False) -> None:
        """Open the channel and complete the handshake.

        Args:
            await_connect: Wait for the remote side to send CONNECT instead of
                initiating

        Raises:
            ConnectionError: If the handshake does not complete in time
        """
        if not self._open:
            await self._do_open()
            self._open = True

        loop = asyncio.get_running_loop()
        self._pending_connect = loop.create_future()
        self._awaiting_connect = await_connect

        if not await_connect:
            self._post_command(HandshakeCommand.CONNECT)

        try:
            await asyncio.wait_for(self._pending_connect, timeout=self.connect_timeout)
        except TimeoutError as e:
            raise ConnectionError("Connection timeout.") from e
        finally:
            self._pending_connect = None

        logger.debug(f"{self.__class__.__name__} handshake complete")

    async def disconnect(self) -> None:
        """Tell the remote side and release the channel."""
        if not self._open:
            return

        try:
            self._post_command(HandshakeCommand.DISCONNECT)
        except Exception as e:
            logger.debug(f"Could not send DISCONNECT: {e}")
        await self._teardown()

    def send(self, raw: str) -> None:
        """Push one encoded envelope."""
        if not self._open:
            raise ConnectionError(f"{self.__class__.__name__} is not open")
        self._post(raw)

    def deliver(self, raw: str) -> None:
        """Entry point for every string arriving on the channel."""
        try:
            command = try_decode_command(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed control frame: {e}")
            return

        if command is None:
            dispatch_inbound(self._on_message, raw)
        else:
            self._handle_command(command)

    def _handle_command(self, command: dict[str, Any]) -> None:
        command_type = command.get("type")
        pending = self._pending_connect
        waiting = pending is not None and not pending.done()

        if command_type == HandshakeCommand.CONNECT.value:
            if waiting and self._awaiting_connect:
                self._post_command(HandshakeCommand.CONNECT_SUCCESS)
                pending.set_result(None)
        elif command_type == HandshakeCommand.CONNECT_SUCCESS.value:
            if waiting and not self._awaiting_connect:
                pending.set_result(None)
        elif command_type == HandshakeCommand.DISCONNECT.value:
            logger.info(f"{self.__class__.__name__}: remote side disconnected")
            self._connection_lost()
        else:
            logger.warning(f"Unrecognized command received: {command_type!r}")

    def _post_command(self, command: HandshakeCommand, data: Any = None) -> None:
        self._post(encode_command(command, data))

    def _connection_lost(self) -> None:
        """Release the channel and notify the Bridge."""
        if not self._open:
            return
        self._open = False
        self._spawn(self._do_close())
        if self._on_close is not None:
            self._on_close()

    async def _teardown(self) -> None:
        if not self._open:
            return
        self._open = False
        await self._do_close()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _cancel(task: asyncio.Task[Any] | None) -> None:
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @staticmethod
    async def _maybe_await(result: Any) -> None:
        if inspect.isawaitable(result):
            await result

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_open(self) -> None:
        """Acquire the channel."""
        ...

    @abstractmethod
    async def _do_close(self) -> None:
        """Release the channel."""
        ...

    @abstractmethod
    def _post(self, raw: str) -> None:
        """Write one string to the channel."""
        ...
