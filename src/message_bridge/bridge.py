"""Bridge engine: connection state machine and request/response correlation.

A Bridge rides on one transport adapter. Outbound traffic is encoded and
pushed through ``transport.send``; the adapter feeds every inbound payload to
``Bridge.receive`` and reports a dead channel through
``Bridge.connection_lost``.

Lifecycle:

    DISCONNECTED -> CONNECTING | AWAITING_CONNECT -> CONNECTED
                 -> DISCONNECTING -> DISCONNECTED

Requests get increasing integer ids starting at 0. Each outstanding request
has one entry in the pending table; the entry is claimed exactly once by
whichever of response, timeout, disconnect or caller cancellation comes first.

Example:
    left, right = MemoryTransport.pair()
    server, client = Bridge(left), Bridge(right)

    async def echo(data):
        return data

    await asyncio.gather(server.connect(echo), client.connect(print))
    assert await client.request("hi") == "hi"
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import NO_TIMEOUT, BridgeOptions, is_valid_timeout
from .errors import (
    DisconnectedError,
    HandlerError,
    InvalidArgumentError,
    InvalidStateError,
    ProtocolError,
    RemoteError,
    RequestTimeoutError,
)
from .protocol import Envelope, decode_envelope, encode_envelope, validate_envelope
from .transport.base import TransportAdapter
from .validation import check_transport

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Any]


class BridgeState(str, Enum):
    """Connection state of a Bridge."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AWAITING_CONNECT = "AWAITING_CONNECT"
    CONNECTED = "CONNECTED"
    DISCONNECTING = "DISCONNECTING"


VALID_TRANSITIONS: dict[BridgeState, set[BridgeState]] = {
    BridgeState.DISCONNECTED: {BridgeState.CONNECTING, BridgeState.AWAITING_CONNECT},
    BridgeState.CONNECTING: {
        BridgeState.CONNECTED,
        BridgeState.DISCONNECTING,
        BridgeState.DISCONNECTED,  # connect failed or channel lost
    },
    BridgeState.AWAITING_CONNECT: {
        BridgeState.CONNECTED,
        BridgeState.DISCONNECTING,
        BridgeState.DISCONNECTED,  # connect failed or channel lost
    },
    BridgeState.CONNECTED: {
        BridgeState.DISCONNECTING,
        BridgeState.DISCONNECTED,  # channel lost
    },
    BridgeState.DISCONNECTING: {BridgeState.DISCONNECTED},
}

CONNECTING_STATES = frozenset({BridgeState.CONNECTING, BridgeState.AWAITING_CONNECT})


@dataclass
class PendingRequest:
    """An outstanding request awaiting its response."""

    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None


def describe_error(error: BaseException) -> str:
    """Text sent to the remote side for a failed handler."""
    return str(error) or type(error).__name__


class Bridge:
    """Protocol engine bound to one transport adapter.

    Entry points check arguments and state synchronously and raise right
    away; the asynchronous remainder is returned as a Task or Future, so they
    must be called from a running event loop.
    """

    def __init__(self, transport: TransportAdapter, options: BridgeOptions | None = None):
        """Initialize the bridge.

        Args:
            transport: Adapter providing connect, disconnect, send and bind
            options: Timeouts, codec overrides and error callback

        Raises:
            InvalidArgumentError: If the transport or options are unusable
        """
        result = check_transport(transport)
        if not result:
            raise InvalidArgumentError(f"invalid argument: transport {result.describe()}")
        if options is None:
            options = BridgeOptions()
        elif not isinstance(options, BridgeOptions):
            raise InvalidArgumentError("invalid argument options")

        self.options = options
        self._transport = transport
        self._state = BridgeState.DISCONNECTED
        self._handler: MessageHandler | None = None
        self._last_request_id = -1
        self._pending: dict[int, PendingRequest] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

        transport.bind(self.receive, self.connection_lost)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == BridgeState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self._state in CONNECTING_STATES

    @property
    def transport(self) -> TransportAdapter:
        return self._transport

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a response."""
        return len(self._pending)

    @property
    def last_request_id(self) -> int:
        """Id of the most recent request, -1 before the first one."""
        return self._last_request_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(
        self,
        handler: MessageHandler,
        await_connection: bool = False,
        attempts: int = 1,
    ) -> asyncio.Task[None]:
        """Connect the transport and install the inbound handler.

        Args:
            handler: Called with the ``data`` of every inbound request or event.
                Must return an awaitable for requests.
            await_connection: Let the remote side initiate the connection
            attempts: How many times to try the transport's connect

        Returns:
            Task finishing once connected, or failing with the last
            transport error

        Raises:
            InvalidArgumentError: If handler is not callable or attempts < 1
            InvalidStateError: Unless the bridge is disconnected
        """
        loop = asyncio.get_running_loop()
        if not callable(handler):
            raise InvalidArgumentError("invalid argument: handler is not callable")
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            raise InvalidArgumentError(f"invalid argument: attempts must be >= 1, got {attempts!r}")
        if self._state != BridgeState.DISCONNECTED:
            raise InvalidStateError(f"invalid state: cannot connect while {self._state.value}")

        self._set_state(
            BridgeState.AWAITING_CONNECT if await_connection else BridgeState.CONNECTING
        )
        return self._track(loop.create_task(self._connect(handler, await_connection, attempts)))

    async def _connect(self, handler: MessageHandler, await_connection: bool, attempts: int) -> None:
        try:
            await self._connect_transport(await_connection, attempts)
        except BaseException:
            if self.is_connecting:
                self._handler = None
                self._set_state(BridgeState.DISCONNECTED)
            raise

        if not self.is_connecting:
            # disconnect() won the race
            logger.debug(f"Connect finished while {self._state.value}, not connecting")
            return

        self._handler = handler
        self._set_state(BridgeState.CONNECTED)
        logger.info("Bridge connected")

    async def _connect_transport(self, await_connection: bool, attempts: int) -> None:
        attempt = 1
        while self.is_connecting:
            try:
                await self._transport.connect(await_connection)
                return
            except Exception as e:
                if attempt >= attempts:
                    logger.warning(f"Connect failed after {attempt} attempt(s): {e}")
                    raise
                logger.warning(f"Connect attempt {attempt}/{attempts} failed: {e}")

            attempt += 1
            if self.options.retry_delay:
                await asyncio.sleep(self.options.retry_delay)

    def disconnect(self) -> asyncio.Task[None]:
        """Disconnect the transport.

        Pending requests fail with DisconnectedError once the transport is
        down, even if its disconnect raised.

        Raises:
            InvalidStateError: If already disconnected or disconnecting
        """
        loop = asyncio.get_running_loop()
        if self._state in (BridgeState.DISCONNECTED, BridgeState.DISCONNECTING):
            raise InvalidStateError(f"invalid state: cannot disconnect while {self._state.value}")

        self._set_state(BridgeState.DISCONNECTING)
        return self._track(loop.create_task(self._disconnect()))

    async def _disconnect(self) -> None:
        try:
            await self._transport.disconnect()
        finally:
            # connection_lost may already have finished the job
            if self._state == BridgeState.DISCONNECTING:
                self._reset("disconnect")
                logger.info("Bridge disconnected")

    def connection_lost(self) -> None:
        """Called by the transport when the channel dies on its own."""
        if self._state == BridgeState.DISCONNECTED:
            return
        logger.warning(f"Transport connection lost while {self._state.value}")
        self._reset("connection lost")

    def _reset(self, reason: str) -> None:
        for request_id in list(self._pending):
            pending = self._claim(request_id)
            if pending is not None and not pending.future.done():
                pending.future.set_exception(DisconnectedError(reason))
        self._handler = None
        self._set_state(BridgeState.DISCONNECTED)

    # =========================================================================
    # Outbound
    # =========================================================================

    def send(self, envelope: Envelope | Mapping[str, Any]) -> None:
        """Send an envelope without waiting for an answer.

        Raises:
            DisconnectedError: Unless connected
            ProtocolError: If the envelope is malformed or cannot be encoded
        """
        if not self.is_connected:
            raise DisconnectedError("bridge is not connected")
        self._post(validate_envelope(envelope))

    def emit(self, data: Any) -> None:
        """Send ``data`` as a fire-and-forget event."""
        self.send(Envelope(data=data))

    def request(self, data: Any, timeout: float | None = None) -> asyncio.Future[Any]:
        """Send ``data`` and return a future for the remote answer.

        Args:
            data: Request payload
            timeout: Seconds to wait for the answer, NO_TIMEOUT to wait
                forever, None for ``options.timeout``

        Returns:
            Future resolving with the response data. It fails with
            RequestTimeoutError, RemoteError or DisconnectedError.

        Raises:
            DisconnectedError: Unless connected
            InvalidArgumentError: If timeout is invalid
            ProtocolError: If the request cannot be encoded
        """
        loop = asyncio.get_running_loop()
        if not self.is_connected:
            raise DisconnectedError("bridge is not connected")
        if timeout is None:
            timeout = self.options.timeout
        elif not is_valid_timeout(timeout):
            raise InvalidArgumentError(
                f"invalid argument: timeout must be > 0 or {NO_TIMEOUT}, got {timeout!r}"
            )

        self._last_request_id += 1
        request_id = self._last_request_id

        pending = PendingRequest(future=loop.create_future())
        if timeout != NO_TIMEOUT:
            pending.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = pending
        # Caller cancellation releases the entry too
        pending.future.add_done_callback(lambda _: self._claim(request_id))

        try:
            self._post(Envelope(data=data, request_id=request_id))
        except BaseException:
            self._claim(request_id)
            pending.future.cancel()
            raise

        logger.debug(f"Request {request_id} sent (timeout={timeout})")
        return pending.future

    def _post(self, envelope: Envelope) -> None:
        self._transmit(self._encode(envelope))

    def _transmit(self, raw: str) -> None:
        result = self._transport.send(raw)
        if inspect.isawaitable(result):
            self._spawn(self._await_send(result))

    async def _await_send(self, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception as e:
            logger.warning(f"Transport send failed: {e}")

    def _encode(self, envelope: Envelope) -> str:
        wire = envelope.to_wire()
        try:
            if self.options.encode is not None:
                return self.options.encode(wire)
            return encode_envelope(wire)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"could not encode envelope: {e}") from e

    def _decode(self, raw: Any) -> Any:
        if self.options.decode is None:
            return decode_envelope(raw)
        try:
            return self.options.decode(raw)
        except Exception as e:
            raise ProtocolError(f"could not decode envelope: {e}") from e

    # =========================================================================
    # Pending requests
    # =========================================================================

    def _claim(self, request_id: int) -> PendingRequest | None:
        """Remove and return the pending entry, disarming its timer.

        Only the first caller gets the entry, so a request settles once.
        """
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._claim(request_id)
        if pending is None or pending.future.done():
            return
        logger.debug(f"Request {request_id} timed out after {timeout}s")
        pending.future.set_exception(
            RequestTimeoutError(f"Request timeout. No response to request {request_id} in {timeout}s")
        )

    def _handle_response(self, envelope: Envelope) -> None:
        request_id = envelope.reference_id
        pending = self._claim(request_id)
        if pending is None:
            logger.debug(f"Dropping response to unknown or expired request {request_id}")
            return
        if pending.future.done():
            return

        if envelope.is_error is True:
            pending.future.set_exception(RemoteError(envelope.data))
        else:
            pending.future.set_result(envelope.data)

    # =========================================================================
    # Inbound
    # =========================================================================

    def receive(self, raw: Any) -> asyncio.Task[None] | None:
        """Process one inbound payload from the transport.

        Responses settle their pending request. Anything else goes to the
        installed handler; for requests, the handler's awaitable result is
        sent back as the response.

        Returns:
            The task producing the response, or running an awaitable event
            handler result. None otherwise.

        Raises:
            ProtocolError: If the payload is not a legal envelope
            DisconnectedError: Unless connected with a handler installed
            HandlerError: If a request handler raised or did not return an
                awaitable; an error response has already been sent
        """
        envelope = validate_envelope(self._decode(raw))
        handler = self._handler
        if not self.is_connected or handler is None:
            raise DisconnectedError("bridge is not connected")

        if envelope.is_response:
            self._handle_response(envelope)
            return None

        request_id = envelope.request_id
        try:
            result = handler(envelope.data)
        except Exception as e:
            if not envelope.expects_response:
                self._report_event_error(e)
                return None
            self._reply(Envelope(data=describe_error(e), is_error=True, reference_id=request_id))
            raise HandlerError(f"handler failed for request {request_id}: {e}") from e

        if not envelope.expects_response:
            if inspect.isawaitable(result):
                return self._spawn(self._run_event(result))
            return None

        if not inspect.isawaitable(result):
            self._reply(
                Envelope(data="unknown error occurred", is_error=True, reference_id=request_id)
            )
            raise HandlerError("awaitable expected. Is your handler implemented correctly?")

        return self._spawn(self._respond(request_id, result))

    async def _respond(self, request_id: int, result: Awaitable[Any]) -> None:
        try:
            data = await result
        except Exception as e:
            response = Envelope(data=describe_error(e), is_error=True, reference_id=request_id)
        else:
            response = Envelope(data=data, reference_id=request_id)

        try:
            self._reply(response)
        except Exception as e:
            logger.warning(f"Could not send response to request {request_id}: {e}")

    async def _run_event(self, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception as e:
            self._report_event_error(e)

    def _reply(self, response: Envelope) -> None:
        request_id = response.reference_id
        if not self.is_connected:
            logger.warning(
                f"Dropping response to request {request_id}: bridge is {self._state.value}"
            )
            return

        try:
            raw = self._encode(response)
        except ProtocolError as e:
            logger.warning(f"Response to request {request_id} could not be encoded: {e}")
            raw = self._encode(Envelope(data=str(e), is_error=True, reference_id=request_id))
        self._transmit(raw)

    def _report_event_error(self, error: Exception) -> None:
        """Log an event handler failure; nobody is waiting for an answer."""
        logger.exception(f"Event handler failed: {error}")
        if self.options.on_error is None:
            return
        try:
            self.options.on_error(error)
        except Exception as e:
            logger.exception(f"on_error callback failed: {e}")

    # =========================================================================
    # Internals
    # =========================================================================

    def _set_state(self, new_state: BridgeState) -> None:
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise InvalidStateError(
                f"invalid state transition {self._state.value} -> {new_state.value}"
            )
        logger.debug(f"Bridge state {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        return self._track(asyncio.get_running_loop().create_task(coro))

    def _track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
