"""WebSocket transports.

Full-duplex handshake transports over a WebSocket, one text frame per
encoded envelope or control frame.

- WebSocketClientTransport dials a URL with the ``websockets`` package
- WebSocketServerTransport wraps an accepted Starlette WebSocket, so a Bridge
  can sit behind any Starlette or FastAPI route
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import Any

import websockets
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.exceptions import ConnectionClosed

from .base import DEFAULT_CONNECT_TIMEOUT, HandshakeTransport

logger = logging.getLogger(__name__)


class _WebSocketTransport(HandshakeTransport):
    """Shared reader/writer plumbing.

    ``_post`` is synchronous, so outbound frames go through a queue drained by
    a single writer task. This keeps send order without a send lock.
    """

    def __init__(self, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        super().__init__(connect_timeout=connect_timeout)
        self._outbox: asyncio.Queue[str | None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None

    async def _do_open(self) -> None:
        await self._open_socket()
        self._outbox = asyncio.Queue()
        self._writer_task = self._spawn(self._write_loop(self._outbox))
        self._reader_task = self._spawn(self._read_loop())

    async def _do_close(self) -> None:
        if self._outbox is not None:
            # Flush what is already queued, DISCONNECT included
            self._outbox.put_nowait(None)
            self._outbox = None
        if self._writer_task is not None and self._writer_task is not asyncio.current_task():
            try:
                await asyncio.wait_for(self._writer_task, timeout=self.connect_timeout)
            except TimeoutError:
                await self._cancel(self._writer_task)
        self._writer_task = None

        await self._cancel(self._reader_task)
        self._reader_task = None

        try:
            await self._close_socket()
        except Exception as e:
            logger.debug(f"Error closing websocket: {e}")

    def _post(self, raw: str) -> None:
        if self._outbox is None:
            raise ConnectionError(f"{self.__class__.__name__} is not open")
        self._outbox.put_nowait(raw)

    async def _write_loop(self, outbox: asyncio.Queue[str | None]) -> None:
        while True:
            raw = await outbox.get()
            if raw is None:
                return
            try:
                await self._send_text(raw)
            except Exception as e:
                logger.warning(f"WebSocket send failed: {e}")
                self._connection_lost()
                return

    async def _read_loop(self) -> None:
        try:
            await self._receive_frames()
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.exception(f"WebSocket receive error: {e}")

        self._connection_lost()

    # Abstract methods for subclasses
    @abstractmethod
    async def _open_socket(self) -> None:
        """Establish the WebSocket."""
        ...

    @abstractmethod
    async def _close_socket(self) -> None:
        """Close the WebSocket."""
        ...

    @abstractmethod
    async def _send_text(self, raw: str) -> None:
        """Send one text frame."""
        ...

    @abstractmethod
    async def _receive_frames(self) -> None:
        """Pass every inbound text frame to ``deliver`` until the socket closes."""
        ...


class WebSocketClientTransport(_WebSocketTransport):
    """Client side: dials ``url`` on connect.

    Usage:
        bridge = Bridge(WebSocketClientTransport("ws://localhost:4096/bridge"))
        await bridge.connect(handler)
    """

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        **connect_kwargs: Any,
    ):
        """Initialize the transport.

        Args:
            url: ws:// or wss:// URL to dial
            connect_timeout: Seconds to wait for the handshake
            **connect_kwargs: Passed through to ``websockets.connect``
        """
        super().__init__(connect_timeout=connect_timeout)
        self.url = url
        self._connect_kwargs = {"ping_interval": 30, "ping_timeout": 10, **connect_kwargs}
        self._ws: Any = None  # websockets ClientConnection

    async def _open_socket(self) -> None:
        try:
            self._ws = await websockets.connect(self.url, **self._connect_kwargs)
        except OSError as e:
            raise ConnectionError(f"Could not connect to {self.url}: {e}") from e
        logger.debug(f"WebSocket connected to {self.url}")

    async def _close_socket(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def _send_text(self, raw: str) -> None:
        await self._ws.send(raw)

    async def _receive_frames(self) -> None:
        try:
            async for frame in self._ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8")
                self.deliver(frame)
        except ConnectionClosed:
            logger.debug("WebSocket closed by server")


class WebSocketServerTransport(_WebSocketTransport):
    """Server side: wraps one Starlette WebSocket.

    The socket is accepted on connect if the route has not done so already.
    The client usually initiates, so connect with ``await_connection=True``.

    Usage:
        @app.websocket_route("/bridge")
        async def bridge_endpoint(websocket: WebSocket):
            bridge = Bridge(WebSocketServerTransport(websocket))
            await bridge.connect(handler, await_connection=True)
            ...
    """

    def __init__(self, websocket: WebSocket, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        super().__init__(connect_timeout=connect_timeout)
        self._websocket = websocket

    @property
    def websocket(self) -> WebSocket:
        return self._websocket

    async def _open_socket(self) -> None:
        if self._websocket.client_state == WebSocketState.CONNECTING:
            await self._websocket.accept()

    async def _close_socket(self) -> None:
        if self._websocket.client_state == WebSocketState.CONNECTED:
            await self._websocket.close()

    async def _send_text(self, raw: str) -> None:
        await self._websocket.send_text(raw)

    async def _receive_frames(self) -> None:
        try:
            while True:
                frame = await self._websocket.receive_text()
                self.deliver(frame)
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")
