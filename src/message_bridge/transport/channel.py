"""Callback-driven handshake transport.

For channels where the application owns the plumbing, e.g. cross-context
messaging: outbound strings go to an injected ``post`` function and the
application calls ``deliver`` for every inbound string.

Usage:
    transport = ChannelTransport(post=port.post_message)
    port.on_message(transport.deliver)
    app = MessageApp(handlers, Bridge(transport))
    await app.connect()

Filtering inbound traffic by origin is the application's job.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import InvalidArgumentError
from .base import DEFAULT_CONNECT_TIMEOUT, HandshakeTransport


class ChannelTransport(HandshakeTransport):
    """Handshake transport over a ``post(str)`` callable."""

    def __init__(
        self,
        post: Callable[[str], Any],
        *,
        on_open: Callable[[], Awaitable[None] | None] | None = None,
        on_close: Callable[[], Awaitable[None] | None] | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        """Initialize the transport.

        Args:
            post: Writes one string to the channel. May return an awaitable,
                which is scheduled; ordering is then up to the channel.
            on_open: Optional hook run when the channel is first opened
            on_close: Optional hook run when the channel is released
            connect_timeout: Seconds to wait for the handshake
        """
        if not callable(post):
            raise InvalidArgumentError("invalid argument: post is not callable")
        super().__init__(connect_timeout=connect_timeout)
        self._post_fn = post
        self._open_hook = on_open
        self._close_hook = on_close

    async def _do_open(self) -> None:
        if self._open_hook is not None:
            await self._maybe_await(self._open_hook())

    async def _do_close(self) -> None:
        if self._close_hook is not None:
            await self._maybe_await(self._close_hook())

    def _post(self, raw: str) -> None:
        result = self._post_fn(raw)
        if inspect.isawaitable(result):
            self._spawn(self._maybe_await(result))
