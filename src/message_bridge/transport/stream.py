"""Newline-delimited transport over asyncio streams.

Works for pipes, TCP sockets and subprocess stdio. One encoded envelope or
control frame per line:

    ___{"type": "CONNECT", "data": null}\\n
    {"data":{"type":"ping"},"requestId":0}\\n
    {"data":"pong","referenceId":0}\\n

All text is UTF-8 and lines end with LF; a trailing CR is dropped. Encoders
must not emit raw newlines (the default JSON codec never does). Blank lines
and a leading BOM are skipped.

Lines are framed by the transport itself, so the StreamReader's own limit
does not apply. ``max_line_bytes`` (default 16 MiB) caps one inbound line:
a longer line, or one that is not valid UTF-8, is dropped with a warning and
reading continues with the next line.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from ..errors import InvalidArgumentError
from .base import DEFAULT_CONNECT_TIMEOUT, HandshakeTransport

logger = logging.getLogger(__name__)

ENCODING = "utf-8"
NEWLINE = "\n"

DEFAULT_MAX_LINE_BYTES = 16 * 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024


class LineWriter(Protocol):
    """The part of ``asyncio.StreamWriter`` this transport uses."""

    def write(self, data: bytes) -> Any: ...

    def close(self) -> Any: ...


class StreamTransport(HandshakeTransport):
    """Handshake transport over a StreamReader and a writer.

    Usage:
        reader, writer = await asyncio.open_connection(host, port)
        bridge = Bridge(StreamTransport(reader, writer))
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: LineWriter,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        """Initialize the transport.

        Args:
            reader: Source of inbound bytes
            writer: Sink for outbound lines
            connect_timeout: Seconds to wait for the handshake
            max_line_bytes: Longest inbound line accepted, without the newline

        Raises:
            InvalidArgumentError: If max_line_bytes is not a positive int
        """
        if isinstance(max_line_bytes, bool) or not isinstance(max_line_bytes, int):
            raise InvalidArgumentError(
                f"invalid argument: max_line_bytes must be an int, got {max_line_bytes!r}"
            )
        if max_line_bytes < 1:
            raise InvalidArgumentError(
                f"invalid argument: max_line_bytes must be >= 1, got {max_line_bytes!r}"
            )
        super().__init__(connect_timeout=connect_timeout)
        self.max_line_bytes = max_line_bytes
        self._reader = reader
        self._writer = writer
        self._reader_task: asyncio.Task[None] | None = None

    async def _do_open(self) -> None:
        self._reader_task = self._spawn(self._read_loop())

    async def _do_close(self) -> None:
        await self._cancel(self._reader_task)
        self._reader_task = None
        try:
            self._writer.close()
        except Exception as e:
            logger.debug(f"Error closing writer: {e}")

    def _post(self, raw: str) -> None:
        self._writer.write((raw + NEWLINE).encode(ENCODING))

    async def _read_loop(self) -> None:
        """Background task splitting inbound bytes into lines for ``deliver``."""
        line = bytearray()
        oversized = False
        try:
            while True:
                chunk = await self._reader.read(READ_CHUNK_BYTES)
                if not chunk:
                    # EOF - the other side went away
                    break

                parts = chunk.split(b"\n")
                for index, part in enumerate(parts):
                    if not oversized:
                        line += part
                        if len(line) > self.max_line_bytes:
                            oversized = True
                            line.clear()
                    if index == len(parts) - 1:
                        # no newline yet, the line continues in the next chunk
                        break
                    if oversized:
                        logger.warning(
                            f"Dropping inbound line longer than {self.max_line_bytes} bytes"
                        )
                        oversized = False
                    else:
                        self._handle_line(bytes(line))
                    line.clear()

            if line and not oversized:
                self._handle_line(bytes(line))
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"Read loop error: {e}")

        self._connection_lost()

    def _handle_line(self, line: bytes) -> None:
        if line.endswith(b"\r"):
            line = line[:-1]
        try:
            text = line.decode(ENCODING)
        except UnicodeDecodeError as e:
            logger.warning(f"Dropping inbound line that is not valid UTF-8: {e}")
            return

        if text.startswith("\ufeff"):
            text = text[1:]
        if not text.strip():
            return

        self.deliver(text)
