"""End-to-end tests: two apps talking through a real transport pair.

Instance A emits ``emit``, requests ``request`` (answered with
"requestSuccess") and requests ``request2`` (answered with an error carrying
"requestFail"). Instance B must observe each message exactly once.

The scenario runs over the memory transport and over the handshake
transports (channel and stream).
"""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from message_bridge import (
    Bridge,
    BridgeOptions,
    BridgeState,
    DisconnectedError,
    MessageApp,
    RemoteError,
    RequestTimeoutError,
    log_message,
)
from message_bridge.transport import ChannelTransport, MemoryTransport, StreamTransport


def ignore(data):
    return None


async def drain(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def channel_pair():
    loop = asyncio.get_running_loop()
    left = ChannelTransport(post=lambda raw: loop.call_soon(right.deliver, raw))
    right = ChannelTransport(post=lambda raw: loop.call_soon(left.deliver, raw))
    return left, right


class PipeWriter:
    """Writer feeding a StreamReader, standing in for a socket."""

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader

    def write(self, data: bytes) -> None:
        self.reader.feed_data(data)

    def close(self) -> None:
        if not self.reader.at_eof():
            self.reader.feed_eof()


def stream_pair():
    a_in, b_in = asyncio.StreamReader(), asyncio.StreamReader()
    return StreamTransport(a_in, PipeWriter(b_in)), StreamTransport(b_in, PipeWriter(a_in))


TRANSPORT_PAIRS = {
    "memory": MemoryTransport.pair,
    "channel": channel_pair,
    "stream": stream_pair,
}


class Responder:
    """Handlers for instance B, counting every message it sees."""

    def __init__(self):
        self.seen: Counter[str] = Counter()
        self.payloads: list = []

    def on_emit(self, payload):
        self.seen["emit"] += 1
        self.payloads.append(payload)

    async def on_request(self, payload):
        self.seen["request"] += 1
        return "requestSuccess"

    async def on_request2(self, payload):
        self.seen["request2"] += 1
        raise RuntimeError("requestFail")

    def handlers(self):
        return {
            "emit": self.on_emit,
            "request": self.on_request,
            "request2": self.on_request2,
        }


async def connect_apps(pair_factory, responder: Responder):
    left, right = pair_factory()
    a = MessageApp({}, Bridge(left))
    b = MessageApp(responder.handlers(), Bridge(right))
    await asyncio.gather(a.connect(), b.connect(await_connection=True))
    return a, b


@pytest.fixture(params=sorted(TRANSPORT_PAIRS))
def pair_factory(request):
    return TRANSPORT_PAIRS[request.param]


class TestEndToEnd:
    """Two MessageApps exchanging events and requests."""

    @pytest.mark.asyncio
    async def test_scenario(self, pair_factory) -> None:
        """Event, successful request and failing request are each seen once."""
        responder = Responder()
        a, b = await connect_apps(pair_factory, responder)

        a.emit({"type": "emit", "payload": {"n": 1}})
        result = await a.request({"type": "request"})
        with pytest.raises(RemoteError) as exc_info:
            await a.request({"type": "request2"})
        await drain()

        assert result == "requestSuccess"
        assert exc_info.value.data == "requestFail"
        assert responder.seen == {"emit": 1, "request": 1, "request2": 1}
        assert responder.payloads == [{"n": 1}]
        assert a.bridge.pending_count == 0

        await a.disconnect()
        await drain()

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, pair_factory) -> None:
        """An unhandled event type neither raises nor produces a response."""
        responder = Responder()
        a, b = await connect_apps(pair_factory, responder)

        a.emit({"type": "unknown"})
        a.emit(log_message("nobody listens"))
        await drain()

        assert b.is_connected
        assert sum(responder.seen.values()) == 0
        assert a.bridge.pending_count == 0

        await a.disconnect()
        await drain()

    @pytest.mark.asyncio
    async def test_unknown_request_type_gets_error(self, pair_factory) -> None:
        """A request nobody handles is answered with an error, not left to time out."""
        a, b = await connect_apps(pair_factory, Responder())

        with pytest.raises(RemoteError) as exc_info:
            await a.request({"type": "nobody"})

        assert exc_info.value.data == "unknown error occurred"
        await a.disconnect()
        await drain()

    @pytest.mark.asyncio
    async def test_both_directions(self, pair_factory) -> None:
        """Either side can issue requests."""
        responder = Responder()
        left, right = pair_factory()

        async def on_ask(payload):
            return payload * 2

        a = MessageApp({"ask": on_ask}, Bridge(left))
        b = MessageApp(responder.handlers(), Bridge(right))
        await asyncio.gather(a.connect(), b.connect(await_connection=True))

        results = await asyncio.gather(
            a.request({"type": "request"}),
            b.request({"type": "ask", "payload": 21}),
        )

        assert results == ["requestSuccess", 42]
        await b.disconnect()
        await drain()


class TestHandshakeLifecycle:
    """Connection lifecycle over handshake transports."""

    @pytest.mark.asyncio
    async def test_remote_disconnect_reaches_peer(self) -> None:
        """Disconnecting one side leaves the other disconnected too."""
        left, right = channel_pair()
        a = Bridge(left)
        b = Bridge(right)
        await asyncio.gather(a.connect(ignore), b.connect(ignore, await_connection=True))

        await a.disconnect()
        await drain()

        assert a.state == BridgeState.DISCONNECTED
        assert b.state == BridgeState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_peer_loss_rejects_pending(self) -> None:
        """Outstanding requests fail when the peer goes away."""
        left, right = stream_pair()
        gate = asyncio.Event()

        async def slow(data):
            await gate.wait()
            return data

        a = Bridge(left)
        b = Bridge(right)
        await asyncio.gather(a.connect(ignore), b.connect(slow, await_connection=True))

        pending = a.request("q", timeout=5)
        await drain()
        await b.disconnect()

        with pytest.raises(DisconnectedError):
            await pending
        gate.set()
        await drain()

    @pytest.mark.asyncio
    async def test_connect_retries_until_peer_listens(self) -> None:
        """The initiator retries the handshake until the other side waits for it."""
        loop = asyncio.get_running_loop()
        left = ChannelTransport(
            post=lambda raw: loop.call_soon(right.deliver, raw), connect_timeout=0.02
        )
        right = ChannelTransport(post=lambda raw: loop.call_soon(left.deliver, raw))
        a = Bridge(left, BridgeOptions(retry_delay=0.01))
        b = Bridge(right)

        connecting = a.connect(ignore, attempts=5)
        await asyncio.sleep(0.03)
        await asyncio.gather(connecting, b.connect(ignore, await_connection=True))

        assert a.is_connected
        assert b.is_connected

    @pytest.mark.asyncio
    async def test_request_timeout_when_peer_silent(self) -> None:
        """A connected peer that never answers lets the request time out."""
        left, right = channel_pair()
        gate = asyncio.Event()

        async def never(data):
            await gate.wait()

        a = Bridge(left)
        b = Bridge(right)
        await asyncio.gather(a.connect(ignore), b.connect(never, await_connection=True))

        with pytest.raises(RequestTimeoutError):
            await a.request("q", timeout=0.01)

        assert a.pending_count == 0
        gate.set()
        await a.disconnect()
        await drain()

    @pytest.mark.asyncio
    async def test_large_request_over_stream(self) -> None:
        """A request bigger than the StreamReader's default limit round-trips."""
        left, right = stream_pair()

        async def echo(data):
            return data

        a = Bridge(left)
        b = Bridge(right)
        await asyncio.gather(a.connect(ignore), b.connect(echo, await_connection=True))

        result = await a.request("x" * 100_000, timeout=5)

        assert len(result) == 100_000
        assert a.is_connected
        assert b.is_connected
        await a.disconnect()
        await drain()
