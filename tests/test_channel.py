"""Tests for the control channel, the stream multiplexer and reconnect backoff."""

import asyncio

import pytest
import pytest_asyncio

from mircat.models.config import parse_config
from mircat.models.enums import ChannelPolicy, ConnectivityState
from mircat.relay.server import RelayServer
from mircat.tunnel.channel import (
    Backoff,
    ControlChannel,
    build_hello,
    connect_with_retry,
    open_channel,
)
from mircat.tunnel.errors import (
    ChannelLostError,
    ConnectError,
    DialError,
    RetriesExhaustedError,
    StreamClosedError,
)
from mircat.tunnel.mux import Multiplexer
from mircat.tunnel.protocol import (
    MSG_PING,
    MSG_PONG,
    MSG_WINDOW,
    PROTO_CONTROL,
    PROTO_TCP,
    build_message,
    read_frame,
)

LOCALHOST = "127.0.0.1"


# ============================================================================
# Helpers
# ============================================================================


async def _socket_pair():
    """Connected (listener, server side, client side) over loopback."""
    loop = asyncio.get_running_loop()
    accepted = loop.create_future()

    async def on_connect(reader, writer):
        accepted.set_result((reader, writer))

    listener = await asyncio.start_server(on_connect, LOCALHOST, 0)
    port = listener.sockets[0].getsockname()[1]
    client_side = await asyncio.open_connection(LOCALHOST, port)
    server_side = await accepted
    return listener, server_side, client_side


async def _read_exactly(stream, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = await stream.read(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


class MuxPair:
    def __init__(self, listener, server_channel, client_channel, server_mux, client_mux):
        self.listener = listener
        self.server_channel = server_channel
        self.client_channel = client_channel
        self.server_mux = server_mux
        self.client_mux = client_mux
        self.tasks = [
            asyncio.create_task(server_channel.run(server_mux.dispatch)),
            asyncio.create_task(client_channel.run(client_mux.dispatch)),
        ]

    async def open(self, timeout: float = 2.0):
        """Open a stream from the server side and accept it on the client side."""
        opening = asyncio.create_task(self.server_mux.open_stream(timeout=timeout))
        client_stream = await self.client_mux.accept_stream()
        client_stream.accept()
        server_stream = await opening
        return server_stream, client_stream

    async def close(self):
        await self.server_channel.close()
        await self.client_channel.close()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.listener.close()


@pytest_asyncio.fixture
async def mux_factory():
    pairs = []

    async def _create(window: int = 64 * 1024, max_payload: int = 16 * 1024) -> MuxPair:
        listener, (sr, sw), (cr, cw) = await _socket_pair()
        channels = [
            ControlChannel(
                r, w, name=name, heartbeat_interval=1.0, heartbeat_timeout=10.0
            )
            for r, w, name in ((sr, sw, "server"), (cr, cw, "client"))
        ]
        muxes = [
            Multiplexer(ch, window=window, max_payload=max_payload) for ch in channels
        ]
        pair = MuxPair(listener, *channels, *muxes)
        pairs.append(pair)
        return pair

    yield _create
    for pair in pairs:
        await pair.close()


# ============================================================================
# Multiplexer
# ============================================================================


class TestMultiplexer:
    @pytest.mark.asyncio
    async def test_open_and_exchange(self, mux_factory):
        pair = await mux_factory()
        server_stream, client_stream = await pair.open()

        await server_stream.write(b"hello")
        assert await _read_exactly(client_stream, 5) == b"hello"

        await client_stream.write(b"world")
        assert await _read_exactly(server_stream, 5) == b"world"
        assert server_stream.id == client_stream.id

    @pytest.mark.asyncio
    async def test_streams_are_independent(self, mux_factory):
        pair = await mux_factory()
        first = await pair.open()
        second = await pair.open()

        assert first[0].id != second[0].id
        await second[0].write(b"two")
        await first[0].write(b"one")

        assert await _read_exactly(first[1], 3) == b"one"
        assert await _read_exactly(second[1], 3) == b"two"

    @pytest.mark.asyncio
    async def test_refused_stream_raises_dial_error(self, mux_factory):
        pair = await mux_factory()
        opening = asyncio.create_task(pair.server_mux.open_stream(timeout=2.0))
        client_stream = await pair.client_mux.accept_stream()
        client_stream.refuse("no route to destination")

        with pytest.raises(DialError, match="no route"):
            await opening
        assert pair.server_mux.active_streams == 0

    @pytest.mark.asyncio
    async def test_unanswered_open_times_out(self, mux_factory):
        pair = await mux_factory()
        with pytest.raises(DialError):
            await pair.server_mux.open_stream(timeout=0.1)

    @pytest.mark.asyncio
    async def test_stalled_reader_stops_sender(self, mux_factory, wait_until):
        pair = await mux_factory(window=1024, max_payload=256)
        server_stream, client_stream = await pair.open()
        payload = bytes(range(256)) * 16

        writing = asyncio.create_task(server_stream.write(payload))
        await wait_until(lambda: server_stream.send_credit == 0)
        await wait_until(lambda: client_stream.buffered == 1024)
        assert not writing.done()

        assert await _read_exactly(client_stream, len(payload)) == payload
        await asyncio.wait_for(writing, timeout=2.0)

    @pytest.mark.asyncio
    async def test_half_close(self, mux_factory):
        pair = await mux_factory()
        server_stream, client_stream = await pair.open()

        await server_stream.write(b"request")
        server_stream.write_eof()
        assert await _read_exactly(client_stream, 7) == b"request"
        assert await client_stream.read() == b""

        await client_stream.write(b"response")
        assert await _read_exactly(server_stream, 8) == b"response"

    @pytest.mark.asyncio
    async def test_close_reaches_peer(self, mux_factory, wait_until):
        pair = await mux_factory()
        server_stream, client_stream = await pair.open()

        client_stream.close()
        assert await server_stream.read() == b""
        assert server_stream.closed
        await wait_until(lambda: pair.server_mux.active_streams == 0)
        assert pair.client_mux.active_streams == 0

    @pytest.mark.asyncio
    async def test_channel_loss_aborts_streams(self, mux_factory):
        pair = await mux_factory()
        server_stream, client_stream = await pair.open()

        await pair.server_channel.close(ChannelLostError("gone"))

        with pytest.raises(ChannelLostError):
            await server_stream.read()
        with pytest.raises(ChannelLostError):
            await asyncio.wait_for(client_stream.read(), timeout=2.0)
        with pytest.raises(ChannelLostError):
            await asyncio.wait_for(pair.client_mux.accept_stream(), timeout=2.0)

    @pytest.mark.asyncio
    async def test_malformed_frame_resets_only_its_stream(self, mux_factory):
        pair = await mux_factory()
        broken = await pair.open()
        healthy = await pair.open()

        pair.client_channel.send_message(MSG_WINDOW, PROTO_TCP, broken[0].id, b"\x00")

        with pytest.raises(StreamClosedError, match="WINDOW payload"):
            await asyncio.wait_for(broken[0].read(), timeout=2.0)
        with pytest.raises(StreamClosedError, match="reset by peer"):
            await asyncio.wait_for(broken[1].read(), timeout=2.0)

        assert not pair.server_channel.closed
        await healthy[0].write(b"still up")
        assert await _read_exactly(healthy[1], 8) == b"still up"


# ============================================================================
# Control Channel
# ============================================================================


class TestControlChannel:
    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self):
        listener, (reader, writer), peer = await _socket_pair()
        channel = ControlChannel(
            reader,
            writer,
            name="server",
            heartbeat_interval=0.05,
            heartbeat_timeout=0.2,
        )
        try:
            reason = await asyncio.wait_for(channel.run(lambda frame: None), timeout=3.0)
        finally:
            peer[1].close()
            listener.close()

        assert isinstance(reason, ChannelLostError)
        assert "Heartbeat timeout" in str(reason)
        assert channel.closed

    @pytest.mark.asyncio
    async def test_ping_is_answered(self):
        listener, (reader, writer), (peer_reader, peer_writer) = await _socket_pair()
        channel = ControlChannel(
            reader,
            writer,
            name="server",
            heartbeat_interval=10.0,
            heartbeat_timeout=30.0,
        )
        task = asyncio.create_task(channel.run(lambda frame: None))
        try:
            peer_writer.write(build_message(MSG_PING, PROTO_CONTROL, 0, b"x"))
            await peer_writer.drain()
            frame = await asyncio.wait_for(read_frame(peer_reader), timeout=2.0)
        finally:
            await channel.close()
            await asyncio.gather(task, return_exceptions=True)
            peer_writer.close()
            listener.close()

        assert frame.msg_type == MSG_PONG
        assert frame.payload == b"x"

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self):
        listener, (reader, writer), peer = await _socket_pair()
        channel = ControlChannel(
            reader, writer, name="server", heartbeat_interval=1.0, heartbeat_timeout=5.0
        )
        await channel.close(ChannelLostError("done"))
        peer[1].close()
        listener.close()

        with pytest.raises(ChannelLostError):
            channel.send(b"late")
        assert str(channel.close_reason) == "done"


# ============================================================================
# Reconnect Backoff
# ============================================================================


class TestBackoff:
    def test_delays_grow_to_the_cap(self):
        backoff = Backoff(1.0, 4.0, 2.0)
        assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 4.0, 4.0]

        backoff.reset()
        assert backoff.next_delay() == 1.0

    def test_ceiling(self):
        backoff = Backoff(1.0, 4.0, max_attempts=3)
        assert backoff.next_delay() == 1.0
        assert backoff.next_delay() == 2.0
        assert backoff.next_delay() is None
        assert backoff.failures == 3

    @pytest.mark.asyncio
    async def test_connect_with_retry_gives_up(self, free_tcp_port):
        port = free_tcp_port()
        delays = []

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await connect_with_retry(
                LOCALHOST,
                port,
                build_hello("test", LOCALHOST, 1),
                Backoff(0.01, 0.02, max_attempts=2),
                on_failure=lambda error, delay: delays.append(delay),
                connect_timeout=1.0,
                handshake_timeout=1.0,
                heartbeat_interval=1.0,
                heartbeat_timeout=5.0,
            )

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, ConnectError)
        assert delays == [0.01, None]


# ============================================================================
# Second Client Policy
# ============================================================================


def _dial(port: int, tuning):
    return open_channel(
        LOCALHOST,
        port,
        build_hello("test", LOCALHOST, 1),
        connect_timeout=1.0,
        handshake_timeout=1.0,
        heartbeat_interval=tuning.HEARTBEAT_INTERVAL_SECONDS,
        heartbeat_timeout=tuning.HEARTBEAT_TIMEOUT_SECONDS,
    )


class TestChannelPolicy:
    @pytest_asyncio.fixture
    async def server_factory(self, config_factory, free_tcp_port):
        servers = []

        async def _start(tuning, on_event=None) -> RelayServer:
            config = parse_config(config_factory(free_tcp_port(), 9))
            server = RelayServer(config, tuning, on_event=on_event)
            await server.start()
            servers.append(server)
            return server

        yield _start
        for server in servers:
            await server.stop()

    @pytest.mark.asyncio
    async def test_welcome_overrides_heartbeat(self, server_factory, tuning):
        server = await server_factory(tuning)
        channel = await open_channel(
            LOCALHOST,
            server.config.server.tcp_port,
            build_hello("test", LOCALHOST, 1),
            connect_timeout=1.0,
            handshake_timeout=1.0,
            heartbeat_interval=99.0,
            heartbeat_timeout=999.0,
        )
        try:
            assert channel.heartbeat_interval == tuning.HEARTBEAT_INTERVAL_SECONDS
            assert channel.heartbeat_timeout == tuning.HEARTBEAT_TIMEOUT_SECONDS
            assert channel.info["window"] == tuning.STREAM_WINDOW_BYTES
        finally:
            await channel.close()

    @pytest.mark.asyncio
    async def test_replace(self, server_factory, tuning, wait_until):
        server = await server_factory(tuning)
        port = server.config.server.tcp_port

        first = await _dial(port, tuning)
        await wait_until(lambda: server.channel is not None)
        first_server_side = server.channel
        first_task = asyncio.create_task(first.run(lambda frame: None))

        second = await _dial(port, tuning)
        try:
            await wait_until(
                lambda: server.channel is not None
                and server.channel is not first_server_side
            )
            reason = await asyncio.wait_for(first_task, timeout=3.0)
            assert isinstance(reason, ChannelLostError)
            assert first_server_side.closed
            assert server.state == ConnectivityState.CONNECTED
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_reject(self, server_factory, tuning, wait_until):
        tuning.CHANNEL_POLICY = ChannelPolicy.REJECT
        events = []
        server = await server_factory(tuning, lambda kind, msg, sid: events.append(kind))
        port = server.config.server.tcp_port

        first = await _dial(port, tuning)
        try:
            await wait_until(lambda: server.channel is not None)
            active = server.channel

            with pytest.raises(ConnectError, match="rejected"):
                await _dial(port, tuning)

            assert server.channel is active
            assert not active.closed
            assert "channel_rejected" in events
        finally:
            await first.close()
