"""
Stream multiplexer over the control channel.

Each relayed TCP connection is a MuxStream identified by a session id. The
server opens streams (CONNECT), the client accepts them and answers with
CONNECTED once the destination is dialed, or ERROR when the dial fails.

Flow control is credit based: every stream starts with ``window`` bytes of
send credit on both sides. A receiver grants credit back (WINDOW) as its
consumer drains the buffer, so a stream whose consumer stalls stops its
sender without holding up any other stream on the channel.

UDP frames carry no stream state here; they are passed to the datagram
handler installed by the UDP relay.
"""

import asyncio
import itertools
from collections import deque
from typing import Callable

from mircat.tunnel.channel import ControlChannel
from mircat.tunnel.errors import (
    ChannelLostError,
    DialError,
    ProtocolError,
    StreamClosedError,
)
from mircat.tunnel.protocol import (
    MSG_CLOSE,
    MSG_CONNECT,
    MSG_CONNECTED,
    MSG_DATA,
    MSG_EOF,
    MSG_ERROR,
    MSG_WINDOW,
    PROTO_TCP,
    PROTO_UDP,
    Frame,
    build_window,
    decode_reason,
    parse_window,
)
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Mux Stream
# =============================================================================


class MuxStream:
    """
    One logical byte stream carried over the control channel.

    Reads return buffered bytes in send order and ``b""`` at EOF. Writes wait
    for send credit, then hand DATA frames to the channel writer.
    """

    def __init__(
        self,
        mux: "Multiplexer",
        stream_id: int,
        proto: int = PROTO_TCP,
    ):
        self.id = stream_id
        self.proto = proto
        self._mux = mux

        # Receive side
        self._chunks: deque[bytes] = deque()
        self._buffered = 0
        self._consumed = 0  # Drained since the last WINDOW grant
        self._readable = asyncio.Event()
        self._eof_received = False

        # Send side
        self._send_credit = mux.window
        self._credit_available = asyncio.Event()
        self._credit_available.set()
        self._eof_sent = False

        self._closed = False  # Closed locally
        self._remote_closed = False
        self._error: Exception | None = None
        self._opened: asyncio.Future = asyncio.get_running_loop().create_future()

        self.bytes_received = 0
        self.bytes_sent = 0

    def __repr__(self) -> str:
        return f"<MuxStream {self.id} channel=#{self._mux.channel.channel_id}>"

    @property
    def closed(self) -> bool:
        return self._closed or self._remote_closed or self._error is not None

    @property
    def buffered(self) -> int:
        return self._buffered

    @property
    def send_credit(self) -> int:
        return self._send_credit

    # -------------------------------------------------------------------------
    # Consumer API
    # -------------------------------------------------------------------------

    async def read(self, n: int = -1) -> bytes:
        """
        Read up to ``n`` bytes (all buffered bytes when ``n`` < 0).

        Returns ``b""`` once the peer sent EOF/CLOSE and the buffer is empty.

        Raises:
            StreamClosedError: The stream was reset by either side.
            ChannelLostError: The channel went away.
        """
        while not self._chunks:
            if self._error is not None:
                raise self._error
            if self._eof_received or self._remote_closed or self._closed:
                return b""
            self._readable.clear()
            await self._readable.wait()

        if self._error is not None:
            raise self._error

        if n < 0 or n >= self._buffered:
            data = b"".join(self._chunks)
            self._chunks.clear()
        else:
            parts = []
            remaining = n
            while remaining:
                chunk = self._chunks.popleft()
                if len(chunk) > remaining:
                    self._chunks.appendleft(chunk[remaining:])
                    chunk = chunk[:remaining]
                parts.append(chunk)
                remaining -= len(chunk)
            data = b"".join(parts)

        self._buffered -= len(data)
        self._consumed += len(data)
        self._maybe_grant_credit()
        return data

    async def write(self, data: bytes) -> None:
        """
        Send bytes to the peer, waiting for credit as needed.

        Raises:
            StreamClosedError: The stream is closed, half-closed or reset.
            ChannelLostError: The channel went away.
        """
        view = memoryview(data)
        while view:
            self._check_writable()
            while self._send_credit <= 0:
                self._credit_available.clear()
                await self._credit_available.wait()
                self._check_writable()

            size = min(len(view), self._send_credit, self._mux.max_payload)
            chunk = bytes(view[:size])
            view = view[size:]
            self._send_credit -= size
            self._mux.channel.send_message(MSG_DATA, self.proto, self.id, chunk)
            self.bytes_sent += size

    def write_eof(self) -> None:
        """Half-close: tell the peer no more data follows."""
        if self._eof_sent or self.closed:
            return
        self._eof_sent = True
        self._send_control(MSG_EOF)

    def close(self) -> None:
        """Close both directions and release the stream id. Idempotent."""
        if self._closed:
            return
        already_gone = self._remote_closed or self._error is not None
        self._closed = True
        if not already_gone:
            self._send_control(MSG_CLOSE)
        self._mux._forget(self.id)
        self._wake_all()

    def reset(self, reason: str) -> None:
        """Abort the stream and tell the peer why."""
        if self._error is None and not self._remote_closed and not self._closed:
            self._send_control(MSG_ERROR, reason.encode("utf-8", errors="replace"))
        self._abort(StreamClosedError(self.id, f"reset: {reason}"))

    # -------------------------------------------------------------------------
    # Open handshake
    # -------------------------------------------------------------------------

    def accept(self) -> None:
        """Client side: confirm the destination was dialed."""
        self._send_control(MSG_CONNECTED)

    def refuse(self, reason: str) -> None:
        """Client side: report a failed dial; the stream is released."""
        self._send_control(MSG_ERROR, reason.encode("utf-8", errors="replace"))
        self._abort(StreamClosedError(self.id, f"refused: {reason}"))

    async def wait_opened(self, timeout: float) -> None:
        """
        Server side: wait for CONNECTED.

        Raises:
            DialError: Client refused or never answered.
            ChannelLostError: The channel went away meanwhile.
        """
        try:
            await asyncio.wait_for(asyncio.shield(self._opened), timeout=timeout)
        except asyncio.TimeoutError:
            self.reset("open timeout")
            raise DialError(f"No answer for stream {self.id} within {timeout}s")

    # -------------------------------------------------------------------------
    # Frame handlers (called from the dispatch path, never block)
    # -------------------------------------------------------------------------

    def _on_connected(self) -> None:
        if not self._opened.done():
            self._opened.set_result(None)

    def _on_data(self, payload: bytes) -> None:
        if self._closed or self._eof_received:
            return
        if self._buffered + len(payload) > self._mux.window:
            logger.warning(
                f"[Mux] Stream {self.id} peer overran its window "
                f"({self._buffered + len(payload)} > {self._mux.window})"
            )
            self.reset("window exceeded")
            return
        self._chunks.append(payload)
        self._buffered += len(payload)
        self.bytes_received += len(payload)
        self._readable.set()

    def _on_eof(self) -> None:
        self._eof_received = True
        self._readable.set()

    def _on_close(self) -> None:
        self._remote_closed = True
        self._eof_received = True
        self._mux._forget(self.id)
        self._wake_all()

    def _on_error(self, reason: str) -> None:
        if not self._opened.done():
            self._opened.set_exception(DialError(reason))
            # Nobody may be awaiting yet; keep asyncio quiet about it
            self._opened.exception()
        self._abort(StreamClosedError(self.id, f"reset by peer: {reason}"))

    def _on_window(self, credit: int) -> None:
        self._send_credit += credit
        self._credit_available.set()

    def _abort(self, exc: Exception) -> None:
        if self._error is None:
            self._error = exc
        if not self._opened.done():
            self._opened.set_exception(
                exc if isinstance(exc, ChannelLostError) else DialError(str(exc))
            )
            self._opened.exception()
        self._chunks.clear()
        self._buffered = 0
        self._mux._forget(self.id)
        self._wake_all()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_writable(self) -> None:
        if self._error is not None:
            raise self._error
        if self._closed or self._remote_closed or self._eof_sent:
            raise StreamClosedError(self.id)

    def _maybe_grant_credit(self) -> None:
        if self._consumed < self._mux.window // 2 or self.closed:
            return
        credit, self._consumed = self._consumed, 0
        try:
            self._mux.channel.send(build_window(self.id, self.proto, credit))
        except ChannelLostError:
            pass

    def _send_control(self, msg_type: int, payload: bytes = b"") -> None:
        try:
            self._mux.channel.send_message(msg_type, self.proto, self.id, payload)
        except ChannelLostError:
            pass

    def _wake_all(self) -> None:
        self._readable.set()
        self._credit_available.set()


# =============================================================================
# Multiplexer
# =============================================================================


class Multiplexer:
    """
    Stream table for one control channel.

    Install ``dispatch`` as the channel's frame handler. When the channel
    closes every stream is aborted with ChannelLostError and pending
    ``accept_stream`` callers are released.
    """

    def __init__(
        self,
        channel: ControlChannel,
        *,
        window: int,
        max_payload: int,
        datagram_handler: Callable[[Frame], None] | None = None,
    ):
        """
        Initialize multiplexer.

        Args:
            channel: The control channel to carry streams over.
            window: Per-stream receive window / initial send credit (bytes).
            max_payload: Largest DATA payload to emit.
            datagram_handler: Receives every PROTO_UDP frame.
        """
        self.channel = channel
        self.window = window
        self.max_payload = max_payload
        self.datagram_handler = datagram_handler

        self._streams: dict[int, MuxStream] = {}
        self._ids = itertools.count(1)
        self._incoming: asyncio.Queue[MuxStream | None] = asyncio.Queue()

        channel.add_close_callback(self._on_channel_closed)

    @property
    def log_prefix(self) -> str:
        return f"[Mux #{self.channel.channel_id}]"

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    def get_stream(self, stream_id: int) -> MuxStream | None:
        return self._streams.get(stream_id)

    def allocate_id(self) -> int:
        """Allocate a stream id unique for this channel's lifetime."""
        stream_id = next(self._ids)
        while stream_id in self._streams:
            stream_id = next(self._ids)
        return stream_id

    # -------------------------------------------------------------------------
    # Stream lifecycle
    # -------------------------------------------------------------------------

    async def open_stream(
        self,
        stream_id: int | None = None,
        *,
        timeout: float,
        proto: int = PROTO_TCP,
    ) -> MuxStream:
        """
        Server side: open a stream and wait until the client dialed.

        Raises:
            DialError: The client could not reach the destination.
            ChannelLostError: The channel is (or went) down.
        """
        if self.channel.closed:
            raise ChannelLostError("Channel is closed")
        if stream_id is None:
            stream_id = self.allocate_id()
        if stream_id in self._streams:
            raise ValueError(f"Stream id {stream_id} already in use")

        stream = MuxStream(self, stream_id, proto)
        self._streams[stream_id] = stream
        self.channel.send_message(MSG_CONNECT, proto, stream_id)
        await stream.wait_opened(timeout)
        return stream

    async def accept_stream(self) -> MuxStream:
        """
        Client side: wait for the server to open a stream.

        Raises:
            ChannelLostError: The channel closed while waiting.
        """
        stream = await self._incoming.get()
        if stream is None:
            self._incoming.put_nowait(None)  # Release other waiters too
            raise ChannelLostError("Channel closed")
        return stream

    def _forget(self, stream_id: int) -> None:
        self._streams.pop(stream_id, None)

    # -------------------------------------------------------------------------
    # Datagrams
    # -------------------------------------------------------------------------

    def send_datagram(self, session_id: int, payload: bytes) -> None:
        self.channel.send_message(MSG_DATA, PROTO_UDP, session_id, payload)

    def send_datagram_close(self, session_id: int) -> None:
        try:
            self.channel.send_message(MSG_CLOSE, PROTO_UDP, session_id)
        except ChannelLostError:
            pass

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, frame: Frame) -> None:
        """Route one incoming frame. Must not block."""
        if frame.proto == PROTO_UDP:
            if self.datagram_handler is not None:
                self.datagram_handler(frame)
            return
        if frame.proto != PROTO_TCP:
            raise ProtocolError(
                f"{frame.header.name} with unexpected proto {frame.proto}"
            )

        stream_id = frame.session_id
        msg_type = frame.msg_type

        if msg_type == MSG_CONNECT:
            if stream_id in self._streams:
                logger.warning(f"{self.log_prefix} Duplicate CONNECT for {stream_id}")
                self.channel.send_message(
                    MSG_ERROR, PROTO_TCP, stream_id, b"duplicate stream id"
                )
                return
            stream = MuxStream(self, stream_id, PROTO_TCP)
            self._streams[stream_id] = stream
            self._incoming.put_nowait(stream)
            return

        stream = self._streams.get(stream_id)
        if stream is None:
            # Frames still in flight for a stream closed on this side
            logger.debug(
                f"{self.log_prefix} {frame.header.name} for unknown stream {stream_id}"
            )
            return

        try:
            self._dispatch_stream(stream, frame)
        except ProtocolError as e:
            # Violations on a known stream cost that stream only
            logger.warning(f"{self.log_prefix} Stream {stream_id}: {e}")
            stream.reset(str(e))

    def _dispatch_stream(self, stream: MuxStream, frame: Frame) -> None:
        msg_type = frame.msg_type
        if msg_type == MSG_DATA:
            stream._on_data(frame.payload)
        elif msg_type == MSG_WINDOW:
            stream._on_window(parse_window(frame.payload))
        elif msg_type == MSG_EOF:
            stream._on_eof()
        elif msg_type == MSG_CLOSE:
            stream._on_close()
        elif msg_type == MSG_ERROR:
            stream._on_error(decode_reason(frame.payload))
        elif msg_type == MSG_CONNECTED:
            stream._on_connected()
        else:
            raise ProtocolError(f"Unexpected {frame.header.name} on stream {stream.id}")

    def _on_channel_closed(self, reason: Exception | None) -> None:
        streams = list(self._streams.values())
        if streams:
            logger.info(
                f"{self.log_prefix} Channel closed, aborting {len(streams)} streams"
            )
        error = ChannelLostError(str(reason) if reason else "Channel closed")
        for stream in streams:
            stream._abort(error)
        self._streams.clear()
        self._incoming.put_nowait(None)
