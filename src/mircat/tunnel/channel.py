"""
Control channel between client and server.

One persistent TCP connection per client/server pair. All frames going out
are funneled through a single writer task, so concurrent streams never
interleave partial frames and never block each other on a slow socket.
Incoming frames are read by one loop and handed to a non-blocking dispatch
callable (the multiplexer).

Keepalive: each side sends PING every heartbeat interval; a side that hears
nothing from its peer for the heartbeat timeout tears the channel down with
ChannelLostError.
"""

import asyncio
import itertools
import time
from typing import Callable

from mircat.tunnel.errors import (
    ChannelLostError,
    ConnectError,
    ProtocolError,
    RetriesExhaustedError,
)
from mircat.tunnel.protocol import (
    MAX_PAYLOAD_LIMIT,
    MSG_HELLO,
    MSG_PING,
    MSG_PONG,
    MSG_REJECT,
    MSG_WELCOME,
    PREAMBLE,
    PROTO_CONTROL,
    PROTOCOL_VERSION,
    Frame,
    build_message,
    decode_json,
    decode_reason,
    encode_json,
    read_frame,
)
from mircat.utils.logger import get_logger

logger = get_logger(__name__)

_channel_ids = itertools.count(1)

# Frames coalesced into one write() by the writer task
_WRITE_BATCH = 64


# =============================================================================
# Control Channel
# =============================================================================


class ControlChannel:
    """
    A framed, keepalive-supervised connection to the peer relay.

    The channel is single-use: once closed it stays closed, and a reconnect
    builds a new ControlChannel with a new ``channel_id``.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        name: str,
        heartbeat_interval: float,
        heartbeat_timeout: float,
        max_payload: int = MAX_PAYLOAD_LIMIT,
        info: dict | None = None,
    ):
        """
        Initialize control channel.

        Args:
            reader: Stream positioned right after the handshake.
            writer: Matching writer.
            name: Label for log lines ("server" / "client").
            heartbeat_interval: Seconds between PINGs.
            heartbeat_timeout: Seconds of silence before the channel is lost.
            max_payload: Largest payload accepted from the peer.
            info: Handshake data received from the peer.
        """
        self.channel_id = next(_channel_ids)
        self.name = name
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.max_payload = max_payload
        self.info = info or {}

        self.connected_at = time.time()
        self.last_received = time.monotonic()

        self._outbox: asyncio.Queue[bytes] = asyncio.Queue()
        self._closed = asyncio.Event()
        self._close_reason: Exception | None = None
        self._close_callbacks: list[Callable[[Exception | None], None]] = []
        self._tasks: list[asyncio.Task] = []

    def __repr__(self) -> str:
        return f"<ControlChannel #{self.channel_id} {self.name} peer={self.peer}>"

    @property
    def log_prefix(self) -> str:
        return f"[Channel #{self.channel_id} {self.name}]"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def backlog(self) -> int:
        """Frames queued for the writer task."""
        return self._outbox.qsize()

    @property
    def close_reason(self) -> Exception | None:
        return self._close_reason

    def add_close_callback(self, callback: Callable[[Exception | None], None]) -> None:
        """Register a callback run once, synchronously, when the channel closes."""
        if self.closed:
            callback(self._close_reason)
            return
        self._close_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def send(self, data: bytes) -> None:
        """
        Queue an encoded frame for the writer task.

        Never blocks. Per-stream flow control bounds how much DATA can be
        queued, so the outbox does not need its own limit.

        Raises:
            ChannelLostError: The channel is closed.
        """
        if self.closed:
            raise ChannelLostError(f"Channel #{self.channel_id} is closed")
        self._outbox.put_nowait(data)

    def send_message(
        self, msg_type: int, proto: int, session_id: int, payload: bytes = b""
    ) -> None:
        self.send(build_message(msg_type, proto, session_id, payload))

    async def _writer_loop(self) -> None:
        while True:
            data = await self._outbox.get()
            batch = [data]
            while len(batch) < _WRITE_BATCH and not self._outbox.empty():
                batch.append(self._outbox.get_nowait())
            try:
                self.writer.write(b"".join(batch))
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                self._mark_closed(ChannelLostError(f"Send failed: {e}"))
                return

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    async def recv_frame(self, timeout: float | None = None) -> Frame:
        """Read one frame directly (only used before ``run`` takes over)."""
        return await asyncio.wait_for(
            read_frame(self.reader, self.max_payload), timeout=timeout
        )

    async def run(self, dispatch: Callable[[Frame], None]) -> Exception | None:
        """
        Pump frames until the channel closes.

        PING/PONG are handled here; every other frame goes to ``dispatch``,
        which must not block.

        Returns:
            The reason the channel closed.
        """
        self._tasks = [
            asyncio.create_task(self._writer_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]
        logger.info(f"{self.log_prefix} Up (peer={self.peer})")

        try:
            while not self.closed:
                frame = await read_frame(self.reader, self.max_payload)
                self.last_received = time.monotonic()

                if frame.msg_type == MSG_PING:
                    self.send_message(MSG_PONG, PROTO_CONTROL, 0, frame.payload)
                    continue
                if frame.msg_type == MSG_PONG:
                    continue
                dispatch(frame)

        except asyncio.IncompleteReadError:
            self._mark_closed(ChannelLostError("Peer closed the connection"))
        except (ConnectionError, OSError) as e:
            self._mark_closed(ChannelLostError(f"Transport error: {e}"))
        except ProtocolError as e:
            logger.warning(f"{self.log_prefix} Protocol error: {e}")
            self._mark_closed(e)
        except ChannelLostError as e:
            self._mark_closed(e)
        finally:
            await self.close()

        return self._close_reason

    async def _heartbeat_loop(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.heartbeat_interval)
            silent_for = time.monotonic() - self.last_received
            if silent_for > self.heartbeat_timeout:
                logger.warning(
                    f"{self.log_prefix} No traffic for {silent_for:.1f}s, "
                    "dropping channel"
                )
                self._mark_closed(
                    ChannelLostError(f"Heartbeat timeout after {silent_for:.1f}s")
                )
                return
            try:
                self.send_message(MSG_PING, PROTO_CONTROL, 0)
            except ChannelLostError:
                return

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    def _mark_closed(self, reason: Exception | None) -> None:
        if self.closed:
            return
        self._close_reason = reason
        self._closed.set()
        self.writer.close()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()

        if reason is not None:
            logger.info(f"{self.log_prefix} Closed: {reason}")
        else:
            logger.info(f"{self.log_prefix} Closed")

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.exception(f"{self.log_prefix} Close callback failed: {e}")

    async def close(self, reason: Exception | None = None) -> None:
        """Close the channel. Idempotent; the first reason wins."""
        self._mark_closed(reason)
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError):
            pass

    async def wait_closed(self) -> None:
        await self._closed.wait()


# =============================================================================
# Handshake
# =============================================================================


def build_hello(client_name: str, dst_host: str, dst_port: int) -> dict:
    return {
        "version": PROTOCOL_VERSION,
        "client": client_name,
        "dst": {"host": dst_host, "port": dst_port},
    }


async def read_hello(reader: asyncio.StreamReader, timeout: float) -> dict:
    """
    Server side: read the HELLO frame that follows the preamble.

    Raises:
        ProtocolError: Wrong frame, malformed payload or version mismatch.
        asyncio.TimeoutError: Client stayed silent.
    """
    frame = await asyncio.wait_for(read_frame(reader), timeout=timeout)
    if frame.msg_type != MSG_HELLO:
        raise ProtocolError(f"Expected HELLO, got {frame.header.name}")
    hello = decode_json(frame.payload)
    if hello.get("version") != PROTOCOL_VERSION:
        raise ProtocolError(
            f"Unsupported protocol version {hello.get('version')!r} "
            f"(expected {PROTOCOL_VERSION})"
        )
    return hello


async def send_reject(writer: asyncio.StreamWriter, reason: str) -> None:
    """Server side: refuse a handshake and close the connection."""
    try:
        writer.write(build_message(MSG_REJECT, PROTO_CONTROL, 0, reason.encode()))
        await writer.drain()
    except (ConnectionError, OSError):
        pass
    finally:
        writer.close()


def build_welcome(heartbeat_interval: float, heartbeat_timeout: float, window: int) -> bytes:
    return build_message(
        MSG_WELCOME,
        PROTO_CONTROL,
        0,
        encode_json(
            {
                "version": PROTOCOL_VERSION,
                "heartbeat_interval": heartbeat_interval,
                "heartbeat_timeout": heartbeat_timeout,
                "window": window,
            }
        ),
    )


async def open_channel(
    host: str,
    port: int,
    hello: dict,
    *,
    connect_timeout: float,
    handshake_timeout: float,
    heartbeat_interval: float,
    heartbeat_timeout: float,
    max_payload: int = MAX_PAYLOAD_LIMIT,
) -> ControlChannel:
    """
    Client side: dial the server and complete the handshake.

    Heartbeat values announced by the server in WELCOME take precedence over
    the local defaults so both sides agree on the timeout.

    Raises:
        ConnectError: Unreachable/refused server, timeout, or REJECT.
    """
    endpoint = f"{host}:{port}"
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=connect_timeout
        )
    except asyncio.TimeoutError:
        raise ConnectError(f"Timeout connecting to {endpoint}", endpoint)
    except OSError as e:
        raise ConnectError(f"Cannot connect to {endpoint}: {e}", endpoint) from e

    try:
        writer.write(
            PREAMBLE + build_message(MSG_HELLO, PROTO_CONTROL, 0, encode_json(hello))
        )
        await writer.drain()
        frame = await asyncio.wait_for(read_frame(reader), timeout=handshake_timeout)

        if frame.msg_type == MSG_REJECT:
            raise ConnectError(
                f"Server {endpoint} rejected the channel: "
                f"{decode_reason(frame.payload)}",
                endpoint,
            )
        if frame.msg_type != MSG_WELCOME:
            raise ConnectError(
                f"Unexpected handshake reply {frame.header.name} from {endpoint}",
                endpoint,
            )
        welcome = decode_json(frame.payload)

    except ConnectError:
        writer.close()
        raise
    except asyncio.TimeoutError:
        writer.close()
        raise ConnectError(f"Handshake with {endpoint} timed out", endpoint)
    except (asyncio.IncompleteReadError, ConnectionError, OSError) as e:
        writer.close()
        raise ConnectError(f"Handshake with {endpoint} failed: {e}", endpoint) from e
    except ProtocolError as e:
        writer.close()
        raise ConnectError(f"Bad handshake reply from {endpoint}: {e}", endpoint) from e

    return ControlChannel(
        reader,
        writer,
        name="client",
        heartbeat_interval=float(welcome.get("heartbeat_interval", heartbeat_interval)),
        heartbeat_timeout=float(welcome.get("heartbeat_timeout", heartbeat_timeout)),
        max_payload=max_payload,
        info=welcome,
    )


# =============================================================================
# Reconnect Backoff
# =============================================================================


class Backoff:
    """
    Exponential backoff with a delay cap and an optional attempt ceiling.

    ``next_delay()`` returns the wait before the next attempt, or None once
    ``max_attempts`` failures have been recorded (0 means never give up).
    """

    def __init__(
        self,
        initial: float,
        maximum: float,
        factor: float = 2.0,
        max_attempts: int = 0,
    ):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.max_attempts = max_attempts
        self.failures = 0

    def reset(self) -> None:
        self.failures = 0

    def next_delay(self) -> float | None:
        self.failures += 1
        if self.max_attempts and self.failures >= self.max_attempts:
            return None
        return min(self.initial * self.factor ** (self.failures - 1), self.maximum)


async def connect_with_retry(
    host: str,
    port: int,
    hello: dict,
    backoff: Backoff,
    *,
    on_failure: Callable[[ConnectError, float | None], None] | None = None,
    **channel_kwargs,
) -> ControlChannel:
    """
    Dial the server until it accepts, sleeping between attempts.

    Args:
        on_failure: Called after each failed attempt with the error and the
            upcoming delay (None when giving up).

    Raises:
        RetriesExhaustedError: The backoff ceiling was reached.
    """
    endpoint = f"{host}:{port}"
    while True:
        try:
            channel = await open_channel(host, port, hello, **channel_kwargs)
            backoff.reset()
            return channel
        except ConnectError as e:
            delay = backoff.next_delay()
            if on_failure:
                on_failure(e, delay)
            if delay is None:
                raise RetriesExhaustedError(endpoint, backoff.failures, e) from e
            logger.info(
                f"[Connect {endpoint}] Attempt {backoff.failures} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
