"""
UDP relay.

UDP has no connections, so the relay synthesizes them: the server keys a
session on each public source address, and the client keeps one connected
UDP socket per session toward the destination. Replies travel back under the
same session id and leave the server from the public socket toward the
original source address.

Sessions only end by idle expiry (or channel loss). When the server expires
a session it sends CLOSE so the client frees its socket. Datagrams are never
reordered or retried; when the channel backlog is full they are dropped.
"""

import asyncio
from typing import Callable

from mircat.models.enums import SessionKind
from mircat.relay.config import RelayConfig
from mircat.relay.registry import (
    DIRECTION_DST,
    DIRECTION_SRC,
    Session,
    SessionRegistry,
)
from mircat.tunnel.errors import ChannelLostError, DialError, StreamClosedError
from mircat.tunnel.mux import Multiplexer
from mircat.tunnel.protocol import MSG_CLOSE, MSG_DATA, Frame
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


def _closed_by_peer(session_id: int) -> StreamClosedError:
    return StreamClosedError(session_id, "closed by peer")


# =============================================================================
# Server Side
# =============================================================================


class UdpRelayServer(asyncio.DatagramProtocol):
    """
    Public UDP endpoint of the server.

    Args:
        registry: Server session registry (shared with the TCP relay).
        tuning: Relay tunables.
        get_mux: Returns the multiplexer of the active channel, or None.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        tuning: RelayConfig,
        get_mux: Callable[[], Multiplexer | None],
    ):
        self.registry = registry
        self.tuning = tuning
        self._get_mux = get_mux
        self.transport: asyncio.DatagramTransport | None = None
        self.dropped = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def local_address(self):
        if self.transport is None:
            return None
        return self.transport.get_extra_info("sockname")

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        mux = self._get_mux()
        if mux is None or mux.channel.closed:
            self.dropped += 1
            logger.debug(f"[UDP {addr[0]}:{addr[1]}] No client attached, dropped")
            return
        if mux.channel.backlog >= self.tuning.UDP_QUEUE_SIZE:
            self.dropped += 1
            return

        session = self.registry.lookup_peer(SessionKind.UDP, addr)
        if session is not None and session.channel_id != mux.channel.channel_id:
            # Left over from a previous channel and about to be closed
            self.dropped += 1
            return
        if session is None:
            session = self.registry.create(
                SessionKind.UDP,
                addr,
                channel_id=mux.channel.channel_id,
                idle_timeout=self.tuning.UDP_SESSION_IDLE_SECONDS,
                on_close=self._on_session_close,
                index_peer=True,
            )
            logger.info(
                f"[UDP {addr[0]}:{addr[1]}] New session {session.session_id}"
            )

        self.registry.record(session.session_id, DIRECTION_SRC, data)
        try:
            mux.send_datagram(session.session_id, data)
        except ChannelLostError:
            self.dropped += 1

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"[UDP server] Socket error: {exc}")

    def handle_frame(self, frame: Frame) -> None:
        """Datagram handler for the multiplexer: replies and CLOSE from the client."""
        session = self.registry.lookup(frame.session_id)
        if session is None:
            return

        if frame.msg_type == MSG_DATA:
            if self.transport is None or self.transport.is_closing():
                return
            self.transport.sendto(frame.payload, session.peer)
            self.registry.record(session.session_id, DIRECTION_DST, frame.payload)
        elif frame.msg_type == MSG_CLOSE:
            self._spawn(
                self.registry.close(session.session_id, _closed_by_peer(session.session_id))
            )

    def _on_session_close(self, session: Session, reason: Exception | None) -> None:
        if isinstance(reason, (ChannelLostError, StreamClosedError)):
            return
        mux = self._get_mux()
        if mux is not None and mux.channel.channel_id == session.channel_id:
            mux.send_datagram_close(session.session_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()
        for task in list(self._tasks):
            task.cancel()


# =============================================================================
# Client Side
# =============================================================================


class _DestinationProtocol(asyncio.DatagramProtocol):
    """Connected UDP socket toward the destination for one session."""

    def __init__(self, relay: "UdpRelayClient", session_id: int):
        self.relay = relay
        self.session_id = session_id

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.relay._on_reply(self.session_id, data)

    def error_received(self, exc: Exception) -> None:
        # ICMP port unreachable and friends; UDP keeps going
        logger.debug(f"[UDP session {self.session_id}] Destination error: {exc}")


class UdpRelayClient:
    """
    Client half of the UDP relay for one control channel.

    Args:
        mux: Multiplexer of the channel; install ``handle_frame`` as its
            datagram handler.
        registry: Client session registry.
        dst_host: Destination address.
        dst_port: Destination port.
        tuning: Relay tunables.
    """

    # Datagrams held per session while its socket is being created
    MAX_PENDING = 64

    def __init__(
        self,
        mux: Multiplexer,
        registry: SessionRegistry,
        dst_host: str,
        dst_port: int,
        tuning: RelayConfig,
    ):
        self.mux = mux
        self.registry = registry
        self.dst_host = dst_host
        self.dst_port = dst_port
        self.tuning = tuning
        self.dropped = 0

        self._endpoints: dict[int, asyncio.DatagramTransport] = {}
        self._pending: dict[int, list[bytes]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def channel_id(self) -> int:
        return self.mux.channel.channel_id

    def handle_frame(self, frame: Frame) -> None:
        session_id = frame.session_id

        if frame.msg_type == MSG_CLOSE:
            self._spawn(self.registry.close(session_id, _closed_by_peer(session_id)))
            return
        if frame.msg_type != MSG_DATA:
            return

        transport = self._endpoints.get(session_id)
        if transport is not None:
            transport.sendto(frame.payload)
            self.registry.record(session_id, DIRECTION_SRC, frame.payload)
            return

        pending = self._pending.get(session_id)
        if pending is not None:
            if len(pending) < self.MAX_PENDING:
                pending.append(frame.payload)
            else:
                self.dropped += 1
            return

        if session_id in self.registry:
            # Session id reused while the old session is still closing
            self.dropped += 1
            return

        self.registry.create(
            SessionKind.UDP,
            (self.dst_host, self.dst_port),
            channel_id=self.channel_id,
            idle_timeout=self.tuning.UDP_SESSION_IDLE_SECONDS,
            on_close=self._on_session_close,
            session_id=session_id,
        )
        self._pending[session_id] = [frame.payload]
        self._spawn(self._open_endpoint(session_id))

    async def _open_endpoint(self, session_id: int) -> None:
        loop = asyncio.get_running_loop()
        destination = f"{self.dst_host}:{self.dst_port}"
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DestinationProtocol(self, session_id),
                remote_addr=(self.dst_host, self.dst_port),
            )
        except OSError as e:
            error = DialError(f"Cannot reach {destination}: {e}", destination)
            logger.warning(f"[UDP session {session_id}] {error}")
            await self.registry.close(session_id, error)
            return

        session = self.registry.lookup(session_id)
        if session is None or not session.is_open:
            transport.close()
            return

        self._endpoints[session_id] = transport
        logger.info(f"[UDP session {session_id}] Forwarding to {destination}")
        for payload in self._pending.pop(session_id, []):
            transport.sendto(payload)
            self.registry.record(session_id, DIRECTION_SRC, payload)

    def _on_reply(self, session_id: int, data: bytes) -> None:
        if session_id not in self.registry:
            return
        if self.mux.channel.backlog >= self.tuning.UDP_QUEUE_SIZE:
            self.dropped += 1
            return
        self.registry.record(session_id, DIRECTION_DST, data)
        try:
            self.mux.send_datagram(session_id, data)
        except ChannelLostError:
            self.dropped += 1

    def _on_session_close(self, session: Session, reason: Exception | None) -> None:
        self._pending.pop(session.session_id, None)
        transport = self._endpoints.pop(session.session_id, None)
        if transport is not None:
            transport.close()
        if not isinstance(reason, (ChannelLostError, StreamClosedError)):
            self.mux.send_datagram_close(session.session_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        for transport in self._endpoints.values():
            transport.close()
        self._endpoints.clear()
        self._pending.clear()
        for task in list(self._tasks):
            task.cancel()
