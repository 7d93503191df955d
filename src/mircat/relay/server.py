"""
Relay server.

Owns the public endpoints and the single control channel:

- ``tcpAddr:tcpPort`` is shared. A connection that opens with the channel
  preamble is a client claiming the control channel; anything else (other
  bytes, EOF, or silence for SNIFF_TIMEOUT) is public TCP traffic and the
  sniffed bytes are replayed into its stream.
- ``srcAddr:srcPort``, when it differs from the TCP endpoint, is an extra
  public TCP listener.
- ``udpAddr:udpPort`` is the public UDP endpoint (disabled when empty).

At most one control channel is active. A second client either replaces the
active one or is rejected, depending on CHANNEL_POLICY.
"""

import asyncio
import time

from mircat.models.config import Config, format_endpoint
from mircat.models.enums import (
    ChannelPolicy,
    ConnectivityState,
    RelayRole,
    SessionKind,
)
from mircat.relay.config import RelayConfig, config as relay_config
from mircat.relay.registry import (
    EventSink,
    Session,
    SessionRegistry,
    data_event,
    session_event,
)
from mircat.relay.tcp_relay import relay_public_connection
from mircat.relay.udp_relay import UdpRelayServer
from mircat.tunnel.channel import (
    ControlChannel,
    build_welcome,
    read_hello,
    send_reject,
)
from mircat.tunnel.errors import ChannelLostError, ListenError, ProtocolError
from mircat.tunnel.mux import Multiplexer
from mircat.tunnel.protocol import PREAMBLE
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


class RelayServer:
    """
    Server half of the relay.

    Usage::

        server = RelayServer(config)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        config: Config,
        tuning: RelayConfig | None = None,
        on_event: EventSink | None = None,
    ):
        """
        Initialize relay server.

        Args:
            config: Validated for the server role here.
            tuning: Tunables; defaults to a snapshot of the global config.
            on_event: Receives (kind, message, session_id, **fields)
                notifications.

        Raises:
            ConfigError: Required server fields are missing or inconsistent.
        """
        self.config = config.validate_for_server()
        self.tuning = (tuning or relay_config).snapshot()
        self.on_event = on_event

        self.registry = SessionRegistry(
            "server",
            sweep_interval=self.tuning.SESSION_SWEEP_INTERVAL_SECONDS,
            on_event=self._on_session_event,
            on_data=self._on_data if self.tuning.DATA_EVENTS else None,
        )
        self.state = ConnectivityState.STOPPED
        self.started_at: float | None = None
        self.last_error: str | None = None

        self._listeners: list[asyncio.AbstractServer] = []
        self._udp: UdpRelayServer | None = None
        self._channel: ControlChannel | None = None
        self._mux: Multiplexer | None = None
        self._connections: set[asyncio.Task] = set()
        self._stopping = False
        self._stopped = asyncio.Event()

    @property
    def log_prefix(self) -> str:
        return "[Server]"

    @property
    def channel(self) -> ControlChannel | None:
        return self._channel

    @property
    def running(self) -> bool:
        return self.state != ConnectivityState.STOPPED

    def _emit(
        self, kind: str, message: str, session_id: int | None = None, **fields
    ) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(kind, message, session_id, **fields)
        except Exception as e:
            logger.exception(f"{self.log_prefix} Event callback failed: {e}")

    def _set_state(self, state: ConnectivityState) -> None:
        if state != self.state:
            self.state = state
            self._emit("state", state.value)

    def _on_session_event(
        self, event: str, session: Session, reason: Exception | None
    ) -> None:
        kind, message = session_event(event, session, reason)
        self._emit(kind, message, session.session_id)

    def _on_data(self, session: Session, direction: str, data: bytes) -> None:
        message, fields = data_event(
            session, direction, data, self.tuning.DATA_PREVIEW_BYTES
        )
        self._emit("data", message, session.session_id, **fields)

    def active_mux(self) -> Multiplexer | None:
        if self._mux is None or self._mux.channel.closed:
            return None
        return self._mux

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Bind every public endpoint and start accepting.

        Raises:
            ListenError: An endpoint could not be bound; nothing stays open.
        """
        if self.running:
            raise RuntimeError("Server already started")

        tcp_host, tcp_port = self.config.server.tcp_endpoint
        public_host, public_port = self.config.public_tcp_endpoint()
        self._stopping = False
        self._stopped.clear()

        try:
            await self._listen_tcp(tcp_host, tcp_port, self._handle_shared)
            if (public_host, public_port) != (tcp_host, tcp_port):
                await self._listen_tcp(public_host, public_port, self._handle_public)
            if self.config.server.udp_enabled:
                await self._listen_udp(*self.config.server.udp_endpoint)
        except ListenError as e:
            self.last_error = str(e)
            await self._close_listeners()
            raise

        self.registry.start()
        self.started_at = time.time()
        self._set_state(ConnectivityState.LISTENING)
        logger.info(f"{self.log_prefix} Ready, waiting for a client")

    async def _listen_tcp(self, host: str, port: int, handler) -> None:
        endpoint = format_endpoint(host, port)
        try:
            listener = await asyncio.start_server(handler, host, port)
        except OSError as e:
            raise ListenError(str(e), endpoint) from e
        self._listeners.append(listener)
        logger.info(f"{self.log_prefix} Listening on TCP {endpoint}")

    async def _listen_udp(self, host: str, port: int) -> None:
        endpoint = format_endpoint(host, port)
        loop = asyncio.get_running_loop()
        try:
            _, protocol = await loop.create_datagram_endpoint(
                lambda: UdpRelayServer(self.registry, self.tuning, self.active_mux),
                local_addr=(host, port),
            )
        except OSError as e:
            raise ListenError(str(e), endpoint) from e
        self._udp = protocol
        logger.info(f"{self.log_prefix} Listening on UDP {endpoint}")

    async def _close_listeners(self) -> None:
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.close()
        if self._udp is not None:
            self._udp.close()
            self._udp = None
        for listener in listeners:
            try:
                await asyncio.wait_for(listener.wait_closed(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.debug(f"{self.log_prefix} Listener slow to close")

    async def stop(self) -> None:
        """Close the channel, every session and every listener. Idempotent."""
        if not self.running:
            return
        logger.info(f"{self.log_prefix} Stopping")
        self._stopping = True
        reason = ChannelLostError("Server stopping")

        for listener in self._listeners:
            listener.close()
        if self._channel is not None:
            await self._channel.close(reason)

        tasks = list(self._connections)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.registry.stop(reason)
        await self._close_listeners()
        self._set_state(ConnectivityState.STOPPED)
        self._stopped.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # -------------------------------------------------------------------------
    # Incoming connections
    # -------------------------------------------------------------------------

    def _track(self) -> asyncio.Task:
        task = asyncio.current_task()
        self._connections.add(task)
        return task

    async def _handle_shared(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Shared TCP endpoint: control channel or public traffic."""
        task = self._track()
        try:
            try:
                initial = await asyncio.wait_for(
                    reader.readexactly(len(PREAMBLE)),
                    timeout=self.tuning.SNIFF_TIMEOUT_SECONDS,
                )
            except asyncio.IncompleteReadError as e:
                initial = e.partial
            except asyncio.TimeoutError:
                # Bytes that arrived stay in the reader buffer
                initial = b""

            if initial == PREAMBLE:
                await self._handle_control(reader, writer)
            else:
                await relay_public_connection(
                    reader, writer, self.active_mux(), self.registry, self.tuning, initial
                )
        except (ConnectionError, OSError) as e:
            logger.debug(f"{self.log_prefix} Connection error: {e}")
        finally:
            writer.close()
            self._connections.discard(task)

    async def _handle_public(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = self._track()
        try:
            await relay_public_connection(
                reader, writer, self.active_mux(), self.registry, self.tuning
            )
        finally:
            self._connections.discard(task)

    async def _handle_control(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        peer_name = f"{peer[0]}:{peer[1]}" if peer else "?"
        log_prefix = f"{self.log_prefix}[Client {peer_name}]"

        try:
            hello = await read_hello(reader, self.tuning.HANDSHAKE_TIMEOUT_SECONDS)
        except (ProtocolError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            reason = str(e) or "handshake timed out"
            logger.warning(f"{log_prefix} Handshake failed: {reason}")
            await send_reject(writer, reason)
            return

        current = self._channel
        if current is not None and not current.closed:
            if self.tuning.CHANNEL_POLICY == ChannelPolicy.REJECT:
                logger.warning(
                    f"{log_prefix} Rejected, channel #{current.channel_id} "
                    f"({current.peer}) is active"
                )
                self._emit("channel_rejected", f"Rejected client {peer_name}")
                await send_reject(writer, "another client is already attached")
                return
            logger.warning(
                f"{log_prefix} Replacing existing channel #{current.channel_id}"
            )
            await current.close(ChannelLostError("Replaced by a new client"))

        writer.write(
            build_welcome(
                self.tuning.HEARTBEAT_INTERVAL_SECONDS,
                self.tuning.HEARTBEAT_TIMEOUT_SECONDS,
                self.tuning.STREAM_WINDOW_BYTES,
            )
        )
        await writer.drain()

        channel = ControlChannel(
            reader,
            writer,
            name="server",
            heartbeat_interval=self.tuning.HEARTBEAT_INTERVAL_SECONDS,
            heartbeat_timeout=self.tuning.HEARTBEAT_TIMEOUT_SECONDS,
            info=hello,
        )
        mux = Multiplexer(
            channel,
            window=self.tuning.STREAM_WINDOW_BYTES,
            max_payload=self.tuning.MAX_FRAME_PAYLOAD,
            datagram_handler=self._udp.handle_frame if self._udp else None,
        )
        self._channel, self._mux = channel, mux
        self._set_state(ConnectivityState.CONNECTED)
        self._emit(
            "channel_up",
            f"Client {hello.get('client') or peer_name} attached from {peer_name}",
        )

        try:
            reason = await channel.run(mux.dispatch)
        finally:
            # Only the sessions of this channel; a replacement keeps its own
            lost = channel.close_reason or ChannelLostError("Channel closed")
            await self.registry.close_channel_sessions(channel.channel_id, lost)
            if self._channel is channel:
                self._channel, self._mux = None, None
                if not self._stopping:
                    self._set_state(ConnectivityState.LISTENING)

        if reason is not None:
            self.last_error = str(reason)
        self._emit("channel_down", f"Client {peer_name} detached: {reason}")

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def addresses(self) -> dict:
        """Actually bound endpoints, keyed by "tcp" / "public_tcp" / "udp"."""
        bound = {}
        names = ["tcp", "public_tcp"]
        for name, listener in zip(names, self._listeners):
            if listener.sockets:
                bound[name] = listener.sockets[0].getsockname()[:2]
        if self._udp is not None and self._udp.local_address:
            bound["udp"] = self._udp.local_address[:2]
        return bound

    def status(self) -> dict:
        channel = self._channel
        return {
            "role": RelayRole.SERVER.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "endpoints": {
                name: format_endpoint(*addr) for name, addr in self.addresses().items()
            },
            "channel": (
                {
                    "channel_id": channel.channel_id,
                    "peer": format_endpoint(*channel.peer[:2]) if channel.peer else "",
                    "client": channel.info.get("client", ""),
                    "connected_at": channel.connected_at,
                }
                if channel is not None and not channel.closed
                else None
            ),
            "sessions": {
                "tcp": self.registry.count(SessionKind.TCP),
                "udp": self.registry.count(SessionKind.UDP),
                "total_created": self.registry.total_created,
                "total_expired": self.registry.total_expired,
            },
            "udp_dropped": self._udp.dropped if self._udp else 0,
            "last_error": self.last_error,
        }
