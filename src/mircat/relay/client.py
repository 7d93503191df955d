"""
Relay client.

Dials the server, holds the control channel, and serves every stream and
datagram session the server opens by forwarding it to ``dstAddr:dstPort``.
A lost channel tears down its sessions and the client dials again with
exponential backoff until it is stopped or the attempt ceiling is reached.
"""

import asyncio
import socket
import time

from mircat.models.config import Config, format_endpoint
from mircat.models.enums import ConnectivityState, RelayRole, SessionKind
from mircat.relay.config import RelayConfig, config as relay_config
from mircat.relay.registry import (
    EventSink,
    Session,
    SessionRegistry,
    data_event,
    session_event,
)
from mircat.relay.tcp_relay import serve_stream
from mircat.relay.udp_relay import UdpRelayClient
from mircat.tunnel.channel import (
    Backoff,
    ControlChannel,
    build_hello,
    connect_with_retry,
)
from mircat.tunnel.errors import ChannelLostError, ConnectError, RetriesExhaustedError
from mircat.tunnel.mux import Multiplexer
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


class RelayClient:
    """
    Client half of the relay.

    ``run()`` is the whole lifetime: it returns after ``stop()`` and raises
    RetriesExhaustedError when the server stays unreachable.
    """

    def __init__(
        self,
        config: Config,
        tuning: RelayConfig | None = None,
        on_event: EventSink | None = None,
        retry_forever: bool = False,
    ):
        """
        Initialize relay client.

        Args:
            config: Validated for the client role here.
            tuning: Tunables; defaults to a snapshot of the global config.
            on_event: Receives (kind, message, session_id, **fields)
                notifications.
            retry_forever: Ignore RECONNECT_MAX_ATTEMPTS.

        Raises:
            ConfigError: Required client fields are missing.
        """
        self.config = config.validate_for_client()
        self.tuning = (tuning or relay_config).snapshot()
        self.on_event = on_event

        self.server_host, self.server_port = config.client.server_endpoint
        self.dst_host, self.dst_port = config.transfer.dst_endpoint

        self.backoff = Backoff(
            self.tuning.RECONNECT_INITIAL_SECONDS,
            self.tuning.RECONNECT_MAX_SECONDS,
            self.tuning.RECONNECT_FACTOR,
            max_attempts=0 if retry_forever else self.tuning.RECONNECT_MAX_ATTEMPTS,
        )
        self.registry = SessionRegistry(
            "client",
            sweep_interval=self.tuning.SESSION_SWEEP_INTERVAL_SECONDS,
            on_event=self._on_session_event,
            on_data=self._on_data if self.tuning.DATA_EVENTS else None,
        )
        self.state = ConnectivityState.STOPPED
        self.started_at: float | None = None
        self.last_error: str | None = None
        self.connects = 0

        self._channel: ControlChannel | None = None
        self._udp: UdpRelayClient | None = None
        self._stream_tasks: set[asyncio.Task] = set()
        self._run_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def log_prefix(self) -> str:
        return f"[Client -> {format_endpoint(self.server_host, self.server_port)}]"

    @property
    def channel(self) -> ControlChannel | None:
        return self._channel

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

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

    def _on_connect_failure(self, error: ConnectError, delay: float | None) -> None:
        self.last_error = str(error)
        if delay is None:
            self._emit("connect_failed", f"{error}; giving up")
        else:
            self._emit("connect_failed", f"{error}; retrying in {delay:.1f}s")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """
        Connect, relay and reconnect until stopped.

        A client that was stopped, even before this coroutine got to run,
        returns at once.

        Raises:
            RetriesExhaustedError: The server stayed unreachable.
        """
        if self.running:
            raise RuntimeError("Client already running")
        if self._stopping:
            return
        self._run_task = asyncio.current_task()
        self.started_at = time.time()
        self.registry.start()

        hello = build_hello(socket.gethostname(), self.dst_host, self.dst_port)
        try:
            while not self._stopping:
                self._set_state(ConnectivityState.CONNECTING)
                try:
                    channel = await connect_with_retry(
                        self.server_host,
                        self.server_port,
                        hello,
                        self.backoff,
                        on_failure=self._on_connect_failure,
                        connect_timeout=self.tuning.CONNECT_TIMEOUT_SECONDS,
                        handshake_timeout=self.tuning.HANDSHAKE_TIMEOUT_SECONDS,
                        heartbeat_interval=self.tuning.HEARTBEAT_INTERVAL_SECONDS,
                        heartbeat_timeout=self.tuning.HEARTBEAT_TIMEOUT_SECONDS,
                    )
                except RetriesExhaustedError as e:
                    logger.error(f"{self.log_prefix} {e}")
                    self.last_error = str(e)
                    self._set_state(ConnectivityState.FAILED)
                    raise

                await self._serve_channel(channel)
                if self._stopping:
                    break

                self._set_state(ConnectivityState.DISCONNECTED)
                await asyncio.sleep(self.tuning.RECONNECT_INITIAL_SECONDS)

        except asyncio.CancelledError:
            if not self._stopping:
                raise
        finally:
            await self._cleanup()
            if self.state != ConnectivityState.FAILED:
                self._set_state(ConnectivityState.STOPPED)

    async def stop(self) -> None:
        """Drop the channel and end ``run()``. Idempotent."""
        if self._stopping:
            return
        self._stopping = True
        logger.info(f"{self.log_prefix} Stopping")
        task = self._run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _cleanup(self) -> None:
        reason = ChannelLostError("Client stopping")
        if self._channel is not None:
            await self._channel.close(reason)
        tasks = list(self._stream_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.registry.stop(reason)

    # -------------------------------------------------------------------------
    # Channel
    # -------------------------------------------------------------------------

    async def _serve_channel(self, channel: ControlChannel) -> None:
        mux = Multiplexer(
            channel,
            window=int(channel.info.get("window", self.tuning.STREAM_WINDOW_BYTES)),
            max_payload=self.tuning.MAX_FRAME_PAYLOAD,
        )
        udp = UdpRelayClient(
            mux, self.registry, self.dst_host, self.dst_port, self.tuning
        )
        mux.datagram_handler = udp.handle_frame

        self._channel, self._udp = channel, udp
        self.connects += 1
        self.last_error = None
        self._set_state(ConnectivityState.CONNECTED)
        self._emit(
            "channel_up",
            f"Attached to {format_endpoint(self.server_host, self.server_port)}, "
            f"forwarding to {format_endpoint(self.dst_host, self.dst_port)}",
        )

        accept_task = asyncio.create_task(self._accept_loop(mux, channel.channel_id))
        try:
            reason = await channel.run(mux.dispatch)
        finally:
            accept_task.cancel()
            await asyncio.gather(accept_task, return_exceptions=True)
            udp.close()
            lost = channel.close_reason or ChannelLostError("Channel closed")
            await self.registry.close_channel_sessions(channel.channel_id, lost)
            self._channel, self._udp = None, None

        if reason is not None:
            self.last_error = str(reason)
        logger.warning(f"{self.log_prefix} Channel lost: {reason}")
        self._emit("channel_down", f"Channel lost: {reason}")

    async def _accept_loop(self, mux: Multiplexer, channel_id: int) -> None:
        while True:
            try:
                stream = await mux.accept_stream()
            except ChannelLostError:
                return
            task = asyncio.create_task(
                serve_stream(
                    stream,
                    self.dst_host,
                    self.dst_port,
                    self.registry,
                    self.tuning,
                    channel_id,
                )
            )
            self._stream_tasks.add(task)
            task.add_done_callback(self._stream_tasks.discard)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def status(self) -> dict:
        channel = self._channel
        return {
            "role": RelayRole.CLIENT.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "server": format_endpoint(self.server_host, self.server_port),
            "destination": format_endpoint(self.dst_host, self.dst_port),
            "channel": (
                {
                    "channel_id": channel.channel_id,
                    "peer": format_endpoint(*channel.peer[:2]) if channel.peer else "",
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
            "connects": self.connects,
            "reconnect_failures": self.backoff.failures,
            "udp_dropped": self._udp.dropped if self._udp else 0,
            "last_error": self.last_error,
        }
