"""
TCP relay.

Server side: every public TCP connection becomes one multiplexed stream and
one registry session. Per connection the relay moves through
ACCEPTED -> STREAM_OPEN -> PIPING -> CLOSED.

Client side: every stream the server opens is dialed to the destination and
piped. A failed dial is answered with ERROR so the public connection is
closed right away instead of hanging.
"""

import asyncio

from mircat.models.enums import SessionKind, TcpRelayState
from mircat.relay.config import RelayConfig
from mircat.relay.pipe import relay_socket_stream
from mircat.relay.registry import (
    DIRECTION_DST,
    DIRECTION_SRC,
    Session,
    SessionRegistry,
)
from mircat.tunnel.errors import (
    ChannelLostError,
    DialError,
    StreamClosedError,
)
from mircat.tunnel.mux import Multiplexer, MuxStream
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


def _cancel_on_close(task: asyncio.Task):
    """Session close callback that stops the relay task owning the session."""

    def on_close(session: Session, reason: Exception | None) -> None:
        if task is not asyncio.current_task() and not task.done():
            task.cancel()

    return on_close


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
    except (OSError, asyncio.TimeoutError):
        pass


# =============================================================================
# Server Side
# =============================================================================


async def relay_public_connection(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    mux: Multiplexer | None,
    registry: SessionRegistry,
    tuning: RelayConfig,
    initial: bytes = b"",
) -> list[TcpRelayState]:
    """
    Relay one accepted public TCP connection through the control channel.

    Args:
        reader: Public connection reader.
        writer: Public connection writer.
        mux: Multiplexer of the active channel, None when no client is attached.
        registry: Server session registry.
        tuning: Relay tunables.
        initial: Bytes already consumed from ``reader`` while sniffing.

    Returns:
        The states the connection went through, ending with CLOSED.
    """
    peer = writer.get_extra_info("peername")
    log_prefix = f"[TCP {peer[0]}:{peer[1]}]" if peer else "[TCP ?]"
    states = [TcpRelayState.ACCEPTED]

    if mux is None or mux.channel.closed:
        logger.warning(f"{log_prefix} No client attached, closing connection")
        await _close_writer(writer)
        states.append(TcpRelayState.CLOSED)
        return states

    stream_id = registry.allocate_id()
    stream: MuxStream | None = None
    session = registry.create(
        SessionKind.TCP,
        peer,
        channel_id=mux.channel.channel_id,
        idle_timeout=tuning.TCP_SESSION_IDLE_SECONDS,
        on_close=_cancel_on_close(asyncio.current_task()),
        session_id=stream_id,
    )
    reason: Exception | None = None

    try:
        stream = await mux.open_stream(
            stream_id, timeout=tuning.STREAM_OPEN_TIMEOUT_SECONDS
        )
        states.append(TcpRelayState.STREAM_OPEN)
        logger.info(f"{log_prefix} Stream {stream_id} open")

        if initial:
            await stream.write(initial)
            registry.record(stream_id, DIRECTION_SRC, initial)

        states.append(TcpRelayState.PIPING)
        await relay_socket_stream(
            reader,
            writer,
            stream,
            chunk_size=tuning.READ_CHUNK_BYTES,
            on_upstream=lambda data: registry.record(stream_id, DIRECTION_SRC, data),
            on_downstream=lambda data: registry.record(stream_id, DIRECTION_DST, data),
        )
        stream.close()

    except DialError as e:
        reason = e
        logger.warning(f"{log_prefix} Client could not open stream {stream_id}: {e}")
    except (ChannelLostError, StreamClosedError) as e:
        reason = e
        logger.info(f"{log_prefix} Stream {stream_id} ended: {e}")
    except OSError as e:
        reason = e
        logger.info(f"{log_prefix} Connection error: {e}")
    except asyncio.CancelledError:
        if session.is_open:
            raise
        reason = session.close_reason
        logger.info(f"{log_prefix} Stream {stream_id} closed by registry: {reason}")
    finally:
        pending = stream or mux.get_stream(stream_id)
        if pending is not None and not pending.closed:
            pending.reset(str(reason) if reason else "relay ended")
        await registry.close(stream_id, reason)
        await _close_writer(writer)
        states.append(TcpRelayState.CLOSED)
        logger.debug(f"{log_prefix} " + " -> ".join(s.value for s in states))

    return states


# =============================================================================
# Client Side
# =============================================================================


async def serve_stream(
    stream: MuxStream,
    dst_host: str,
    dst_port: int,
    registry: SessionRegistry,
    tuning: RelayConfig,
    channel_id: int,
) -> None:
    """
    Dial the destination for one stream and pipe until both sides finish.

    A dial failure is reported back with ERROR and ends only this stream.
    """
    log_prefix = f"[Stream {stream.id}]"
    destination = f"{dst_host}:{dst_port}"

    if stream.closed:
        return
    if stream.id in registry:
        stream.refuse("session id still in use")
        return

    session = registry.create(
        SessionKind.TCP,
        (dst_host, dst_port),
        channel_id=channel_id,
        idle_timeout=tuning.TCP_SESSION_IDLE_SECONDS,
        on_close=_cancel_on_close(asyncio.current_task()),
        session_id=stream.id,
    )
    writer: asyncio.StreamWriter | None = None
    reason: Exception | None = None

    try:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(dst_host, dst_port),
                timeout=tuning.DIAL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise DialError(f"Timeout dialing {destination}", destination)
        except OSError as e:
            raise DialError(f"Cannot reach {destination}: {e}", destination) from e

        stream.accept()
        logger.info(f"{log_prefix} Connected to {destination}")

        await relay_socket_stream(
            reader,
            writer,
            stream,
            chunk_size=tuning.READ_CHUNK_BYTES,
            on_upstream=lambda data: registry.record(stream.id, DIRECTION_DST, data),
            on_downstream=lambda data: registry.record(stream.id, DIRECTION_SRC, data),
        )
        stream.close()

    except DialError as e:
        reason = e
        logger.warning(f"{log_prefix} {e}")
        stream.refuse(str(e))
    except (ChannelLostError, StreamClosedError) as e:
        reason = e
        logger.info(f"{log_prefix} Ended: {e}")
    except OSError as e:
        reason = e
        logger.info(f"{log_prefix} Destination connection error: {e}")
    except asyncio.CancelledError:
        if session.is_open:
            raise
        reason = session.close_reason
    finally:
        if not stream.closed:
            stream.reset(str(reason) if reason else "relay ended")
        await registry.close(stream.id, reason)
        if writer is not None:
            await _close_writer(writer)
