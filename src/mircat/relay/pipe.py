"""Bidirectional copy between a TCP socket and a multiplexed stream."""

import asyncio
from typing import Callable

from mircat.tunnel.mux import MuxStream

DataHook = Callable[[bytes], None]


async def socket_to_stream(
    reader: asyncio.StreamReader,
    stream: MuxStream,
    chunk_size: int,
    on_data: DataHook | None = None,
) -> None:
    """Copy socket bytes into the stream; half-close the stream at socket EOF."""
    while True:
        data = await reader.read(chunk_size)
        if not data:
            break
        await stream.write(data)
        if on_data:
            on_data(data)
    stream.write_eof()


async def stream_to_socket(
    stream: MuxStream,
    writer: asyncio.StreamWriter,
    chunk_size: int,
    on_data: DataHook | None = None,
) -> None:
    """Copy stream bytes to the socket; half-close the socket at stream EOF."""
    while True:
        data = await stream.read(chunk_size)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        if on_data:
            on_data(data)
    if writer.can_write_eof() and not writer.is_closing():
        try:
            writer.write_eof()
        except OSError:
            pass


async def relay_socket_stream(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    stream: MuxStream,
    *,
    chunk_size: int,
    on_upstream: DataHook | None = None,
    on_downstream: DataHook | None = None,
) -> None:
    """
    Copy both directions until both reach EOF.

    Either direction failing cancels the other and re-raises the error
    (OSError, StreamClosedError or ChannelLostError).
    """
    upstream = asyncio.create_task(
        socket_to_stream(reader, stream, chunk_size, on_upstream)
    )
    downstream = asyncio.create_task(
        stream_to_socket(stream, writer, chunk_size, on_downstream)
    )
    try:
        done, _ = await asyncio.wait(
            {upstream, downstream}, return_when=asyncio.FIRST_EXCEPTION
        )
        for task in done:
            exc = task.exception()
            if exc is not None:
                raise exc
    finally:
        for task in (upstream, downstream):
            task.cancel()
        await asyncio.gather(upstream, downstream, return_exceptions=True)
