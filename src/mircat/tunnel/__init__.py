"""
Tunnel layer: the control channel between client and server and the stream
multiplexer that carries relayed TCP streams and UDP datagrams over it.
"""

from mircat.tunnel.protocol import (
    HEADER_SIZE,
    MSG_CLOSE,
    MSG_CONNECT,
    MSG_CONNECTED,
    MSG_DATA,
    MSG_EOF,
    MSG_ERROR,
    MSG_HELLO,
    MSG_PING,
    MSG_PONG,
    MSG_REJECT,
    MSG_WELCOME,
    MSG_WINDOW,
    PREAMBLE,
    PROTO_CONTROL,
    PROTO_TCP,
    PROTO_UDP,
    Frame,
    build_message,
    parse_header,
    read_frame,
)

__all__ = [
    "HEADER_SIZE",
    "MSG_CONNECT",
    "MSG_CONNECTED",
    "MSG_DATA",
    "MSG_CLOSE",
    "MSG_ERROR",
    "MSG_PING",
    "MSG_PONG",
    "MSG_WINDOW",
    "MSG_EOF",
    "MSG_HELLO",
    "MSG_WELCOME",
    "MSG_REJECT",
    "PREAMBLE",
    "PROTO_TCP",
    "PROTO_UDP",
    "PROTO_CONTROL",
    "Frame",
    "build_message",
    "parse_header",
    "read_frame",
]
