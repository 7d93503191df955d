"""
Tunnel protocol definitions and utilities.

A client claims the control channel by sending the 8-byte PREAMBLE, then
speaks frames in both directions.

Frame wire format (binary, big-endian):
┌──────────┬──────────┬──────────────┬──────────────┬─────────────────────┐
│ Type (1B)│ Proto(1B)│ SessionID(4B)│ Length (4B)  │  Payload (Length)   │
└──────────┴──────────┴──────────────┴──────────────┴─────────────────────┘

Total header: 10 bytes
"""

import asyncio
import json
import struct
from dataclasses import dataclass

from mircat.tunnel.errors import ProtocolError

PREAMBLE = b"MIRCAT\x01\n"
PROTOCOL_VERSION = 1

# =============================================================================
# Message Types
# =============================================================================

MSG_CONNECT: int = 0x01  # Server → Client: open stream / session
MSG_CONNECTED: int = 0x02  # Client → Server: destination dialed
MSG_DATA: int = 0x03  # Bidirectional: relay data
MSG_CLOSE: int = 0x04  # Bidirectional: close stream / session
MSG_ERROR: int = 0x05  # Bidirectional: reset stream, payload is the reason
MSG_PING: int = 0x06  # Keepalive ping
MSG_PONG: int = 0x07  # Keepalive pong
MSG_WINDOW: int = 0x08  # Bidirectional: grant send credit, payload uint32
MSG_EOF: int = 0x09  # Bidirectional: half-close, no more DATA from sender
MSG_HELLO: int = 0x10  # Client → Server: handshake, JSON payload
MSG_WELCOME: int = 0x11  # Server → Client: handshake accepted, JSON payload
MSG_REJECT: int = 0x12  # Server → Client: handshake refused, payload is the reason

MSG_TYPE_NAMES = {
    MSG_CONNECT: "CONNECT",
    MSG_CONNECTED: "CONNECTED",
    MSG_DATA: "DATA",
    MSG_CLOSE: "CLOSE",
    MSG_ERROR: "ERROR",
    MSG_PING: "PING",
    MSG_PONG: "PONG",
    MSG_WINDOW: "WINDOW",
    MSG_EOF: "EOF",
    MSG_HELLO: "HELLO",
    MSG_WELCOME: "WELCOME",
    MSG_REJECT: "REJECT",
}

# =============================================================================
# Protocol Types
# =============================================================================

PROTO_TCP: int = 0x00
PROTO_UDP: int = 0x01
PROTO_CONTROL: int = 0xFF  # Channel-level frames (handshake, keepalive)

# =============================================================================
# Header Format
# =============================================================================

# Header: type(1) + proto(1) + session_id(4) + length(4) = 10 bytes
HEADER_FORMAT = ">BBII"  # Big-endian: byte, byte, uint32, uint32
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 10 bytes

WINDOW_FORMAT = ">I"

# Hard cap on a single payload, whatever the tunables say
MAX_PAYLOAD_LIMIT = 1024 * 1024


@dataclass
class TunnelHeader:
    """Parsed tunnel message header."""

    msg_type: int
    proto: int
    session_id: int
    length: int

    @property
    def name(self) -> str:
        return msg_type_name(self.msg_type)


@dataclass
class Frame:
    """A complete frame read off the channel."""

    header: TunnelHeader
    payload: bytes = b""

    @property
    def msg_type(self) -> int:
        return self.header.msg_type

    @property
    def proto(self) -> int:
        return self.header.proto

    @property
    def session_id(self) -> int:
        return self.header.session_id


def msg_type_name(msg_type: int) -> str:
    return MSG_TYPE_NAMES.get(msg_type, f"UNKNOWN({msg_type})")


def build_message(
    msg_type: int,
    proto: int,
    session_id: int,
    payload: bytes = b"",
) -> bytes:
    """
    Build a tunnel protocol message.

    Args:
        msg_type: Message type (MSG_CONNECT, MSG_DATA, etc.)
        proto: Protocol type (PROTO_TCP, PROTO_UDP or PROTO_CONTROL)
        session_id: Stream / session identifier (0 for channel-level frames)
        payload: Message payload data

    Returns:
        Complete message as bytes
    """
    header = struct.pack(HEADER_FORMAT, msg_type, proto, session_id, len(payload))
    return header + payload


def parse_header(data: bytes) -> TunnelHeader | None:
    """
    Parse the header from a tunnel message.

    Args:
        data: Raw message bytes (must be at least HEADER_SIZE bytes)

    Returns:
        Parsed TunnelHeader or None if data too short
    """
    if len(data) < HEADER_SIZE:
        return None

    msg_type, proto, session_id, length = struct.unpack(
        HEADER_FORMAT, data[:HEADER_SIZE]
    )
    return TunnelHeader(
        msg_type=msg_type, proto=proto, session_id=session_id, length=length
    )


def get_payload(data: bytes) -> bytes:
    """
    Extract payload from a tunnel message.

    Args:
        data: Raw message bytes

    Returns:
        Payload bytes (everything after header)
    """
    return data[HEADER_SIZE:] if len(data) > HEADER_SIZE else b""


async def read_frame(
    reader: asyncio.StreamReader, max_payload: int = MAX_PAYLOAD_LIMIT
) -> Frame:
    """
    Read one frame from a stream.

    Raises:
        asyncio.IncompleteReadError: The peer closed mid-frame or between frames.
        ProtocolError: Unknown message type or oversized payload.
    """
    raw = await reader.readexactly(HEADER_SIZE)
    header = parse_header(raw)
    if header.msg_type not in MSG_TYPE_NAMES:
        raise ProtocolError(f"Unknown message type {header.msg_type}")
    if header.length > min(max_payload, MAX_PAYLOAD_LIMIT):
        raise ProtocolError(
            f"{header.name} payload of {header.length} bytes exceeds limit"
        )
    payload = await reader.readexactly(header.length) if header.length else b""
    return Frame(header=header, payload=payload)


# =============================================================================
# Payload Helpers
# =============================================================================


def build_window(session_id: int, proto: int, credit: int) -> bytes:
    return build_message(
        MSG_WINDOW, proto, session_id, struct.pack(WINDOW_FORMAT, credit)
    )


def parse_window(payload: bytes) -> int:
    if len(payload) != struct.calcsize(WINDOW_FORMAT):
        raise ProtocolError(f"WINDOW payload must be 4 bytes, got {len(payload)}")
    return struct.unpack(WINDOW_FORMAT, payload)[0]


def encode_json(data: dict) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def decode_json(payload: bytes) -> dict:
    """Decode a handshake payload, raising ProtocolError when it is not a JSON object."""
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Malformed handshake payload: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Handshake payload must be a JSON object")
    return data


def decode_reason(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")
