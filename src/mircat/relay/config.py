"""
Relay tunables.

A global RelayConfig instance that can be modified before a relay starts.
Each relay takes a copy (``config.snapshot()``) at construction, so changes
made while a relay is running only apply to the next one.

Addresses and ports do not live here; they come from the frozen
``mircat.models.config.Config`` records.
"""

import copy
from dataclasses import dataclass

from mircat.models.enums import ChannelPolicy, LogLevel


@dataclass
class RelayConfig:
    """Timeouts, buffer sizes and policies shared by both roles."""

    # Keepalive Configuration
    HEARTBEAT_INTERVAL_SECONDS: float = 5.0
    HEARTBEAT_TIMEOUT_SECONDS: float = 20.0  # No frame from peer for this long = lost

    # Session Configuration
    UDP_SESSION_IDLE_SECONDS: float = 60.0
    TCP_SESSION_IDLE_SECONDS: float = 0.0  # 0 disables idle expiry for TCP streams
    SESSION_SWEEP_INTERVAL_SECONDS: float = 1.0

    # Connection Timeouts
    DIAL_TIMEOUT_SECONDS: float = 10.0  # Client -> destination
    CONNECT_TIMEOUT_SECONDS: float = 10.0  # Client -> server, per attempt
    HANDSHAKE_TIMEOUT_SECONDS: float = 10.0
    STREAM_OPEN_TIMEOUT_SECONDS: float = 15.0  # Server waits for CONNECTED/ERROR
    SNIFF_TIMEOUT_SECONDS: float = 0.5  # Shared listener: wait for the preamble

    # Reconnect Backoff
    RECONNECT_INITIAL_SECONDS: float = 1.0
    RECONNECT_MAX_SECONDS: float = 30.0
    RECONNECT_FACTOR: float = 2.0
    RECONNECT_MAX_ATTEMPTS: int = 10  # 0 = retry forever

    # Flow Control / Framing
    STREAM_WINDOW_BYTES: int = 256 * 1024
    MAX_FRAME_PAYLOAD: int = 32 * 1024
    READ_CHUNK_BYTES: int = 32 * 1024
    UDP_QUEUE_SIZE: int = 1024  # Datagrams waiting for the channel; excess dropped

    # Traffic Tap
    DATA_EVENTS: bool = False  # Publish a "data" event per relayed chunk
    DATA_PREVIEW_BYTES: int = 256  # Leading bytes of each chunk kept in the event

    # Control Channel Policy
    CHANNEL_POLICY: ChannelPolicy = ChannelPolicy.REPLACE

    # Logging Configuration
    LOG_LEVEL: LogLevel = LogLevel.INFO
    LOG_FILE: str = ""

    def snapshot(self) -> "RelayConfig":
        """Independent copy for one relay instance."""
        return copy.copy(self)


# Global config instance
config = RelayConfig()
