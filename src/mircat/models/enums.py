"""
Enumeration types for mircat.

This module defines the enumeration types used throughout the relay for
consistent state tracking and configuration options.
"""

from enum import Enum


# =============================================================================
# Session-Related Enums
# =============================================================================


class SessionKind(str, Enum):
    """Transport carried by a relay session."""

    TCP = "tcp"
    UDP = "udp"


class SessionState(str, Enum):
    """
    Session lifecycle state.

    State transitions:
        OPEN -> CLOSING -> CLOSED
    """

    OPEN = "open"  # Session registered and relaying
    CLOSING = "closing"  # Close requested, resources being released
    CLOSED = "closed"  # Fully released, no longer in the registry


class TcpRelayState(str, Enum):
    """
    Per-connection TCP relay state.

    State transitions:
        ACCEPTED -> STREAM_OPEN -> PIPING -> CLOSED
        ACCEPTED/STREAM_OPEN -> CLOSED (no channel or dial failure)
    """

    ACCEPTED = "accepted"
    STREAM_OPEN = "stream_open"
    PIPING = "piping"
    CLOSED = "closed"


# =============================================================================
# Relay-Related Enums
# =============================================================================


class RelayRole(str, Enum):
    """Which side of the tunnel a relay instance plays."""

    SERVER = "server"
    CLIENT = "client"


class ConnectivityState(str, Enum):
    """
    Control channel connectivity as seen by the control surface.

    State transitions (client):
        STOPPED -> CONNECTING -> CONNECTED -> DISCONNECTED -> CONNECTING ...
        CONNECTING -> FAILED (reconnect attempts exhausted)

    State transitions (server):
        STOPPED -> LISTENING -> CONNECTED -> LISTENING ...
    """

    STOPPED = "stopped"
    LISTENING = "listening"  # Server up, no client attached
    CONNECTING = "connecting"  # Client dialing / backing off
    CONNECTED = "connected"  # Control channel established
    DISCONNECTED = "disconnected"  # Channel lost, reconnect pending
    FAILED = "failed"  # Persistent failure, caller decides


class ChannelPolicy(str, Enum):
    """
    What the server does when a second client claims the control channel.

    - REPLACE: close the active channel (and its sessions), accept the new one
    - REJECT: keep the active channel, answer the newcomer with REJECT
    """

    REPLACE = "replace"
    REJECT = "reject"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels for mircat components.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
