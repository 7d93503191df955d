"""
Pydantic models for the control API.

Model Categories:
    - Events: relay notifications delivered by poll and WebSocket
    - Status: snapshot of the running relay
    - Requests: bodies accepted by the start endpoints
"""

import datetime

from pydantic import BaseModel, Field


# =============================================================================
# Event Models
# =============================================================================


class RelayEvent(BaseModel):
    """One notification from a running relay."""

    seq: int = Field(..., description="Monotonic sequence number")
    kind: str = Field(
        ...,
        description=(
            "state | channel_up | channel_down | channel_rejected | "
            "connect_failed | session_opened | session_closed | session_expired | "
            "error | data"
        ),
    )
    role: str | None = Field(default=None, description="server or client")
    message: str = ""
    session_id: int | None = None
    # Traffic tap fields, set on "data" events only
    direction: str | None = Field(default=None, description="src or dst")
    size: int | None = Field(default=None, description="Chunk length in bytes")
    data: str | None = Field(default=None, description="Base64 payload preview")
    truncated: bool | None = None
    timestamp: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


class EventListResponse(BaseModel):
    events: list[RelayEvent]


# =============================================================================
# Status Models
# =============================================================================


class RelayStatus(BaseModel):
    """
    Control surface status.

    ``detail`` is the role-specific snapshot (endpoints, channel, session
    counts) and is empty while stopped.
    """

    role: str | None = Field(default=None, description="server, client, or none")
    state: str = Field(..., description="ConnectivityState value")
    connected: bool = False
    active_sessions: int = 0
    last_error: str | None = None
    detail: dict = Field(default_factory=dict)


# =============================================================================
# Request Models
# =============================================================================


class StartRequest(BaseModel):
    """
    Body for POST /api/server/start and /api/client/start.

    Without ``config`` the relay starts from the config file.
    """

    config: dict | None = Field(
        default=None, description="Config in file form (Server/Transfer/Client)"
    )
    retry_forever: bool = Field(
        default=False, description="Client only: ignore the reconnect ceiling"
    )
