"""Relay exception classes."""


class RelayError(Exception):
    """Base exception for relay operations."""

    pass


class ConfigError(RelayError):
    """Invalid address/port in the configuration. Fatal at startup."""

    def __init__(self, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(message)


class ListenError(RelayError):
    """A public or control listener could not be bound."""

    def __init__(self, message: str, endpoint: str):
        self.endpoint = endpoint
        super().__init__(f"Failed to listen on {endpoint}: {message}")


class ConnectError(RelayError):
    """Control channel could not be established."""

    def __init__(self, message: str, endpoint: str = ""):
        self.endpoint = endpoint
        super().__init__(message)


class RetriesExhaustedError(ConnectError):
    """Reconnect attempts hit the configured ceiling."""

    def __init__(self, endpoint: str, attempts: int, last_error: Exception | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up connecting to {endpoint} after {attempts} attempts: {last_error}",
            endpoint,
        )


class DialError(RelayError):
    """Client could not reach the destination for one stream/session."""

    def __init__(self, message: str, endpoint: str = ""):
        self.endpoint = endpoint
        super().__init__(message)


class ChannelLostError(RelayError):
    """Heartbeat timeout or transport failure on the control channel."""

    pass


class SessionTimeoutError(RelayError):
    """Session closed by the idle sweep."""

    def __init__(self, session_id: int, idle_seconds: float):
        self.session_id = session_id
        self.idle_seconds = idle_seconds
        super().__init__(f"Session {session_id} idle for {idle_seconds:.1f}s")


class ProtocolError(RelayError):
    """Peer sent a frame that violates the tunnel protocol."""

    pass


class StreamClosedError(RelayError):
    """Operation on a logical stream that has been closed or reset."""

    def __init__(self, stream_id: int, reason: str = "closed"):
        self.stream_id = stream_id
        self.reason = reason
        super().__init__(f"Stream {stream_id} {reason}")


class AlreadyRunningError(RelayError):
    """A relay role is already active on this control surface."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"A {role} relay is already running")
