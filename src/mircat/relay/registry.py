"""
Session registry.

Single source of truth for the relay's active sessions: one per relayed TCP
connection and one per UDP source address. Sessions are reachable by id and,
for UDP, by (kind, source address).

All mutation happens on the event loop. ``close`` flips the state to CLOSING
before its first await, so concurrent closers (peer CLOSE, idle sweep,
channel loss) cannot release a session twice.
"""

import asyncio
import base64
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from mircat.models.enums import SessionKind, SessionState
from mircat.tunnel.errors import SessionTimeoutError
from mircat.utils.logger import get_logger

logger = get_logger(__name__)

CloseCallback = Callable[["Session", Exception | None], Awaitable[None] | None]
EventCallback = Callable[[str, "Session", Exception | None], None]
DataCallback = Callable[["Session", str, bytes], None]

# Relay-level notifications: (kind, message, session_id or None, **fields)
EventSink = Callable[..., None]

# Traffic directions: from the public source, or back from the destination
DIRECTION_SRC = "src"
DIRECTION_DST = "dst"


# =============================================================================
# Session
# =============================================================================


@dataclass
class Session:
    """Bookkeeping for one relayed TCP stream or UDP flow."""

    session_id: int
    kind: SessionKind
    peer: Any  # Public-side address (server) or destination (client)
    channel_id: int
    idle_timeout: float = 0.0  # 0 = never expires
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)
    state: SessionState = SessionState.OPEN
    bytes_in: int = 0  # Toward the destination
    bytes_out: int = 0  # Back toward the public peer
    on_close: CloseCallback | None = None
    close_reason: Exception | None = None

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_activity

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "peer": _format_peer(self.peer),
            "channel_id": self.channel_id,
            "state": self.state.value,
            "created_at": self.created_at,
            "idle_seconds": round(self.idle_for(), 3),
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
        }


def _format_peer(peer: Any) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


# =============================================================================
# Session Registry
# =============================================================================


class SessionRegistry:
    """
    Tracks sessions and expires idle ones.

    Args:
        name: Label for log lines.
        sweep_interval: Seconds between idle sweeps.
        on_event: Optional callback receiving ("opened"|"closed", session, reason).
        on_data: Optional traffic tap receiving (session, direction, chunk) for
            every chunk passed to ``record``.
    """

    def __init__(
        self,
        name: str = "registry",
        *,
        sweep_interval: float = 1.0,
        on_event: EventCallback | None = None,
        on_data: DataCallback | None = None,
    ):
        self.name = name
        self.sweep_interval = sweep_interval
        self.on_event = on_event
        self.on_data = on_data

        self._sessions: dict[int, Session] = {}
        self._by_peer: dict[tuple[SessionKind, Any], int] = {}
        self._ids = itertools.count(1)
        self._sweeper: asyncio.Task | None = None

        self.total_created = 0
        self.total_expired = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: int) -> bool:
        return session_id in self._sessions

    @property
    def log_prefix(self) -> str:
        return f"[Sessions {self.name}]"

    def allocate_id(self) -> int:
        """Session ids are never reused within one registry."""
        return next(self._ids)

    # -------------------------------------------------------------------------
    # Create / lookup / touch
    # -------------------------------------------------------------------------

    def create(
        self,
        kind: SessionKind,
        peer: Any,
        *,
        channel_id: int,
        idle_timeout: float = 0.0,
        on_close: CloseCallback | None = None,
        session_id: int | None = None,
        index_peer: bool = False,
    ) -> Session:
        """
        Register a new session.

        Args:
            index_peer: Also index by (kind, peer) so ``lookup_peer`` finds it.
                Used for UDP, where the source address is the session key.

        Raises:
            ValueError: The id or indexed peer is already registered.
        """
        if session_id is None:
            session_id = self.allocate_id()
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} already registered")
        if index_peer and (kind, peer) in self._by_peer:
            raise ValueError(f"{kind.value} session for {peer} already registered")

        session = Session(
            session_id=session_id,
            kind=kind,
            peer=peer,
            channel_id=channel_id,
            idle_timeout=idle_timeout,
            on_close=on_close,
        )
        self._sessions[session_id] = session
        if index_peer:
            self._by_peer[(kind, peer)] = session_id
        self.total_created += 1

        logger.debug(
            f"{self.log_prefix} Opened {kind.value} session {session_id} "
            f"peer={_format_peer(peer)}"
        )
        self._emit("opened", session, None)
        return session

    def lookup(self, session_id: int) -> Session | None:
        return self._sessions.get(session_id)

    def lookup_peer(self, kind: SessionKind, peer: Any) -> Session | None:
        session_id = self._by_peer.get((kind, peer))
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def touch(self, session_id: int, bytes_in: int = 0, bytes_out: int = 0) -> bool:
        """Refresh last activity. Returns False for unknown / closing sessions."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_open:
            return False
        session.last_activity = time.monotonic()
        session.bytes_in += bytes_in
        session.bytes_out += bytes_out
        return True

    def record(self, session_id: int, direction: str, data: bytes) -> bool:
        """
        Account one relayed chunk and pass it to the traffic tap.

        ``src`` chunks travel toward the destination (``bytes_in``), ``dst``
        chunks back toward the public peer (``bytes_out``).
        """
        if direction == DIRECTION_SRC:
            touched = self.touch(session_id, bytes_in=len(data))
        else:
            touched = self.touch(session_id, bytes_out=len(data))
        if touched and self.on_data is not None:
            try:
                self.on_data(self._sessions[session_id], direction, data)
            except Exception as e:
                logger.exception(f"{self.log_prefix} Data tap failed: {e}")
        return touched

    # -------------------------------------------------------------------------
    # Close
    # -------------------------------------------------------------------------

    async def close(self, session_id: int, reason: Exception | None = None) -> bool:
        """
        Close a session and run its close callback. Idempotent.

        Returns:
            True if this call closed the session, False if it was already
            closing/closed or unknown.
        """
        session = self._sessions.get(session_id)
        if session is None or session.state != SessionState.OPEN:
            return False

        session.state = SessionState.CLOSING
        session.close_reason = reason
        self._sessions.pop(session_id, None)
        if self._by_peer.get((session.kind, session.peer)) == session_id:
            del self._by_peer[(session.kind, session.peer)]

        try:
            if session.on_close is not None:
                result = session.on_close(session, reason)
                if asyncio.iscoroutine(result):
                    await result
        except Exception as e:
            logger.exception(
                f"{self.log_prefix} Close callback for session {session_id} failed: {e}"
            )
        finally:
            session.state = SessionState.CLOSED

        if isinstance(reason, SessionTimeoutError):
            logger.debug(f"{self.log_prefix} Expired session {session_id}: {reason}")
        else:
            logger.debug(
                f"{self.log_prefix} Closed {session.kind.value} session {session_id}"
                + (f": {reason}" if reason else "")
            )
        self._emit("closed", session, reason)
        return True

    async def close_channel_sessions(
        self, channel_id: int, reason: Exception | None = None
    ) -> int:
        """Close every session riding on one control channel."""
        ids = [s.session_id for s in self._sessions.values() if s.channel_id == channel_id]
        results = await asyncio.gather(*(self.close(sid, reason) for sid in ids))
        return sum(results)

    async def close_all(self, reason: Exception | None = None) -> int:
        ids = list(self._sessions)
        results = await asyncio.gather(*(self.close(sid, reason) for sid in ids))
        return sum(results)

    # -------------------------------------------------------------------------
    # Idle sweep
    # -------------------------------------------------------------------------

    async def sweep(self, now: float | None = None) -> list[int]:
        """Close every session idle beyond its timeout. Returns the closed ids."""
        now = now if now is not None else time.monotonic()
        expired = [
            s
            for s in self._sessions.values()
            if s.idle_timeout > 0 and s.is_open and s.idle_for(now) > s.idle_timeout
        ]
        closed = []
        for session in expired:
            reason = SessionTimeoutError(session.session_id, session.idle_for(now))
            if await self.close(session.session_id, reason):
                self.total_expired += 1
                closed.append(session.session_id)
        return closed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.exception(f"{self.log_prefix} Sweep failed: {e}")

    def start(self) -> None:
        """Start the background idle sweep."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self, reason: Exception | None = None) -> None:
        """Stop the sweep and close every remaining session."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.close_all(reason)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def count(self, kind: SessionKind | None = None) -> int:
        if kind is None:
            return len(self._sessions)
        return sum(1 for s in self._sessions.values() if s.kind == kind)

    def snapshot(self) -> list[dict]:
        return [s.to_dict() for s in self._sessions.values()]

    def _emit(self, event: str, session: Session, reason: Exception | None) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event, session, reason)
        except Exception as e:
            logger.exception(f"{self.log_prefix} Event callback failed: {e}")


def session_event(event: str, session: Session, reason: Exception | None) -> tuple[str, str]:
    """Translate a registry event into an (event kind, message) pair."""
    peer = _format_peer(session.peer)
    if event == "opened":
        return (
            "session_opened",
            f"{session.kind.value.upper()} session {session.session_id} ({peer})",
        )
    if isinstance(reason, SessionTimeoutError):
        return "session_expired", str(reason)
    message = f"{session.kind.value.upper()} session {session.session_id} closed"
    if reason is not None:
        message += f": {reason}"
    return "session_closed", message


def data_event(
    session: Session, direction: str, data: bytes, preview_bytes: int
) -> tuple[str, dict]:
    """
    Translate a tapped chunk into a ``data`` event message and its fields.

    The payload preview is base64 of at most ``preview_bytes`` leading bytes.
    """
    preview = data[:preview_bytes] if preview_bytes > 0 else b""
    message = (
        f"{session.kind.value.upper()} session {session.session_id} "
        f"{direction} {len(data)} bytes"
    )
    return message, {
        "direction": direction,
        "size": len(data),
        "data": base64.b64encode(preview).decode("ascii"),
        "truncated": len(preview) < len(data),
    }
