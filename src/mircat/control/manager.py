"""
Relay manager: the control surface behind the API and the CLI.

Holds at most one relay (server or client) at a time and turns its
notifications into RelayEvent entries on the event bus.
"""

import asyncio

from mircat.control.events import EventBus
from mircat.models.api import RelayEvent, RelayStatus
from mircat.models.config import Config
from mircat.models.enums import ConnectivityState, RelayRole
from mircat.relay.client import RelayClient
from mircat.relay.config import RelayConfig
from mircat.relay.server import RelayServer
from mircat.tunnel.errors import AlreadyRunningError
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


class RelayManager:
    """
    Start, stop and observe one relay.

    ``start_server`` returns once every endpoint is bound. ``start_client``
    returns right away; the client keeps (re)connecting in a background task
    and a persistent failure shows up as state FAILED plus an "error" event.
    """

    def __init__(self, tuning: RelayConfig | None = None, events: EventBus | None = None):
        self.tuning = tuning
        self.events = events or EventBus()
        self.last_error: str | None = None

        self._relay: RelayServer | RelayClient | None = None
        self._role: RelayRole | None = None
        self._client_task: asyncio.Task | None = None

    @property
    def role(self) -> RelayRole | None:
        return self._role

    @property
    def relay(self) -> RelayServer | RelayClient | None:
        return self._relay

    @property
    def running(self) -> bool:
        if self._relay is None:
            return False
        if self._role == RelayRole.SERVER:
            return self._relay.running
        return self._client_task is not None and not self._client_task.done()

    def _sink(self, role: RelayRole):
        def on_event(
            kind: str, message: str, session_id: int | None, **fields
        ) -> None:
            self.events.publish(kind, message, session_id, role.value, **fields)

        return on_event

    def _ensure_idle(self) -> None:
        if self.running:
            raise AlreadyRunningError(self._role.value)
        # A finished (failed) client can be replaced
        self._relay, self._role, self._client_task = None, None, None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_server(self, config: Config) -> RelayServer:
        """
        Start the server role.

        Raises:
            AlreadyRunningError: A relay is active.
            ConfigError: Server fields missing or inconsistent.
            ListenError: An endpoint could not be bound.
        """
        self._ensure_idle()
        server = RelayServer(config, self.tuning, on_event=self._sink(RelayRole.SERVER))
        try:
            await server.start()
        except Exception as e:
            self.last_error = str(e)
            self.events.publish("error", str(e), role=RelayRole.SERVER.value)
            raise
        self._relay, self._role = server, RelayRole.SERVER
        self.last_error = None
        return server

    async def start_client(self, config: Config, retry_forever: bool = False) -> RelayClient:
        """
        Start the client role in the background.

        Raises:
            AlreadyRunningError: A relay is active.
            ConfigError: Client fields missing.
        """
        self._ensure_idle()
        client = RelayClient(
            config,
            self.tuning,
            on_event=self._sink(RelayRole.CLIENT),
            retry_forever=retry_forever,
        )
        self._relay, self._role = client, RelayRole.CLIENT
        self.last_error = None
        self._client_task = asyncio.create_task(client.run())
        self._client_task.add_done_callback(self._on_client_done)
        return client

    def _on_client_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.last_error = str(exc)
            logger.error(f"[Manager] Client stopped: {exc}")
            self.events.publish("error", str(exc), role=RelayRole.CLIENT.value)

    async def stop(self) -> bool:
        """Stop the active relay. Returns False when nothing was running."""
        relay, role = self._relay, self._role
        if relay is None:
            return False

        if role == RelayRole.SERVER:
            await relay.stop()
        else:
            await relay.stop()
            if self._client_task is not None:
                await asyncio.gather(self._client_task, return_exceptions=True)

        self._relay, self._role, self._client_task = None, None, None
        logger.info(f"[Manager] {role.value.capitalize()} stopped")
        return True

    async def wait(self) -> None:
        """
        Block until the active relay ends on its own.

        Raises:
            RetriesExhaustedError: The client gave up reconnecting.
        """
        if self._role == RelayRole.SERVER:
            await self._relay.wait_stopped()
        elif self._client_task is not None:
            await asyncio.shield(self._client_task)

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def status(self) -> RelayStatus:
        if self._relay is None:
            return RelayStatus(
                role=None,
                state=ConnectivityState.STOPPED.value,
                last_error=self.last_error,
            )
        detail = self._relay.status()
        return RelayStatus(
            role=self._role.value,
            state=detail["state"],
            connected=detail["channel"] is not None,
            active_sessions=len(self._relay.registry),
            last_error=detail["last_error"] or self.last_error,
            detail=detail,
        )

    def recent_events(self, limit: int | None = None) -> list[RelayEvent]:
        return self.events.recent(limit)

    def subscribe(self) -> asyncio.Queue:
        return self.events.subscribe()

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self.events.unsubscribe(queue)
