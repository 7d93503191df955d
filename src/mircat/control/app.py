"""
mircat control API.

FastAPI application exposing the relay manager: status, config file
management, start/stop of either role, and the event feed (poll and
WebSocket).
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from mircat import __version__
from mircat.control.manager import RelayManager
from mircat.models.api import EventListResponse, RelayStatus, StartRequest
from mircat.models.config import (
    Config,
    default_config_path,
    load_config,
    parse_config,
    save_config,
)
from mircat.models.enums import LogLevel
from mircat.relay.config import RelayConfig
from mircat.tunnel.errors import AlreadyRunningError, ConfigError, ListenError
from mircat.utils.logger import configure_logging, get_logger, is_configured

logger = get_logger(__name__)


def create_app(
    manager: RelayManager | None = None,
    config_path: str | None = None,
) -> FastAPI:
    """
    Build the control API.

    Args:
        manager: Relay manager to expose; a fresh one by default.
        config_path: Config file served by /api/config and used by the start
            endpoints when no config is posted.
    """
    manager = manager or RelayManager()
    config_path = config_path or default_config_path()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if await manager.stop():
            logger.info("Relay stopped on API shutdown")

    app = FastAPI(
        title="mircat",
        description="TCP/UDP tunnel relay control API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.config_path = config_path

    # -------------------------------------------------------------------------
    # Error mapping
    # -------------------------------------------------------------------------

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError):
        return JSONResponse(
            status_code=422, content={"detail": str(exc), "fields": exc.fields}
        )

    @app.exception_handler(AlreadyRunningError)
    async def already_running_handler(request: Request, exc: AlreadyRunningError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ListenError)
    async def listen_error_handler(request: Request, exc: ListenError):
        return JSONResponse(
            status_code=500, content={"detail": str(exc), "endpoint": exc.endpoint}
        )

    def _config_from(body: StartRequest | None) -> Config:
        if body is not None and body.config is not None:
            return parse_config(body.config)
        return load_config(config_path)

    # -------------------------------------------------------------------------
    # Status and config
    # -------------------------------------------------------------------------

    @app.get("/api/status", response_model=RelayStatus)
    async def get_status():
        """Current role, connectivity state and session counts."""
        return manager.status()

    @app.get("/api/config")
    async def get_config():
        """Config file contents in file form."""
        return load_config(config_path).to_file_dict()

    @app.put("/api/config")
    async def put_config(data: dict):
        """Validate and persist a new config. A running relay keeps its config."""
        config = parse_config(data)
        path = save_config(config, config_path)
        logger.info(f"Config saved to {path}")
        return config.to_file_dict()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @app.post("/api/server/start", response_model=RelayStatus)
    async def start_server(body: StartRequest | None = None):
        await manager.start_server(_config_from(body))
        return manager.status()

    @app.post("/api/client/start", response_model=RelayStatus)
    async def start_client(body: StartRequest | None = None):
        retry_forever = body.retry_forever if body is not None else False
        await manager.start_client(_config_from(body), retry_forever=retry_forever)
        return manager.status()

    @app.post("/api/stop")
    async def stop():
        stopped = await manager.stop()
        return {"stopped": stopped, "status": manager.status()}

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @app.get("/api/events", response_model=EventListResponse)
    async def list_events(
        limit: int = Query(50, ge=0, le=1000, description="Most recent N events"),
    ):
        return EventListResponse(events=manager.recent_events(limit))

    @app.websocket("/ws/events")
    async def websocket_events(
        websocket: WebSocket,
        replay: int = Query(0, ge=0, le=1000, description="Send the last N first"),
    ):
        """Live event stream; every message is one RelayEvent as JSON."""
        await websocket.accept()
        queue = manager.subscribe()

        async def pump():
            for event in manager.recent_events(replay):
                await websocket.send_json(event.model_dump(mode="json"))
            while True:
                event = await queue.get()
                await websocket.send_json(event.model_dump(mode="json"))

        async def drain():
            # Nothing is expected from the subscriber; reading detects disconnect
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                logger.debug("Event subscriber disconnected")

        tasks = [asyncio.create_task(pump()), asyncio.create_task(drain())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.warning(f"Event subscriber dropped: {task.exception()}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            manager.unsubscribe(queue)

    return app


def run(
    host: str = "127.0.0.1",
    port: int = 8090,
    config_path: str | None = None,
    tuning: RelayConfig | None = None,
):
    """Run the control API using uvicorn."""
    import uvicorn

    from mircat.relay.config import config

    tuning = tuning or config
    log_level = tuning.LOG_LEVEL

    # Must happen before uvicorn.run installs its own loggers
    if not is_configured():
        configure_logging(log_level, tuning.LOG_FILE)

    match log_level:
        case LogLevel.FULL:
            uvicorn_level = "debug"
        case LogLevel.DEBUG:
            uvicorn_level = "debug"
        case LogLevel.INFO:
            uvicorn_level = "info"
        case LogLevel.WARNING:
            uvicorn_level = "warning"

    app = create_app(RelayManager(tuning), config_path)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=uvicorn_level,
        log_config=None,  # keep the loguru sinks from configure_logging
    )
