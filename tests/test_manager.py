"""Tests for the relay manager and the event bus."""

import asyncio

import pytest

from mircat.control.events import EventBus
from mircat.control.manager import RelayManager
from mircat.models.config import Config, parse_config
from mircat.tunnel.errors import (
    AlreadyRunningError,
    ConfigError,
    ListenError,
    RetriesExhaustedError,
)


class TestEventBus:
    def test_sequence_and_history(self):
        bus = EventBus(history=3)
        for i in range(5):
            bus.publish("state", f"event {i}", role="server")

        events = bus.recent()
        assert [e.seq for e in events] == [3, 4, 5]
        assert bus.recent(2)[-1].message == "event 4"
        assert bus.recent(0) == []

    @pytest.mark.asyncio
    async def test_subscribers_receive_new_events(self):
        bus = EventBus()
        queue = bus.subscribe()
        bus.publish("channel_up", "attached", role="client")

        event = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert event.kind == "channel_up"
        assert event.role == "client"

        bus.unsubscribe(queue)
        bus.publish("channel_down")
        assert queue.empty()
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_loses_oldest(self):
        bus = EventBus(subscriber_queue=2)
        queue = bus.subscribe()
        for kind in ("a", "b", "c"):
            bus.publish(kind)

        assert [queue.get_nowait().kind for _ in range(2)] == ["b", "c"]


class TestRelayManager:
    @pytest.mark.asyncio
    async def test_idle_status(self, tuning):
        manager = RelayManager(tuning)
        status = manager.status()

        assert status.role is None
        assert status.state == "stopped"
        assert not manager.running
        assert await manager.stop() is False

    @pytest.mark.asyncio
    async def test_server_lifecycle(self, tuning, config_factory, free_tcp_port):
        manager = RelayManager(tuning)
        config = parse_config(config_factory(free_tcp_port(), 9))

        await manager.start_server(config)
        try:
            status = manager.status()
            assert status.role == "server"
            assert status.state == "listening"
            assert not status.connected

            with pytest.raises(AlreadyRunningError):
                await manager.start_server(config)
            with pytest.raises(AlreadyRunningError):
                await manager.start_client(config)
        finally:
            assert await manager.stop() is True

        assert manager.status().state == "stopped"
        kinds = [(e.kind, e.message) for e in manager.recent_events()]
        assert ("state", "listening") in kinds
        assert ("state", "stopped") in kinds
        assert all(e.role == "server" for e in manager.recent_events())

    @pytest.mark.asyncio
    async def test_invalid_server_config(self, tuning):
        manager = RelayManager(tuning)
        with pytest.raises(ConfigError):
            await manager.start_server(Config())
        assert not manager.running

    @pytest.mark.asyncio
    async def test_listen_failure_is_reported(self, tuning, config_factory):
        blocker = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = blocker.sockets[0].getsockname()[1]
        manager = RelayManager(tuning)
        try:
            with pytest.raises(ListenError):
                await manager.start_server(parse_config(config_factory(port, 9)))
        finally:
            blocker.close()

        assert not manager.running
        assert manager.status().last_error
        assert manager.recent_events()[-1].kind == "error"

    @pytest.mark.asyncio
    async def test_client_gives_up(self, tuning, config_factory, free_tcp_port, wait_until):
        tuning.RECONNECT_MAX_ATTEMPTS = 2
        manager = RelayManager(tuning)
        config = parse_config(config_factory(free_tcp_port(), 9))

        await manager.start_client(config)
        await wait_until(
            lambda: not manager.running and manager.recent_events()[-1].kind == "error"
        )

        status = manager.status()
        assert status.role == "client"
        assert status.state == "failed"
        assert "Gave up" in status.last_error
        kinds = [e.kind for e in manager.recent_events()]
        assert kinds.count("connect_failed") == 2
        assert kinds[-1] == "error"
        with pytest.raises(RetriesExhaustedError):
            await manager.wait()

        # A failed client does not block a new start
        await manager.start_client(config, retry_forever=True)
        assert manager.running
        assert await manager.stop() is True

    @pytest.mark.asyncio
    async def test_server_and_client_connect(
        self, tuning, config_factory, free_tcp_port, wait_until
    ):
        bus = EventBus()
        server_manager = RelayManager(tuning, bus)
        client_manager = RelayManager(tuning, bus)
        config = parse_config(config_factory(free_tcp_port(), 9))

        await server_manager.start_server(config)
        await client_manager.start_client(config)
        try:
            await wait_until(
                lambda: server_manager.status().connected
                and client_manager.status().connected
            )
            assert client_manager.status().state == "connected"
            assert client_manager.status().detail["connects"] == 1
        finally:
            await client_manager.stop()
            await server_manager.stop()

        ups = [e.role for e in bus.recent() if e.kind == "channel_up"]
        assert sorted(ups) == ["client", "server"]
