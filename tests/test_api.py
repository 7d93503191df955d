"""Tests for the control API."""

import asyncio
import base64
import json

import httpx
import pytest
from fastapi import WebSocket
from fastapi.testclient import TestClient

from mircat.control.app import create_app
from mircat.control.events import EventBus
from mircat.control.manager import RelayManager
from mircat.models.config import parse_config


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "config.json")


@pytest.fixture
def api(tuning, config_path):
    app = create_app(RelayManager(tuning), config_path=config_path)
    with TestClient(app) as client:
        yield client


class TestStatusAndConfig:
    def test_status_when_idle(self, api):
        response = api.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["role"] is None
        assert data["state"] == "stopped"
        assert data["connected"] is False

    def test_missing_config_file_is_empty_draft(self, api):
        response = api.get("/api/config")

        assert response.status_code == 200
        assert response.json()["Server"]["tcpAddr"] == ""
        assert response.json()["Client"]["ServerPort"] == ""

    def test_put_config_saves_file(self, api, config_path, config_factory):
        data = config_factory(9000, 8080)
        response = api.put("/api/config", json=data)

        assert response.status_code == 200
        assert response.json()["Server"]["tcpPort"] == "9000"
        with open(config_path) as f:
            assert json.load(f)["Transfer"]["dstPort"] == "8080"
        assert api.get("/api/config").json() == response.json()

    def test_put_invalid_config(self, api, config_factory):
        data = config_factory(9000, 8080)
        data["Server"]["tcpPort"] = "70000"
        response = api.put("/api/config", json=data)

        assert response.status_code == 422
        assert any("tcpPort" in field for field in response.json()["fields"])


class TestLifecycle:
    def test_start_needs_a_valid_config(self, api):
        response = api.post("/api/server/start")

        assert response.status_code == 422
        assert response.json()["fields"] == ["Server.tcpAddr", "Server.tcpPort"]

    def test_start_and_stop_server(self, api, config_factory, free_tcp_port):
        body = {"config": config_factory(free_tcp_port(), 9)}

        response = api.post("/api/server/start", json=body)
        assert response.status_code == 200
        assert response.json()["role"] == "server"
        assert response.json()["state"] == "listening"

        assert api.post("/api/server/start", json=body).status_code == 409
        assert api.post("/api/client/start", json=body).status_code == 409

        response = api.post("/api/stop")
        assert response.json()["stopped"] is True
        assert response.json()["status"]["state"] == "stopped"
        assert api.post("/api/stop").json()["stopped"] is False

    def test_start_from_config_file(self, api, config_factory, free_tcp_port):
        api.put("/api/config", json=config_factory(free_tcp_port(), 9))

        response = api.post("/api/server/start")
        assert response.status_code == 200
        assert response.json()["detail"]["endpoints"]["tcp"].startswith("127.0.0.1:")
        api.post("/api/stop")

    def test_port_in_use(self, api, config_factory, free_tcp_port):
        body = {"config": config_factory(free_tcp_port(), 9)}
        assert api.post("/api/server/start", json=body).status_code == 200

        other = create_app(RelayManager())
        with TestClient(other) as second:
            response = second.post("/api/server/start", json=body)

        assert response.status_code == 500
        assert response.json()["endpoint"].startswith("127.0.0.1:")
        api.post("/api/stop")


class TestEvents:
    def test_poll_events(self, api, config_factory, free_tcp_port):
        api.post("/api/server/start", json={"config": config_factory(free_tcp_port(), 9)})
        api.post("/api/stop")

        events = api.get("/api/events", params={"limit": 5}).json()["events"]
        assert [e["message"] for e in events if e["kind"] == "state"] == [
            "listening",
            "stopped",
        ]
        assert api.get("/api/events", params={"limit": 5000}).status_code == 422

    def test_websocket_replay(self, api, config_factory, free_tcp_port):
        api.post("/api/server/start", json={"config": config_factory(free_tcp_port(), 9)})

        with api.websocket_connect("/ws/events?replay=1") as websocket:
            event = websocket.receive_json()

        assert event["kind"] == "state"
        assert event["message"] == "listening"
        assert event["role"] == "server"
        api.post("/api/stop")

    def test_failed_send_releases_subscriber(
        self, api, config_factory, free_tcp_port, monkeypatch
    ):
        calls = []

        async def failing_send(self, data, mode="text"):
            calls.append(data["kind"])
            raise RuntimeError("subscriber socket broken")

        monkeypatch.setattr(WebSocket, "send_json", failing_send)
        api.post("/api/server/start", json={"config": config_factory(free_tcp_port(), 9)})

        with api.websocket_connect("/ws/events?replay=1"):
            pass

        assert calls == ["state"]
        assert api.app.state.manager.events.subscriber_count == 0
        api.post("/api/stop")

    @pytest.mark.asyncio
    async def test_data_events_carry_traffic(
        self, tuning, config_path, config_factory, free_tcp_port, echo_port, wait_until
    ):
        tuning.DATA_EVENTS = True
        tuning.DATA_PREVIEW_BYTES = 4
        bus = EventBus()
        server_manager = RelayManager(tuning, bus)
        client_manager = RelayManager(tuning, bus)
        config = parse_config(config_factory(free_tcp_port(), echo_port))

        def data_bytes(role: str, direction: str) -> int:
            return sum(
                e.size
                for e in bus.recent()
                if e.kind == "data" and e.role == role and e.direction == direction
            )

        await server_manager.start_server(config)
        await client_manager.start_client(config)
        try:
            await wait_until(
                lambda: server_manager.status().connected
                and client_manager.status().connected
            )
            reader, writer = await asyncio.open_connection(
                "127.0.0.1", config.server.tcp_port
            )
            writer.write(b"hello tap")
            await writer.drain()
            assert await reader.readexactly(9) == b"hello tap"
            writer.close()
            await wait_until(
                lambda: all(
                    data_bytes(role, direction) == 9
                    for role in ("server", "client")
                    for direction in ("src", "dst")
                )
            )

            app = create_app(server_manager, config_path=config_path)
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://mircat") as http:
                response = await http.get("/api/events", params={"limit": 100})
        finally:
            await client_manager.stop()
            await server_manager.stop()

        assert response.status_code == 200
        data = [e for e in response.json()["events"] if e["kind"] == "data"]
        first = next(e for e in data if e["role"] == "server" and e["direction"] == "src")
        assert first["session_id"] is not None
        assert base64.b64decode(first["data"]) == b"hell"
        assert first["truncated"] is True
        assert all(e["direction"] in ("src", "dst") for e in data)

    def test_no_data_events_by_default(self, api, config_factory, free_tcp_port):
        api.post("/api/server/start", json={"config": config_factory(free_tcp_port(), 9)})
        api.post("/api/stop")

        events = api.get("/api/events").json()["events"]
        assert events
        assert all(e["kind"] != "data" and e["direction"] is None for e in events)
