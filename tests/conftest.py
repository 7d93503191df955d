"""
mircat test configuration.

Relay tests run real relays on loopback sockets with shortened timeouts.

[FIXTURES]
- tuning: RelayConfig with test-sized timeouts
- free_tcp_port / free_udp_port: factories for unused local ports
- wait_until: poll a condition with a deadline
- echo_port: TCP and UDP echo destination sharing one port
- udp_peer: factory for UDP test peers
- relay_pair: a started RelayServer plus a connected RelayClient
"""

import asyncio
import socket

import pytest
import pytest_asyncio

from mircat.models.config import parse_config
from mircat.relay.client import RelayClient
from mircat.relay.config import RelayConfig
from mircat.relay.server import RelayServer

LOCALHOST = "127.0.0.1"


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: Relay tests on real sockets")


# ============================================================================
# Helpers
# ============================================================================


def _free_port(kind: int) -> int:
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind((LOCALHOST, 0))
        return s.getsockname()[1]


@pytest.fixture
def free_tcp_port():
    return lambda: _free_port(socket.SOCK_STREAM)


@pytest.fixture
def free_udp_port():
    return lambda: _free_port(socket.SOCK_DGRAM)


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait_until


@pytest.fixture
def tuning() -> RelayConfig:
    return RelayConfig(
        HEARTBEAT_INTERVAL_SECONDS=0.2,
        HEARTBEAT_TIMEOUT_SECONDS=2.0,
        UDP_SESSION_IDLE_SECONDS=5.0,
        SESSION_SWEEP_INTERVAL_SECONDS=0.05,
        DIAL_TIMEOUT_SECONDS=2.0,
        CONNECT_TIMEOUT_SECONDS=1.0,
        HANDSHAKE_TIMEOUT_SECONDS=1.0,
        STREAM_OPEN_TIMEOUT_SECONDS=3.0,
        SNIFF_TIMEOUT_SECONDS=0.2,
        RECONNECT_INITIAL_SECONDS=0.05,
        RECONNECT_MAX_SECONDS=0.2,
        RECONNECT_MAX_ATTEMPTS=3,
    )


def make_config(
    tcp_port: int,
    dst_port: int,
    udp_port: int | None = None,
    src_port: int | None = None,
) -> dict:
    """Config in file form, everything on loopback."""
    return {
        "Server": {
            "tcpAddr": LOCALHOST,
            "tcpPort": str(tcp_port),
            "udpAddr": LOCALHOST if udp_port else "",
            "udpPort": str(udp_port) if udp_port else "",
        },
        "Transfer": {
            "srcAddr": LOCALHOST if src_port else "",
            "srcPort": str(src_port) if src_port else "",
            "dstAddr": LOCALHOST,
            "dstPort": str(dst_port),
        },
        "Client": {"ServerIp": LOCALHOST, "ServerPort": str(tcp_port)},
    }


@pytest.fixture
def config_factory():
    return make_config


# ============================================================================
# Destination Services
# ============================================================================


class EchoDatagram(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(data, addr)


class DatagramCollector(asyncio.DatagramProtocol):
    """UDP test peer that queues everything it receives."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.queue.put_nowait((data, addr))


async def _echo_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


@pytest_asyncio.fixture
async def echo_port():
    """TCP and UDP echo services listening on the same loopback port."""
    loop = asyncio.get_running_loop()
    for _ in range(20):
        server = await asyncio.start_server(_echo_handler, LOCALHOST, 0)
        port = server.sockets[0].getsockname()[1]
        try:
            transport, _ = await loop.create_datagram_endpoint(
                EchoDatagram, local_addr=(LOCALHOST, port)
            )
        except OSError:
            server.close()
            continue
        break
    else:
        pytest.fail("No port free for both TCP and UDP")

    yield port
    transport.close()
    server.close()


@pytest_asyncio.fixture
async def udp_peer():
    """Factory for UDP test peers aimed at a given port."""
    loop = asyncio.get_running_loop()
    transports = []

    async def _open(port: int) -> tuple[asyncio.DatagramTransport, DatagramCollector]:
        transport, protocol = await loop.create_datagram_endpoint(
            DatagramCollector, remote_addr=(LOCALHOST, port)
        )
        transports.append(transport)
        return transport, protocol

    yield _open
    for transport in transports:
        transport.close()


# ============================================================================
# Relay Pair
# ============================================================================


class RelayPair:
    def __init__(self, server: RelayServer, client: RelayClient, client_task: asyncio.Task):
        self.server = server
        self.client = client
        self.client_task = client_task

    @property
    def tcp_port(self) -> int:
        return self.server.config.server.tcp_port

    @property
    def udp_port(self) -> int | None:
        return self.server.config.server.udp_port

    async def stop(self) -> None:
        await self.client.stop()
        await asyncio.gather(self.client_task, return_exceptions=True)
        await self.server.stop()


@pytest_asyncio.fixture
async def relay_factory(tuning, wait_until):
    """Start a server and a client for a config dict; wait for the channel."""
    pairs = []

    async def _start(config_data: dict, server_tuning=None, client_tuning=None) -> RelayPair:
        config = parse_config(config_data)
        server = RelayServer(config, server_tuning or tuning)
        await server.start()
        client = RelayClient(config, client_tuning or tuning)
        task = asyncio.create_task(client.run())
        pair = RelayPair(server, client, task)
        pairs.append(pair)
        await wait_until(lambda: server.channel is not None and client.channel is not None)
        return pair

    yield _start
    for pair in pairs:
        await pair.stop()


@pytest_asyncio.fixture
async def relay_pair(relay_factory, free_tcp_port, free_udp_port, echo_port):
    """Relay forwarding TCP and UDP to the echo services."""
    config = make_config(free_tcp_port(), echo_port, udp_port=free_udp_port())
    return await relay_factory(config)
