"""
Shared fixtures: real storage tiers and a dispatcher on ephemeral
localhost ports, each rooted in the test's tmp_path.
"""

import socket

import pytest

from tiercore.config import DispatcherConfig, StorageConfig
from tiercore.types import ExtensionClass, RoutingTable
from tierstore.server import StorageServer
from tiermux.server import DispatchServer
from tierwire.client import DispatcherClient

TIER_NUMBERS = {
    ExtensionClass.PDF: 2,
    ExtensionClass.TEXT: 3,
    ExtensionClass.ARCHIVE: 4,
}


def routing_for(tiers) -> RoutingTable:
    """Routing table pointing at the running tier servers."""
    routing = RoutingTable()
    for ext, server in tiers.items():
        routing.set(ext, *server.address)
    return routing


@pytest.fixture
def dead_address():
    """A localhost address nothing is listening on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return "127.0.0.1", port


@pytest.fixture
async def tiers(tmp_path):
    """The pdf, text and archive tiers, keyed by extension class."""
    servers = {}
    for ext, number in TIER_NUMBERS.items():
        config = StorageConfig(
            tier=ext,
            root=tmp_path / f"S{number}",
            alias=f"~S{number}",
            host="127.0.0.1",
            port=0,
        )
        server = StorageServer(config)
        await server.start()
        servers[ext] = server

    yield servers

    for server in servers.values():
        await server.stop()


@pytest.fixture
async def make_dispatcher(tmp_path, tiers):
    """Factory for dispatchers over the running tiers."""
    started = []

    async def factory(alias: str = "~S1", routing: RoutingTable = None) -> DispatchServer:
        if routing is None:
            routing = routing_for(tiers)
        config = DispatcherConfig(
            root=tmp_path / "S1",
            alias=alias,
            host="127.0.0.1",
            port=0,
            routing=routing,
        )
        server = DispatchServer(config)
        await server.start()
        started.append(server)
        return server

    yield factory

    for server in started:
        await server.stop()


@pytest.fixture
async def dispatcher(make_dispatcher):
    return await make_dispatcher()


@pytest.fixture
async def client(dispatcher):
    host, port = dispatcher.address
    async with DispatcherClient(host, port) as dc:
        yield dc


@pytest.fixture
def routing(tiers) -> RoutingTable:
    """A fresh routing table over the running tiers, free to modify."""
    return routing_for(tiers)
