"""
tiermux.server — TCP server that accepts clients and routes their files.

Usage:
    config = DispatcherConfig(root=Path("~/S1"), alias="~S1",
                              routing=RoutingTable({
                                  ExtensionClass.PDF: ("127.0.0.1", 50005),
                                  ExtensionClass.TEXT: ("127.0.0.1", 50006),
                                  ExtensionClass.ARCHIVE: ("127.0.0.1", 50007),
                              }))
    server = DispatchServer(config)
    await server.serve_tcp(port=50004)
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from tiercore.config import DispatcherConfig
from tiercore.paths import PathTranslator, ensure_directory
from tierwire.client import BackendClient

from .aggregate import ClientFactory
from .dispatch import DispatchConnection

logger = logging.getLogger("tiermux.server")


class DispatchServer:
    """
    Dispatcher TCP server.

    Accepts client connections and creates a DispatchConnection for
    each. Connections share the routing table and the dispatcher root,
    nothing else.
    """

    def __init__(self, config: DispatcherConfig,
                 client_factory: ClientFactory = BackendClient):
        """
        Args:
            config:         Root, alias, bind address and routing table.
            client_factory: Builds the per-request backend client from
                            (tier name, host, port).
        """
        self.config = config
        self.routing = config.routing
        self.translator = PathTranslator(config.root, config.alias)
        self.client_factory = client_factory
        self.connections: Dict[int, DispatchConnection] = {}
        self._conn_id = 0
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def root(self) -> Path:
        return self.translator.root

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); valid after start()."""
        if self._server is None:
            raise RuntimeError("server not started")
        addr = self._server.sockets[0].getsockname()
        return addr[0], addr[1]

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> Tuple[str, int]:
        """Bind and start accepting; returns the bound address."""
        ensure_directory(self.root)
        self._server = await asyncio.start_server(
            self._handle_client,
            host if host is not None else self.config.host,
            port if port is not None else self.config.port,
        )
        host, port = self.address
        logger.info(f"tiermux listening on {host}:{port} (root={self.root}, alias={self.translator.alias})")
        logger.info(f"Backends: {', '.join(f'{ext.tier_name}={h}:{p}' for ext, (h, p) in self.routing)}")
        return host, port

    async def serve_tcp(self, host: Optional[str] = None, port: Optional[int] = None):
        """Start the dispatcher and run until stopped."""
        await self.start(host, port)
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        """Stop accepting and close every client connection."""
        if self._server:
            self._server.close()
        for conn in list(self.connections.values()):
            conn.close()
        if self._server:
            await self._server.wait_closed()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        self._conn_id += 1
        conn_id = self._conn_id

        peer = writer.get_extra_info('peername')
        logger.info(f"Client {conn_id} connected from {peer}")

        conn = DispatchConnection(
            conn_id, self.translator, self.routing, reader, writer,
            client_factory=self.client_factory,
        )
        self.connections[conn_id] = conn

        try:
            await conn.serve()
        except (ConnectionError, OSError) as e:
            logger.warning(f"Client {conn_id} dropped: {e}")
        except Exception as e:
            logger.error(f"Client {conn_id} error: {e}", exc_info=True)
        finally:
            logger.info(f"Client {conn_id} disconnected")
            self.connections.pop(conn_id, None)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
