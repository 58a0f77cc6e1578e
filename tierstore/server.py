"""
Backend Storage Service

One instance owns one extension class and one storage root, and
serves the dispatcher's STORE/GET/DEL/LIST/TAR commands over TCP.
Every accepted connection runs in its own asyncio task; connections
share nothing but the filesystem, and there is no locking. Two
connections racing on unrelated paths never interfere; a prune racing
a store into the same directory simply stops early.

    STORE <path> <size>   + payload   → SUCCESS | ERROR
    GET <path>                        → <size>\\n<bytes> | ERROR: File not found
    DEL <path>                        → SUCCESS | ERROR
    LIST [<dir>] [-r]                 → <size>\\n<names> (size may be 0)
    TAR <ext>                         → <size>\\n<tar> | ERROR: ...

Paths may carry the tier alias (~S2/...) or be tier-relative.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from tiercore.archive import build_archive
from tiercore.config import StorageConfig
from tiercore.paths import (
    PathEscapeError,
    PathTranslator,
    ensure_directory,
    list_regular_files,
    prune_empty_dirs,
    remove_file,
    walk_regular_files,
)
from tiercore.types import ExtensionClass
from tierwire import wire
from tierwire.wire import TransferError, TransferSession

logger = logging.getLogger("tierstore.server")


class StorageServer:
    """
    Storage tier TCP server.

    Accepts dispatcher connections and creates a StorageConnection
    for each.
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self.tier = config.tier
        self.translator = PathTranslator(config.root, config.alias)
        self.connections: Dict[int, 'StorageConnection'] = {}
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
            self._handle_connection,
            host if host is not None else self.config.host,
            port if port is not None else self.config.port,
        )
        host, port = self.address
        logger.info(
            f"{self.tier.tier_name} tier listening on {host}:{port} "
            f"(root={self.root}, alias={self.translator.alias})"
        )
        return host, port

    async def serve_tcp(self, host: Optional[str] = None, port: Optional[int] = None):
        """Start the server and run until stopped."""
        await self.start(host, port)
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        """Stop accepting and close every open connection."""
        if self._server:
            self._server.close()
        for conn in list(self.connections.values()):
            conn.close()
        if self._server:
            await self._server.wait_closed()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        self._conn_id += 1
        conn_id = self._conn_id

        peer = writer.get_extra_info('peername')
        logger.info(f"Connection {conn_id} from {peer}")

        conn = StorageConnection(conn_id, self.tier, self.translator, reader, writer)
        self.connections[conn_id] = conn

        try:
            await conn.serve()
        except (ConnectionError, OSError) as e:
            logger.warning(f"Connection {conn_id} dropped: {e}")
        except Exception as e:
            logger.error(f"Connection {conn_id} error: {e}", exc_info=True)
        finally:
            logger.info(f"Connection {conn_id} closed")
            self.connections.pop(conn_id, None)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


class StorageConnection:
    """
    Handles a single dispatcher connection: reads command lines one
    at a time and answers each before reading the next.
    """

    def __init__(
        self,
        conn_id: int,
        tier: ExtensionClass,
        translator: PathTranslator,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        self.conn_id = conn_id
        self.tier = tier
        self.translator = translator
        self.reader = reader
        self.writer = writer
        self._closed = False

    @property
    def root(self) -> Path:
        return self.translator.root

    def close(self):
        self._closed = True
        self.writer.close()

    async def serve(self):
        while not self._closed:
            try:
                line = await wire.read_line(self.reader)
            except wire.ProtocolError as e:
                logger.warning(f"[{self.conn_id}] {e}")
                await self._reply(wire.error_line("Command too long"))
                continue

            if line is None:
                break
            if not line.strip():
                continue

            logger.info(f"[{self.conn_id}] Received command: {line}")
            await self._handle_command(line)

    async def _handle_command(self, line: str):
        verb, args = wire.split_command(line)

        # "TAR.pdf" is accepted as well as "TAR .pdf"
        if verb.startswith(wire.TAR) and verb != wire.TAR:
            args = f"{verb[len(wire.TAR):]} {args}".strip()
            verb = wire.TAR

        handlers = {
            wire.STORE: self._handle_store,
            wire.GET: self._handle_get,
            wire.DEL: self._handle_del,
            wire.LIST: self._handle_list,
            wire.TAR: self._handle_tar,
        }

        handler = handlers.get(verb)
        if handler is None:
            logger.warning(f"[{self.conn_id}] Unknown command: {verb}")
            await self._reply(wire.error_line("Unknown command"))
            return

        await handler(args)

    async def _reply(self, data: bytes):
        await wire.send(self.writer, data)

    # ========================================================================
    # Commands
    # ========================================================================

    async def _handle_store(self, args: str):
        parts = args.split()
        if len(parts) < 2:
            await self._reply(wire.error_line("Invalid STORE command"))
            return

        rel_path, size = parts[0], wire.parse_size(parts[1])
        if size is None:
            await self._reply(wire.error_line("Invalid file size"))
            return

        session = TransferSession(self.reader, size)

        try:
            target = self.translator.to_physical(rel_path)
        except PathEscapeError as e:
            logger.warning(f"[{self.conn_id}] {e}")
            await session.drain()
            await self._reply(wire.error_line("Invalid path"))
            return

        if target == self.root:
            await session.drain()
            await self._reply(wire.error_line("Invalid path"))
            return

        partial = target.with_name(f".{target.name}.part")
        try:
            ensure_directory(target.parent)
            fp = open(partial, 'wb')
        except OSError as e:
            logger.error(f"[{self.conn_id}] Failed to open {partial}: {e}")
            await session.drain()
            await self._reply(wire.error_line())
            return

        try:
            with fp:
                await session.receive_into(fp)
            os.replace(partial, target)
        except TransferError as e:
            logger.warning(f"[{self.conn_id}] Connection lost while storing {target}: {e}")
            self._discard(partial)
            try:
                await self._reply(wire.error_line())
            except (ConnectionError, OSError):
                pass
            return
        except OSError as e:
            logger.error(f"[{self.conn_id}] Write failed for {target}: {e}")
            self._discard(partial)
            await session.drain()
            await self._reply(wire.error_line())
            return

        logger.info(f"[{self.conn_id}] Stored file {target} ({size} bytes)")
        await self._reply(wire.success_line())

    def _discard(self, partial: Path):
        try:
            partial.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[{self.conn_id}] Could not remove partial file {partial}: {e}")
        prune_empty_dirs(partial.parent, self.root)

    async def _handle_get(self, args: str):
        if not args:
            await self._reply(wire.error_line("Invalid GET command"))
            return

        try:
            path = self.translator.to_physical(args)
            fp = open(path, 'rb')
        except (PathEscapeError, OSError) as e:
            logger.info(f"[{self.conn_id}] GET {args}: {e}")
            await self._reply(wire.error_line(wire.FILE_NOT_FOUND))
            return

        with fp:
            size = os.fstat(fp.fileno()).st_size
            await wire.send_sized(self.writer, fp, size)
        logger.info(f"[{self.conn_id}] Sent file {path} ({size} bytes)")

    async def _handle_del(self, args: str):
        if not args:
            await self._reply(wire.error_line("Invalid DEL command"))
            return

        try:
            path = self.translator.to_physical(args)
            pruned = remove_file(path, self.root)
        except (PathEscapeError, OSError) as e:
            logger.warning(f"[{self.conn_id}] Failed to delete {args}: {e}")
            await self._reply(wire.error_line())
            return

        logger.info(f"[{self.conn_id}] Deleted file {path} (pruned {len(pruned)} directories)")
        await self._reply(wire.success_line())

    async def _handle_list(self, args: str):
        parts = args.split()
        recursive = wire.RECURSIVE in parts
        parts = [p for p in parts if p != wire.RECURSIVE]

        try:
            directory = self.translator.to_physical(parts[0] if parts else '.')
        except PathEscapeError as e:
            logger.warning(f"[{self.conn_id}] {e}")
            await self._reply(wire.size_line(0))
            return

        if recursive:
            names = walk_regular_files(directory)
        else:
            names = list_regular_files(directory)
        payload = "".join(f"{name}\n" for name in names).encode('utf-8')
        await self._reply(wire.size_line(len(payload)) + payload)

    async def _handle_tar(self, args: str):
        requested = ExtensionClass.from_token(args) if args else None

        if not self.tier.archivable:
            await self._reply(wire.error_line(
                f"Archive download not supported by {self.tier.tier_name} tier"
            ))
            return
        if requested is not self.tier:
            await self._reply(wire.error_line(
                f"{self.tier.tier_name} tier only handles {self.tier.suffix} files"
            ))
            return

        try:
            archive = await asyncio.to_thread(build_archive, self.root, self.tier.suffix)
        except OSError as e:
            logger.error(f"[{self.conn_id}] Failed to create tar file: {e}")
            await self._reply(wire.error_line("Failed to create tar file"))
            return

        with archive:
            await wire.send_sized(self.writer, archive.file, archive.size)
        logger.info(
            f"[{self.conn_id}] Sent {self.tier.tier_name} archive "
            f"({archive.members} files, {archive.size} bytes)"
        )
