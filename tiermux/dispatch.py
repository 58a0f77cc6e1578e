"""
tiermux.dispatch — Per-client dispatcher connection.

Each client connection gets a DispatchConnection that:

1. Reads one command line at a time and answers it completely
   (status line, or size line plus payload) before reading the next
2. Classifies every file by extension: .c stays under the dispatcher
   root, .pdf/.txt/.zip go to the owning storage tier
3. Proxies payloads to and from the tiers chunk by chunk
4. Delegates dispfnames/downltar to the aggregators

Client commands:
    uploadf <name> <dir> <size>   + payload → SUCCESS: File uploaded | ERROR: ...
    downlf <path>                           → <size>\\n<bytes> | ERROR: ...
    removef <path>                          → SUCCESS: File removed | ERROR: ...
    downltar <ext>                          → <size>\\n<tar> | ERROR: ...
    dispfnames <dir>                        → <size>\\n<names> | No files found

Non-source uploads are store-and-forward: the payload lands under the
dispatcher root first, is streamed to the tier with STORE, and the
local copy is removed whether or not the tier accepted it.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from tiercore.paths import (
    PathEscapeError,
    PathTranslator,
    ensure_directory,
    remove_file,
)
from tiercore.types import ExtensionClass, RoutingTable
from tierwire import wire
from tierwire.client import BackendClient, BackendError
from tierwire.wire import TransferError, TransferSession

from .aggregate import (
    ArchiveAggregator,
    ClientFactory,
    ListingAggregator,
    client_for,
)

logger = logging.getLogger("tiermux.dispatch")

UPLOADED = "File uploaded"
UPLOAD_FAILED = "File upload failed"
REMOVED = "File removed"
REMOVE_FAILED = "File not found or cannot remove"


class DispatchConnection:
    """
    Handles one client connection to the dispatcher.

    Holds no per-connection state beyond the streams: every path is
    translated per request and every tier request uses a fresh
    backend connection.
    """

    def __init__(
        self,
        conn_id: int,
        translator: PathTranslator,
        routing: RoutingTable,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client_factory: ClientFactory = BackendClient,
    ):
        self.conn_id = conn_id
        self.translator = translator
        self.routing = routing
        self.reader = reader
        self.writer = writer
        self.client_factory = client_factory
        self.listing = ListingAggregator(translator, routing, client_factory)
        self.archives = ArchiveAggregator(translator.root, routing, client_factory)
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

        handlers = {
            wire.UPLOADF: self._handle_uploadf,
            wire.DOWNLF: self._handle_downlf,
            wire.REMOVEF: self._handle_removef,
            wire.DOWNLTAR: self._handle_downltar,
            wire.DISPFNAMES: self._handle_dispfnames,
        }

        handler = handlers.get(verb)
        if handler is None:
            logger.warning(f"[{self.conn_id}] Unknown command: {verb}")
            await self._reply(wire.error_line("Unknown command"))
            return

        await handler(args)

    async def _reply(self, data: bytes):
        await wire.send(self.writer, data)

    def _backend(self, ext: ExtensionClass) -> Optional[BackendClient]:
        return client_for(self.routing, ext, self.client_factory)

    def _discard(self, path: Path):
        """Remove a local copy and prune its empty ancestors."""
        try:
            pruned = remove_file(path, self.root)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"[{self.conn_id}] Could not remove local copy {path}: {e}")
            return
        if pruned:
            logger.debug(f"[{self.conn_id}] Pruned {len(pruned)} directories after {path}")

    # ========================================================================
    # uploadf
    # ========================================================================

    async def _handle_uploadf(self, args: str):
        parts = args.split()
        if len(parts) < 3:
            await self._reply(wire.error_line("Invalid uploadf command format"))
            return

        filename, dest_dir, size = parts[0], parts[1], wire.parse_size(parts[2])
        if size is None:
            await self._reply(wire.error_line("Invalid file size"))
            return

        session = TransferSession(self.reader, size)

        ext = ExtensionClass.from_filename(filename)
        if ext is None:
            logger.warning(f"[{self.conn_id}] Unsupported file type: {filename}")
            await session.drain()
            await self._reply(wire.error_line("Unsupported file extension"))
            return

        if ext is not ExtensionClass.SOURCE and self.routing.lookup(ext) is None:
            await session.drain()
            await self._reply(wire.error_line(f"No storage tier configured for {ext.suffix}"))
            return

        try:
            rel_path = self.translator.join(dest_dir, filename)
            local_path = self.root / rel_path
        except PathEscapeError as e:
            logger.warning(f"[{self.conn_id}] {e}")
            await session.drain()
            await self._reply(wire.error_line("Invalid path"))
            return

        try:
            ensure_directory(local_path.parent)
            fp = open(local_path, 'wb')
        except OSError as e:
            logger.error(f"[{self.conn_id}] Failed to create {local_path}: {e}")
            await session.drain()
            await self._reply(wire.error_line(UPLOAD_FAILED))
            return

        try:
            with fp:
                await session.receive_into(fp)
        except TransferError:
            self._discard(local_path)
            raise
        except OSError as e:
            logger.error(f"[{self.conn_id}] Write failed for {local_path}: {e}")
            self._discard(local_path)
            await session.drain()
            await self._reply(wire.error_line(UPLOAD_FAILED))
            return

        logger.info(f"[{self.conn_id}] Received {filename} ({size} bytes) as {self.translator.to_virtual(local_path)}")

        if ext is ExtensionClass.SOURCE:
            await self._reply(wire.success_line(UPLOADED))
            return

        forwarded = await self._forward(ext, rel_path, local_path, size)
        self._discard(local_path)
        if forwarded:
            await self._reply(wire.success_line(UPLOADED))
        else:
            await self._reply(wire.error_line(UPLOAD_FAILED))

    async def _forward(self, ext: ExtensionClass, rel_path: str,
                       local_path: Path, size: int) -> bool:
        """Stream a received local copy to its tier with STORE."""
        client = self._backend(ext)
        try:
            with open(local_path, 'rb') as fp:
                await client.store(rel_path, fp, size)
        except BackendError as e:
            logger.warning(f"[{self.conn_id}] Forwarding {rel_path} to {client.name} failed: {e.line}")
            return False
        except OSError as e:
            logger.error(f"[{self.conn_id}] Could not read back {local_path}: {e}")
            return False
        logger.info(f"[{self.conn_id}] Forwarded {rel_path} to {client.name} tier")
        return True

    # ========================================================================
    # downlf
    # ========================================================================

    async def _handle_downlf(self, args: str):
        if not args:
            await self._reply(wire.error_line("Invalid downlf command format"))
            return

        ext = ExtensionClass.from_filename(args)
        if ext is None:
            await self._reply(wire.error_line(wire.FILE_NOT_FOUND))
            return

        try:
            rel_path = self.translator.relative(args)
        except PathEscapeError as e:
            logger.warning(f"[{self.conn_id}] {e}")
            await self._reply(wire.error_line("Invalid path"))
            return

        if ext is ExtensionClass.SOURCE:
            await self._send_local(rel_path)
        else:
            await self._relay_remote(ext, rel_path)

    async def _send_local(self, rel_path: str):
        path = self.root / rel_path
        try:
            fp = open(path, 'rb')
        except OSError as e:
            logger.info(f"[{self.conn_id}] downlf {path}: {e}")
            await self._reply(wire.error_line(wire.FILE_NOT_FOUND))
            return

        with fp:
            size = os.fstat(fp.fileno()).st_size
            await wire.send_sized(self.writer, fp, size)
        logger.info(f"[{self.conn_id}] Sent file {path} ({size} bytes)")

    async def _relay_remote(self, ext: ExtensionClass, rel_path: str):
        client = self._backend(ext)
        if client is None:
            await self._reply(wire.error_line(f"No storage tier configured for {ext.suffix}"))
            return

        try:
            async with client.download(rel_path) as session:
                await self._reply(wire.size_line(session.expected))
                relayed = await session.relay_to(self.writer)
        except BackendError as e:
            logger.info(f"[{self.conn_id}] downlf {rel_path} on {client.name}: {e.line}")
            await self._reply(wire.encode_line(e.line))
            return

        logger.info(f"[{self.conn_id}] Relayed {rel_path} from {client.name} ({relayed} bytes)")

    # ========================================================================
    # removef
    # ========================================================================

    async def _handle_removef(self, args: str):
        if not args:
            await self._reply(wire.error_line("Invalid removef command format"))
            return

        ext = ExtensionClass.from_filename(args)
        if ext is None:
            await self._reply(wire.error_line(REMOVE_FAILED))
            return

        try:
            rel_path = self.translator.relative(args)
        except PathEscapeError as e:
            logger.warning(f"[{self.conn_id}] {e}")
            await self._reply(wire.error_line("Invalid path"))
            return
        if not rel_path:
            await self._reply(wire.error_line(REMOVE_FAILED))
            return

        if ext is ExtensionClass.SOURCE:
            removed = self._remove_local(rel_path)
        else:
            removed = await self._remove_remote(ext, rel_path)

        if removed:
            await self._reply(wire.success_line(REMOVED))
        else:
            await self._reply(wire.error_line(REMOVE_FAILED))

    def _remove_local(self, rel_path: str) -> bool:
        path = self.root / rel_path
        try:
            pruned = remove_file(path, self.root)
        except OSError as e:
            logger.info(f"[{self.conn_id}] removef {path}: {e}")
            return False
        logger.info(f"[{self.conn_id}] Removed {path} (pruned {len(pruned)} directories)")
        return True

    async def _remove_remote(self, ext: ExtensionClass, rel_path: str) -> bool:
        client = self._backend(ext)
        if client is None:
            return False
        try:
            await client.delete(rel_path)
        except BackendError as e:
            logger.info(f"[{self.conn_id}] removef {rel_path} on {client.name}: {e.line}")
            return False
        logger.info(f"[{self.conn_id}] Removed {rel_path} from {client.name} tier")
        return True

    # ========================================================================
    # Aggregates
    # ========================================================================

    async def _handle_downltar(self, args: str):
        if not args:
            await self._reply(wire.error_line("Invalid downltar command format"))
            return
        await self.archives.send(args.split()[0], self.writer)

    async def _handle_dispfnames(self, args: str):
        if not args:
            await self._reply(wire.error_line("Invalid dispfnames command format"))
            return

        try:
            groups = await self.listing.collect(args.split()[0])
        except PathEscapeError as e:
            logger.warning(f"[{self.conn_id}] {e}")
            await self._reply(wire.error_line("Invalid path"))
            return

        payload = ListingAggregator.render(groups)
        if not payload:
            await self._reply(wire.encode_line(wire.NO_FILES))
            return
        await self._reply(wire.size_line(len(payload)) + payload)
