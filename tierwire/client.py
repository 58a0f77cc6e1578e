"""
tierwire.client — Async clients for both halves of the protocol.

BackendClient is the dispatcher's outbound half: one short-lived TCP
connection per request (connect, one command, read the response,
close). No pooling; a backend sees every dispatcher request as a
fresh connection.

DispatcherClient is what a user-facing program speaks: one persistent
connection, strictly sequential commands.

Usage:
    client = BackendClient("pdf", "127.0.0.1", 50005)
    await client.store("docs/a.pdf", fp, size)
    async with client.download("docs/a.pdf") as session:
        data = await session.read_all()

    async with DispatcherClient("127.0.0.1", 50004) as dc:
        await dc.upload("notes.txt", "~S1/docs", b"hello")
        print(await dc.list_names("~S1"))
"""

import asyncio
import logging
import socket
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, BinaryIO, List, Optional, Tuple, Union

from tiercore.types import ExtensionClass

from . import wire
from .wire import TransferSession, TransferError

logger = logging.getLogger("tierwire.client")


# =============================================================================
# Exceptions
# =============================================================================

class BackendError(Exception):
    """A backend answered with an ERROR line (kept verbatim in .line)."""

    def __init__(self, line: str):
        self.line = line
        super().__init__(line)


class BackendUnavailable(BackendError):
    """Could not reach the backend, or it hung up mid-exchange."""
    pass


class DispatcherError(Exception):
    """The dispatcher answered with an ERROR line."""

    def __init__(self, line: str):
        self.line = line
        super().__init__(line)


# =============================================================================
# Dispatcher → backend
# =============================================================================

class BackendClient:
    """
    Issues one command per connection to a single storage tier.
    """

    def __init__(self, name: str, host: str, port: int):
        self.name = name
        self.host = host
        self.port = port

    def __repr__(self):
        return f"BackendClient({self.name}={self.host}:{self.port})"

    async def _connect(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            logger.warning(f"Backend '{self.name}' at {self.host}:{self.port} unreachable: {e}")
            raise BackendUnavailable("ERROR: File server unavailable") from e

    @staticmethod
    async def _close(writer: asyncio.StreamWriter):
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def _send_command(self, writer: asyncio.StreamWriter, command: str):
        logger.debug(f"→ {self.name}: {command}")
        try:
            await wire.send(writer, wire.encode_line(command))
        except (ConnectionError, OSError) as e:
            raise BackendUnavailable(f"ERROR: Lost connection to {self.name} server") from e

    async def _read_status(self, reader: asyncio.StreamReader) -> str:
        try:
            line = await wire.read_line(reader)
        except (ConnectionError, OSError) as e:
            raise BackendUnavailable(f"ERROR: Lost connection to {self.name} server") from e
        if line is None:
            raise BackendUnavailable(f"ERROR: No response from {self.name} server")
        logger.debug(f"← {self.name}: {line}")
        return line

    @asynccontextmanager
    async def _sized_response(self, command: str) -> AsyncIterator[TransferSession]:
        """
        Send `command`, expect "<size>\\n<bytes>" back, and yield a
        TransferSession positioned at the payload. ERROR lines raise
        BackendError carrying the line.
        """
        reader, writer = await self._connect()
        try:
            await self._send_command(writer, command)
            header = await self._read_status(reader)
            if wire.is_error(header):
                raise BackendError(header)
            size = wire.parse_size(header)
            if size is None:
                raise BackendError(f"ERROR: Malformed response from {self.name} server")
            yield TransferSession(reader, size)
        finally:
            await self._close(writer)

    # ── Commands ────────────────────────────────────────────────

    async def store(self, rel_path: str, fileobj: BinaryIO, size: int):
        """
        STORE <rel_path> <size> followed by `size` bytes from fileobj.
        Raises BackendError unless the backend acknowledges SUCCESS.
        """
        reader, writer = await self._connect()
        try:
            await self._send_command(writer, f"{wire.STORE} {rel_path} {size}")
            try:
                await wire.send_stream(writer, fileobj, size)
            except (ConnectionError, OSError) as e:
                if isinstance(e, TransferError):
                    raise BackendError("ERROR: Local copy changed during forwarding") from e
                raise BackendUnavailable(f"ERROR: Lost connection to {self.name} server") from e
            ack = await self._read_status(reader)
        finally:
            await self._close(writer)

        if not wire.is_success(ack):
            raise BackendError(ack or "ERROR")
        logger.info(f"Stored {rel_path} on {self.name} ({size} bytes)")

    async def delete(self, rel_path: str):
        """DEL <rel_path>. Raises BackendError unless SUCCESS."""
        reader, writer = await self._connect()
        try:
            await self._send_command(writer, f"{wire.DEL} {rel_path}")
            ack = await self._read_status(reader)
        finally:
            await self._close(writer)

        if not wire.is_success(ack):
            raise BackendError(ack or "ERROR")

    async def list(self, rel_dir: str = "", recursive: bool = False) -> List[str]:
        """
        LIST <rel_dir> → file names (unordered as received). With
        recursive=True, paths relative to rel_dir of every file below it.
        """
        command = f"{wire.LIST} {rel_dir or '.'}"
        if recursive:
            command += f" {wire.RECURSIVE}"
        async with self._sized_response(command) as session:
            if session.expected == 0:
                return []
            payload = await session.read_all()
        return [name for name in payload.decode('utf-8', errors='replace').split('\n') if name]

    def download(self, rel_path: str):
        """
        GET <rel_path>. Use as an async context manager yielding the
        payload's TransferSession:

            async with client.download(path) as session:
                await session.relay_to(writer)
        """
        return self._sized_response(f"{wire.GET} {rel_path}")

    def archive(self, ext: ExtensionClass):
        """TAR <ext>. Async context manager yielding the tar payload."""
        return self._sized_response(f"{wire.TAR} {ext.suffix}")


# =============================================================================
# Client → dispatcher
# =============================================================================

class DispatcherClient:
    """
    Persistent connection to the dispatcher.

    Every method sends one command and consumes its full response
    before returning, so calls must not be interleaved on one client.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 50004):
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(self):
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port)
        sock = self.writer.get_extra_info('socket')
        if sock:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    async def disconnect(self):
        if self.writer is None:
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self.reader = None
        self.writer = None

    @property
    def connected(self) -> bool:
        return self.writer is not None and not self.writer.is_closing()

    async def __aenter__(self) -> 'DispatcherClient':
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Low-level
    # -------------------------------------------------------------------------

    async def _read_response_line(self) -> str:
        line = await wire.read_line(self.reader)
        if line is None:
            raise ConnectionError("Dispatcher closed the connection")
        return line

    async def command(self, line: str, payload: bytes = b"") -> str:
        """Send a raw command line (plus payload) and return one status line."""
        if not self.connected:
            raise ConnectionError("Not connected")
        self.writer.write(wire.encode_line(line) + payload)
        await self.writer.drain()
        return await self._read_response_line()

    async def _sized(self, line: str) -> TransferSession:
        header = await self.command(line)
        if wire.is_error(header):
            raise DispatcherError(header)
        size = wire.parse_size(header)
        if size is None:
            raise wire.ProtocolError(f"Unexpected response: {header!r}")
        return TransferSession(self.reader, size)

    @staticmethod
    def _check(status: str) -> str:
        if wire.is_error(status):
            raise DispatcherError(status)
        return status

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def upload(self, filename: str, dest_dir: str, data: bytes) -> str:
        """uploadf <filename> <dest_dir> <size> + data."""
        status = await self.command(
            f"{wire.UPLOADF} {filename} {dest_dir} {len(data)}", data
        )
        return self._check(status)

    async def upload_file(self, local_path: Union[str, Path], dest_dir: str) -> str:
        """Upload a local file, streaming it from disk."""
        local_path = Path(local_path)
        size = local_path.stat().st_size
        self.writer.write(wire.encode_line(
            f"{wire.UPLOADF} {local_path.name} {dest_dir} {size}"
        ))
        with open(local_path, 'rb') as fp:
            await wire.send_stream(self.writer, fp, size)
        await self.writer.drain()
        return self._check(await self._read_response_line())

    async def download(self, path: str) -> bytes:
        """downlf <path> → file content."""
        session = await self._sized(f"{wire.DOWNLF} {path}")
        return await session.read_all()

    async def download_to(self, path: str, fileobj: BinaryIO) -> int:
        """downlf <path>, streaming the content into fileobj."""
        session = await self._sized(f"{wire.DOWNLF} {path}")
        return await session.receive_into(fileobj)

    async def remove(self, path: str) -> str:
        """removef <path>."""
        return self._check(await self.command(f"{wire.REMOVEF} {path}"))

    async def download_tar(self, ext: Union[str, ExtensionClass]) -> bytes:
        """downltar <ext> → tar bytes."""
        token = ext.suffix if isinstance(ext, ExtensionClass) else ext
        session = await self._sized(f"{wire.DOWNLTAR} {token}")
        return await session.read_all()

    async def list_names(self, directory: str) -> List[str]:
        """dispfnames <directory> → names in tier order ([] if none)."""
        header = await self.command(f"{wire.DISPFNAMES} {directory}")
        if header == wire.NO_FILES:
            return []
        if wire.is_error(header):
            raise DispatcherError(header)
        size = wire.parse_size(header)
        if size is None:
            raise wire.ProtocolError(f"Unexpected response: {header!r}")
        payload = await TransferSession(self.reader, size).read_all()
        return [name for name in payload.decode('utf-8', errors='replace').split('\n') if name]
