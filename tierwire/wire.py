"""
tierwire.wire — Line-oriented wire format shared by every tier.

The protocol is ASCII command lines terminated by '\\n', optionally
followed by a raw payload whose length was declared up front:

    command line     VERB arg1 arg2...\\n
    size line        <decimal byte count>\\n
    payload          exactly <count> raw bytes
    status line      SUCCESS[: text]\\n  |  ERROR[: text]\\n

Payloads are never delimited, only counted, so every side must
consume exactly the declared byte count to keep the stream in sync,
even when it has decided to reject the request (see
TransferSession.drain).

Client → dispatcher verbs are lower-case (uploadf, downlf, ...);
dispatcher → backend verbs are upper-case (STORE, GET, ...).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, BinaryIO, Optional, Tuple

logger = logging.getLogger("tierwire.wire")

CHUNK_SIZE = 4096
MAX_LINE = 1024

# Client → dispatcher
UPLOADF = "uploadf"
DOWNLF = "downlf"
REMOVEF = "removef"
DOWNLTAR = "downltar"
DISPFNAMES = "dispfnames"

# Dispatcher → backend
STORE = "STORE"
GET = "GET"
DEL = "DEL"
LIST = "LIST"
TAR = "TAR"

# LIST option: descend into subdirectories
RECURSIVE = "-r"

# Status markers
SUCCESS = "SUCCESS"
ERROR = "ERROR"
NO_FILES = "No files found"
FILE_NOT_FOUND = "File not found"


class ProtocolError(Exception):
    """Malformed framing: unparseable size line, oversized command, ..."""
    pass


class TransferError(ConnectionError):
    """Peer went away before the declared byte count was transferred."""

    def __init__(self, expected: int, transferred: int, message: str = ""):
        self.expected = expected
        self.transferred = transferred
        super().__init__(
            message or f"transfer truncated after {transferred} of {expected} bytes"
        )


# ── Line framing ────────────────────────────────────────────────

async def read_line(reader: asyncio.StreamReader,
                    max_len: int = MAX_LINE) -> Optional[str]:
    """
    Read one '\\n'-terminated line, without the terminator.

    Returns None when the peer has closed (including a close in the
    middle of a line). Lines longer than max_len are truncated to
    max_len - 1 characters.
    """
    try:
        raw = await reader.readline()
    except ValueError as e:
        raise ProtocolError(f"line exceeds stream limit: {e}") from e

    if not raw or not raw.endswith(b'\n'):
        return None

    line = raw[:-1]
    if line.endswith(b'\r'):
        line = line[:-1]
    if len(line) > max_len - 1:
        line = line[:max_len - 1]
    return line.decode('utf-8', errors='replace')


def split_command(line: str) -> Tuple[str, str]:
    """Split a command line into (verb, remainder)."""
    parts = line.strip().split(None, 1)
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1].strip()


def encode_line(text: str) -> bytes:
    return f"{text}\n".encode('utf-8')


def size_line(size: int) -> bytes:
    return f"{size}\n".encode('ascii')


def parse_size(line: str) -> Optional[int]:
    """Decimal size from a size line, or None if it is not one."""
    text = line.strip()
    if not text or not text.isdigit():
        return None
    return int(text)


def is_error(line: str) -> bool:
    return line.startswith(ERROR)


def is_success(line: str) -> bool:
    return line.startswith(SUCCESS)


def error_line(message: str = "") -> bytes:
    if not message:
        return encode_line(ERROR)
    return encode_line(f"{ERROR}: {message}")


def success_line(message: str = "") -> bytes:
    if not message:
        return encode_line(SUCCESS)
    return encode_line(f"{SUCCESS}: {message}")


async def send(writer: asyncio.StreamWriter, data: bytes):
    writer.write(data)
    await writer.drain()


# ── Sized payloads ──────────────────────────────────────────────

@dataclass
class TransferSession:
    """
    One in-flight sized payload on a stream.

    Tracks how much of the declared length has been consumed so that a
    handler which fails half-way can still drain the rest and leave
    the stream positioned at the next command line.
    """
    reader: asyncio.StreamReader
    expected: int
    transferred: int = 0
    chunk_size: int = CHUNK_SIZE

    @property
    def remaining(self) -> int:
        return self.expected - self.transferred

    @property
    def complete(self) -> bool:
        return self.transferred >= self.expected

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield the payload chunk by chunk until the declared length."""
        while self.remaining > 0:
            data = await self.reader.read(min(self.chunk_size, self.remaining))
            if not data:
                raise TransferError(self.expected, self.transferred)
            self.transferred += len(data)
            yield data

    async def receive_into(self, fileobj: BinaryIO) -> int:
        """Write the remaining payload into an open binary file."""
        async for chunk in self.chunks():
            fileobj.write(chunk)
        return self.transferred

    async def relay_to(self, dest: asyncio.StreamWriter) -> int:
        """Pass the remaining payload through to another stream."""
        async for chunk in self.chunks():
            dest.write(chunk)
            await dest.drain()
        return self.transferred

    async def read_all(self) -> bytes:
        """Buffer the remaining payload (bounded payloads only)."""
        parts = [chunk async for chunk in self.chunks()]
        return b"".join(parts)

    async def drain(self) -> int:
        """Read and discard whatever is left of the payload."""
        discarded = 0
        async for chunk in self.chunks():
            discarded += len(chunk)
        if discarded:
            logger.debug(f"Drained {discarded} unread payload bytes")
        return discarded


async def send_stream(writer: asyncio.StreamWriter, fileobj: BinaryIO, size: int,
                      chunk_size: int = CHUNK_SIZE) -> int:
    """
    Copy exactly `size` bytes from an open file to the stream.

    The receiver is counting bytes, so a file that turns out shorter
    than announced breaks framing; that is reported as TransferError.
    """
    sent = 0
    while sent < size:
        data = fileobj.read(min(chunk_size, size - sent))
        if not data:
            raise TransferError(size, sent, f"source ended after {sent} of {size} bytes")
        writer.write(data)
        await writer.drain()
        sent += len(data)
    return sent


async def send_sized(writer: asyncio.StreamWriter, fileobj: BinaryIO, size: int) -> int:
    """Size line followed by the file's bytes."""
    await send(writer, size_line(size))
    return await send_stream(writer, fileobj, size)
