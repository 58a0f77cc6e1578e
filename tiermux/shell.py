"""
tiermux.shell — Interactive client for the dispatcher.

Usage:
    python -m tiermux.shell                  # 127.0.0.1:50004
    python -m tiermux.shell 10.0.0.5 50004

    tiermux$ uploadf report.pdf ~S1/docs
    tiermux$ dispfnames ~S1/docs
    tiermux$ downlf ~S1/docs/report.pdf      # saved as ./report.pdf
    tiermux$ downltar pdf                    # saved as ./pdf.tar
    tiermux$ removef ~S1/docs/report.pdf
    tiermux$ quit

Commands are checked locally before anything is sent: arity, the
extension, and that paths start with the dispatcher alias. Downloads
land in the current directory under the file's basename; archives
are saved as cfiles.tar, pdf.tar or text.tar.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO, Tuple

from dotenv import load_dotenv

from tiercore.config import DEFAULT_HOST, DEFAULT_PORTS, default_alias
from tiercore.types import ExtensionClass
from tierwire import wire
from tierwire.client import DispatcherClient, DispatcherError

logger = logging.getLogger("tiermux.shell")

PROMPT = "tiermux$ "
QUIT = ("quit", "exit")

USAGE = {
    wire.UPLOADF: "uploadf <filename> <destination_path>",
    wire.DOWNLF: "downlf <file_path>",
    wire.REMOVEF: "removef <file_path>",
    wire.DOWNLTAR: "downltar <filetype>",
    wire.DISPFNAMES: "dispfnames <directory_path>",
}


class UsageError(ValueError):
    """A command rejected before it reaches the dispatcher."""
    pass


def parse_command(line: str, alias: str) -> Tuple[str, List[str]]:
    """
    Validate one shell line and return (verb, arguments).

    Raises UsageError with a message fit for the user.
    """
    verb, rest = wire.split_command(line)
    if verb not in USAGE:
        raise UsageError(
            f"Unknown command: {verb}\n"
            f"Commands: {', '.join(USAGE)}, quit"
        )
    if not rest:
        raise UsageError(f"Usage: {USAGE[verb]}")

    if verb == wire.UPLOADF:
        parts = rest.split(None, 1)
        if len(parts) < 2:
            raise UsageError(f"Usage: {USAGE[verb]}")
        filename, dest = parts[0], parts[1].strip()
        if ExtensionClass.from_filename(filename) is None:
            raise UsageError("Error: uploadf supports only .c, .pdf, .txt, .zip")
        _require_alias(dest, alias, "destination_path")
        return verb, [filename, dest]

    if verb in (wire.DOWNLF, wire.REMOVEF):
        if ExtensionClass.from_filename(rest) is None:
            raise UsageError(f"Error: unsupported file type for {verb}")
        _require_alias(rest, alias, "file path")
        return verb, [rest]

    if verb == wire.DOWNLTAR:
        ext = ExtensionClass.from_token(rest)
        if ext is None or not ext.archivable:
            raise UsageError("Error: filetype must be .c, .pdf, or .txt")
        return verb, [ext.suffix]

    # dispfnames
    if ExtensionClass.from_filename(rest) is not None:
        raise UsageError("Error: dispfnames expects a directory, not a file")
    _require_alias(rest, alias, "directory path")
    return verb, [rest]


def _require_alias(path: str, alias: str, what: str):
    if path != alias and not path.startswith(alias + '/'):
        raise UsageError(f"Error: {what} must begin with {alias}")


class Shell:
    """
    Read-eval loop over one DispatcherClient connection.

    Args:
        client:   Connected dispatcher client.
        alias:    Alias that every remote path must start with.
        out:      Where responses are printed.
        work_dir: Where uploads are read from and downloads written.
    """

    def __init__(self, client: DispatcherClient, alias: str = default_alias(ExtensionClass.SOURCE),
                 out: TextIO = sys.stdout, work_dir: Optional[Path] = None):
        self.client = client
        self.alias = alias
        self.out = out
        self.work_dir = Path(work_dir) if work_dir is not None else Path.cwd()

    def _print(self, text: str):
        print(text, file=self.out)

    async def execute(self, line: str) -> bool:
        """
        Run one line. Returns False when the shell should exit.
        """
        line = line.strip()
        if not line:
            return True
        if line in QUIT:
            return False

        try:
            verb, args = parse_command(line, self.alias)
        except UsageError as e:
            self._print(str(e))
            return True
        logger.debug(f"{verb} {' '.join(args)}")

        handlers = {
            wire.UPLOADF: self._upload,
            wire.DOWNLF: self._download,
            wire.REMOVEF: self._remove,
            wire.DOWNLTAR: self._download_tar,
            wire.DISPFNAMES: self._list,
        }

        try:
            await handlers[verb](*args)
        except DispatcherError as e:
            self._print(e.line)
        except OSError as e:
            if isinstance(e, ConnectionError):
                raise
            self._print(f"Error: {e}")
        return True

    async def _upload(self, filename: str, dest: str):
        path = self.work_dir / filename
        if not path.is_file():
            self._print(f"File not found: {filename}")
            return
        self._print(await self.client.upload_file(path, dest))

    async def _download(self, path: str):
        name = path.rstrip('/').rsplit('/', 1)[-1]
        data = await self.client.download(path)
        (self.work_dir / name).write_bytes(data)
        self._print(f"File {name} downloaded ({len(data)} bytes)")

    async def _remove(self, path: str):
        self._print(await self.client.remove(path))

    async def _download_tar(self, suffix: str):
        ext = ExtensionClass.from_token(suffix)
        data = await self.client.download_tar(ext)
        (self.work_dir / ext.tarball_name).write_bytes(data)
        self._print(f"Tar file saved as {ext.tarball_name} ({len(data)} bytes)")

    async def _list(self, directory: str):
        names = await self.client.list_names(directory)
        if not names:
            self._print(wire.NO_FILES)
            return
        for name in names:
            self._print(name)

    async def run(self):
        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, input, PROMPT)
            except EOFError:
                break
            try:
                if not await self.execute(line):
                    break
            except ConnectionError as e:
                self._print(f"Connection closed by server: {e}")
                break


async def _run(host: str, port: int, alias: str):
    async with DispatcherClient(host, port) as client:
        print(f"Connected to dispatcher at {host}:{port}")
        await Shell(client, alias).run()
    print("Client disconnected.")


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="Interactive dispatcher client")
    parser.add_argument('host', nargs='?', default=DEFAULT_HOST,
                        help=f'Dispatcher address (default: {DEFAULT_HOST})')
    parser.add_argument('port', nargs='?', type=int,
                        default=DEFAULT_PORTS[ExtensionClass.SOURCE],
                        help='Dispatcher port (default: 50004)')
    parser.add_argument('--alias', default=default_alias(ExtensionClass.SOURCE),
                        help='Path alias the dispatcher serves (default: ~S1)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(asctime)s %(name)s %(levelname)s %(message)s',
        datefmt='%H:%M:%S'
    )

    try:
        asyncio.run(_run(args.host, args.port, args.alias))
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
