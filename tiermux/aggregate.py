"""
tiermux.aggregate — Operations that span every tier.

ListingAggregator answers `dispfnames`: it collects the source files
anywhere below the requested directory on the dispatcher's own root,
then asks each backend in fixed tier order (pdf, text, archive) for
the files below the same tier-relative directory (`LIST <dir> -r`).
Groups keep that order; file names are sorted within a group.

ArchiveAggregator answers `downltar`: source archives are built
locally from the dispatcher root, pdf/text archives are requested
from the owning backend and relayed byte for byte.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from tiercore.archive import build_archive
from tiercore.paths import PathTranslator, walk_regular_files
from tiercore.types import ExtensionClass, RoutingTable, TIER_ORDER
from tierwire import wire
from tierwire.client import BackendClient, BackendError

logger = logging.getLogger("tiermux.aggregate")

ClientFactory = Callable[[str, str, int], BackendClient]

NameGroups = List[Tuple[ExtensionClass, List[str]]]


def client_for(routing: RoutingTable, ext: ExtensionClass,
               factory: ClientFactory = BackendClient) -> Optional[BackendClient]:
    """Backend client for the tier owning `ext`, or None if unrouted."""
    addr = routing.lookup(ext)
    if addr is None:
        return None
    host, port = addr
    return factory(ext.tier_name, host, port)


def _basenames(paths: List[str]) -> List[str]:
    """Final path components, sorted."""
    return sorted(path.rsplit('/', 1)[-1] for path in paths)


class ListingAggregator:
    """
    Merges per-tier file name lists for one virtual directory.
    """

    def __init__(self, translator: PathTranslator, routing: RoutingTable,
                 client_factory: ClientFactory = BackendClient):
        self.translator = translator
        self.routing = routing
        self.client_factory = client_factory

    def local_names(self, rel_dir: str) -> List[str]:
        directory = self.translator.root / rel_dir if rel_dir else self.translator.root
        return _basenames(walk_regular_files(directory, ExtensionClass.SOURCE.suffix))

    async def remote_names(self, ext: ExtensionClass, rel_dir: str) -> List[str]:
        """
        Names from one backend. An unreachable or failing backend
        contributes an empty group rather than failing the listing.
        """
        client = client_for(self.routing, ext, self.client_factory)
        if client is None:
            return []
        try:
            paths = await client.list(rel_dir, recursive=True)
        except BackendError as e:
            logger.warning(f"Listing {ext.tier_name} tier failed: {e.line}")
            return []
        except (ConnectionError, OSError) as e:
            logger.warning(f"Listing {ext.tier_name} tier failed: {e}")
            return []
        return _basenames(paths)

    async def collect(self, virtual_dir: str) -> NameGroups:
        """
        Names under `virtual_dir`, grouped source first, then each
        backend in tier order. Raises PathEscapeError for bad paths.
        """
        rel_dir = self.translator.relative(virtual_dir)
        groups: NameGroups = [(ExtensionClass.SOURCE, self.local_names(rel_dir))]
        for ext in TIER_ORDER:
            groups.append((ext, await self.remote_names(ext, rel_dir)))

        counts = ", ".join(f"{ext.tier_name}={len(names)}" for ext, names in groups)
        logger.info(f"Listed {virtual_dir}: {counts}")
        return groups

    @staticmethod
    def render(groups: NameGroups) -> bytes:
        """Newline-terminated names, group by group."""
        return "".join(
            f"{name}\n" for _, names in groups for name in names
        ).encode('utf-8')


class ArchiveAggregator:
    """
    Produces the `downltar` response for one extension class.
    """

    def __init__(self, root: Path, routing: RoutingTable,
                 client_factory: ClientFactory = BackendClient):
        self.root = Path(root)
        self.routing = routing
        self.client_factory = client_factory

    async def send(self, token: str, writer: asyncio.StreamWriter):
        """
        Write either "<size>\\n<tar>" or an ERROR line to `writer`.

        Transport failures while relaying a backend archive propagate:
        the client has already been promised a byte count.
        """
        ext = ExtensionClass.from_token(token)
        if ext is None:
            await wire.send(writer, wire.error_line(
                "Invalid filetype (supported: .c, .pdf, .txt)"
            ))
            return
        if not ext.archivable:
            await wire.send(writer, wire.error_line(
                f"Archive download not supported for {ext.suffix}"
            ))
            return

        if ext is ExtensionClass.SOURCE:
            await self._send_local(writer)
        else:
            await self._relay_remote(ext, writer)

    async def _send_local(self, writer: asyncio.StreamWriter):
        try:
            archive = await asyncio.to_thread(
                build_archive, self.root, ExtensionClass.SOURCE.suffix
            )
        except OSError as e:
            logger.error(f"Failed to create source archive: {e}")
            await wire.send(writer, wire.error_line("Failed to create tar file"))
            return

        with archive:
            await wire.send_sized(writer, archive.file, archive.size)
        logger.info(f"Sent source archive ({archive.members} files, {archive.size} bytes)")

    async def _relay_remote(self, ext: ExtensionClass, writer: asyncio.StreamWriter):
        client = client_for(self.routing, ext, self.client_factory)
        if client is None:
            await wire.send(writer, wire.error_line(
                f"No storage tier configured for {ext.suffix}"
            ))
            return

        try:
            async with client.archive(ext) as session:
                await wire.send(writer, wire.size_line(session.expected))
                relayed = await session.relay_to(writer)
        except BackendError as e:
            await wire.send(writer, wire.encode_line(e.line))
            return

        logger.info(f"Relayed {ext.tier_name} archive ({relayed} bytes)")
