"""
Bulk archive builder.

Bundles every file of one extension found anywhere under a tier root
into a single tar stream. Member names are relative to the root
("./docs/a.pdf"), so unpacking reproduces the tier layout.

The archive is spooled to an anonymous temporary file instead of held
in memory; callers stream it out and close it. An empty match still
produces a well-formed tar (end-of-archive blocks only).
"""

import logging
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Union

from .paths import walk_regular_files

logger = logging.getLogger("tiercore.archive")


@dataclass
class Archive:
    """A built tar archive, positioned at offset 0."""
    file: BinaryIO
    size: int
    members: int

    def close(self):
        self.file.close()

    def __enter__(self) -> 'Archive':
        return self

    def __exit__(self, *exc):
        self.close()


def collect_matching(root: Union[str, Path], suffix: str) -> List[Path]:
    """
    Every regular file under `root` (recursively) whose name ends with
    `suffix`, in sorted order. Hidden files and in-progress uploads
    (".name.part") are skipped.
    """
    root = Path(root)
    return [root / rel for rel in walk_regular_files(root, suffix)]


def build_archive(root: Union[str, Path], suffix: str) -> Archive:
    """
    Tar every `suffix` file under `root`.

    Blocking; run it off the event loop. Raises OSError if the spool
    file cannot be written. Files that vanish between the scan and the
    tar write are skipped.
    """
    root = Path(root)
    spool = tempfile.TemporaryFile(prefix="tiermux-", suffix=".tar")
    members = 0
    try:
        with tarfile.open(fileobj=spool, mode='w', format=tarfile.GNU_FORMAT) as tar:
            for path in collect_matching(root, suffix):
                arcname = './' + path.relative_to(root).as_posix()
                try:
                    tar.add(str(path), arcname=arcname, recursive=False)
                except FileNotFoundError:
                    logger.warning(f"File vanished while archiving: {path}")
                    continue
                members += 1
        size = spool.tell()
        spool.seek(0)
    except BaseException:
        spool.close()
        raise

    logger.info(f"Built archive of {members} '{suffix}' file(s) under {root} ({size} bytes)")
    return Archive(file=spool, size=size, members=members)
