"""
Virtual ↔ physical path translation and directory lifecycle.

Every tier owns a storage root and an alias. Clients name locations
by alias ("~S1/docs/notes.txt"); the tier resolves that to a file
under its root ("/home/u/S1/docs/notes.txt").

    virtual   ~S1/docs/notes.txt
    relative      docs/notes.txt        (alias stripped)
    physical  <root>/docs/notes.txt

The alias is optional on input: a path without it is taken as already
tier-relative. That is how the dispatcher talks to backends, sending
the relative remainder of its own virtual path.

Directories are created on demand when a file is stored and pruned
bottom-up when the last file in them goes away. Both operations are
idempotent and tolerate racing with other connections: creation
ignores "already exists", pruning stops at the first non-empty level.
"""

import logging
import os
from pathlib import Path
from typing import List, Union

logger = logging.getLogger("tiercore.paths")


class PathEscapeError(ValueError):
    """A virtual path resolves outside its tier root."""
    pass


class PathTranslator:
    """
    Maps virtual paths of one tier onto its storage root.

    Args:
        root:  Physical storage directory of the tier.
        alias: Leading marker naming the tier in virtual paths.
    """

    def __init__(self, root: Union[str, Path], alias: str):
        self.root = Path(root).expanduser()
        self.alias = alias.rstrip('/')

    def __repr__(self):
        return f"PathTranslator(alias={self.alias!r}, root={str(self.root)!r})"

    def relative(self, virtual: str) -> str:
        """
        Strip the alias and return the canonical tier-relative path.

        Returns "" for the tier root itself. Raises PathEscapeError if
        the path climbs above the root.
        """
        path = virtual.strip()
        if path == self.alias:
            path = ""
        elif path.startswith(self.alias + '/'):
            path = path[len(self.alias) + 1:]
        return self._canonical(path, virtual)

    @staticmethod
    def _canonical(path: str, virtual: str) -> str:
        """Normalise an alias-free path, rejecting anything above the root."""
        path = path.lstrip('/')
        if not path or path == '.':
            return ""

        normalized = os.path.normpath(path)
        if normalized == '.':
            return ""
        if normalized == '..' or normalized.startswith('../') or os.path.isabs(normalized):
            raise PathEscapeError(f"path escapes tier root: {virtual}")
        return normalized

    def to_physical(self, virtual: str) -> Path:
        """Resolve a virtual (or tier-relative) path under the root."""
        rel = self.relative(virtual)
        return self.root / rel if rel else self.root

    def to_virtual(self, physical: Union[str, Path]) -> str:
        """Render a physical path under the root back into virtual form."""
        rel = os.path.relpath(Path(physical), self.root)
        if rel == '.':
            return self.alias
        if rel == '..' or rel.startswith('../'):
            raise PathEscapeError(f"{physical} is not under {self.root}")
        return f"{self.alias}/{rel}"

    def join(self, virtual_dir: str, name: str) -> str:
        """
        Canonical tier-relative path of `name` inside a virtual directory.

        The alias is stripped from `virtual_dir` only; a leading component
        of the result that happens to equal the alias stays a directory.
        """
        rel = self.relative(virtual_dir)
        combined = f"{rel}/{name}" if rel else name
        return self._canonical(combined, f"{virtual_dir}/{name}")


# ── Directory lifecycle ─────────────────────────────────────────

def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Create `path` and any missing parents.

    Concurrent creation of the same directory is not an error. Raises
    FileExistsError/NotADirectoryError if a component is a regular file.
    """
    path = Path(path)
    os.makedirs(path, mode=0o755, exist_ok=True)
    return path


def prune_empty_dirs(start: Union[str, Path], root: Union[str, Path]) -> List[Path]:
    """
    Remove `start` and its ancestors while they are empty, stopping
    before `root`. The root itself is never removed.

    Best-effort: the walk ends at the first directory that is not empty,
    already gone, or not removable. Returns the directories removed.
    """
    root = Path(root)
    current = Path(start)
    removed: List[Path] = []

    rel = os.path.relpath(current, root)
    if rel == '.' or rel == '..' or rel.startswith('../'):
        return removed

    while current != root:
        try:
            current.rmdir()
        except OSError as e:
            logger.debug(f"Stopped pruning at {current}: {e.strerror}")
            break
        logger.debug(f"Removed empty directory: {current}")
        removed.append(current)
        current = current.parent

    return removed


def remove_file(path: Union[str, Path], root: Union[str, Path]) -> List[Path]:
    """
    Unlink a file, then prune its now-empty ancestors below `root`.

    The unlink result is authoritative (raises on failure); pruning is
    best-effort. Returns the directories pruned.
    """
    path = Path(path)
    path.unlink()
    return prune_empty_dirs(path.parent, root)


def list_regular_files(directory: Union[str, Path], suffix: str = "") -> List[str]:
    """
    Sorted names of the immediate, non-hidden regular files in
    `directory`, optionally filtered by suffix. A missing directory
    yields an empty list.
    """
    try:
        entries = list(os.scandir(directory))
    except (FileNotFoundError, NotADirectoryError):
        return []

    names = []
    for entry in entries:
        if entry.name.startswith('.'):
            continue
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
        except OSError:
            continue
        if suffix and not entry.name.endswith(suffix):
            continue
        names.append(entry.name)
    return sorted(names)


def walk_regular_files(directory: Union[str, Path], suffix: str = "") -> List[str]:
    """
    Like list_regular_files, but descends into subdirectories. Returns
    sorted POSIX paths relative to `directory`. Hidden files and hidden
    directories are skipped.
    """
    directory = Path(directory)
    found = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
        for name in filenames:
            if name.startswith('.') or (suffix and not name.endswith(suffix)):
                continue
            path = Path(dirpath) / name
            if path.is_symlink() or not path.is_file():
                continue
            found.append(path.relative_to(directory).as_posix())
    return sorted(found)
