"""
Core types shared by the dispatcher and the storage tiers.

Every file in the unified namespace belongs to exactly one extension
class. The class decides where the bytes physically live:

    .c    → dispatcher's own root (never leaves the front tier)
    .pdf  → pdf tier
    .txt  → text tier
    .zip  → archive tier
"""

from dataclasses import dataclass, field
from enum import Enum
import os
from typing import Dict, Iterator, Optional, Tuple


class ExtensionClass(str, Enum):
    """Routing category derived from a filename's final dot-suffix."""
    SOURCE = ".c"
    PDF = ".pdf"
    TEXT = ".txt"
    ARCHIVE = ".zip"

    @property
    def suffix(self) -> str:
        return self.value

    @property
    def tier_name(self) -> str:
        return _TIER_NAMES[self]

    @property
    def archivable(self) -> bool:
        """Whether `downltar`/`TAR` may bundle this class."""
        return self is not ExtensionClass.ARCHIVE

    @property
    def tarball_name(self) -> str:
        """Local filename the client saves a bulk archive under."""
        return _TARBALL_NAMES[self]

    @classmethod
    def from_filename(cls, name: str) -> Optional['ExtensionClass']:
        """
        Classify a filename (or path) by its last suffix.
        Returns None for no suffix or an unmanaged one.
        """
        base = name.rstrip('/').rsplit('/', 1)[-1]
        _, ext = os.path.splitext(base)
        if not ext:
            return None
        for member in cls:
            if member.value == ext:
                return member
        return None

    @classmethod
    def from_token(cls, token: str) -> Optional['ExtensionClass']:
        """
        Parse an extension token as typed on the wire: '.pdf', 'pdf',
        or a tier name such as 'text'.
        """
        token = token.strip()
        if not token:
            return None
        if not token.startswith('.'):
            for member in cls:
                if member.tier_name == token:
                    return member
            token = '.' + token
        for member in cls:
            if member.value == token:
                return member
        return None


_TIER_NAMES = {
    ExtensionClass.SOURCE: "source",
    ExtensionClass.PDF: "pdf",
    ExtensionClass.TEXT: "text",
    ExtensionClass.ARCHIVE: "archive",
}

_TARBALL_NAMES = {
    ExtensionClass.SOURCE: "cfiles.tar",
    ExtensionClass.PDF: "pdf.tar",
    ExtensionClass.TEXT: "text.tar",
    ExtensionClass.ARCHIVE: "zip.tar",
}

# Order in which backend groups appear in aggregate listings.
TIER_ORDER: Tuple[ExtensionClass, ...] = (
    ExtensionClass.PDF,
    ExtensionClass.TEXT,
    ExtensionClass.ARCHIVE,
)


@dataclass
class RoutingTable:
    """
    Extension class → backend (host, port).

    Only the remote classes appear here; SOURCE is always served by the
    dispatcher itself. Built from config or CLI and handed to the
    dispatcher, so tests can point it at in-process backends.
    """
    backends: Dict[ExtensionClass, Tuple[str, int]] = field(default_factory=dict)

    def __post_init__(self):
        if ExtensionClass.SOURCE in self.backends:
            raise ValueError("source files are stored by the dispatcher, not a backend")

    def lookup(self, ext: ExtensionClass) -> Optional[Tuple[str, int]]:
        return self.backends.get(ext)

    def set(self, ext: ExtensionClass, host: str, port: int):
        if ext is ExtensionClass.SOURCE:
            raise ValueError("source files are stored by the dispatcher, not a backend")
        self.backends[ext] = (host, port)

    def __iter__(self) -> Iterator[Tuple[ExtensionClass, Tuple[str, int]]]:
        """Iterate configured backends in fixed tier order."""
        for ext in TIER_ORDER:
            if ext in self.backends:
                yield ext, self.backends[ext]

    def __len__(self) -> int:
        return len(self.backends)
