"""
tiermux — Extension-routing file dispatcher.

Presents one namespace to clients while storing each file type on its
own storage tier:

    ~S1/docs/main.c       → dispatcher root (local)
    ~S1/docs/report.pdf   → pdf tier
    ~S1/docs/notes.txt    → text tier
    ~S1/docs/bundle.zip   → archive tier

Usage:
    python -m tierstore --tier pdf
    python -m tierstore --tier text
    python -m tierstore --tier archive
    python -m tiermux -v
    python -m tiermux.shell
"""

from .server import DispatchServer
from .dispatch import DispatchConnection
from .aggregate import ArchiveAggregator, ListingAggregator

__all__ = ['DispatchServer', 'DispatchConnection', 'ArchiveAggregator', 'ListingAggregator']
