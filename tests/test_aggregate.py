"""
Tests for the listing aggregator with stand-in backend clients.
"""

import pytest

from tiercore.paths import PathEscapeError, PathTranslator
from tiercore.types import ExtensionClass, RoutingTable
from tierwire.client import BackendUnavailable
from tiermux.aggregate import ListingAggregator, client_for

# Tier name → (relative dir → paths below it)
LISTINGS = {
    "pdf": {"docs": ["z.pdf", "old/a.pdf"]},
    "text": {"docs": ["notes.txt"]},
}


class FakeBackend:
    """Answers LIST from LISTINGS; 'archive' is unreachable."""

    calls = []

    def __init__(self, name, host, port):
        self.name = name

    async def list(self, rel_dir="", recursive=False):
        FakeBackend.calls.append((self.name, rel_dir, recursive))
        if self.name == "archive":
            raise BackendUnavailable("ERROR: File server unavailable")
        return list(LISTINGS.get(self.name, {}).get(rel_dir, []))


@pytest.fixture
def aggregator(tmp_path):
    FakeBackend.calls = []
    routing = RoutingTable({
        ExtensionClass.PDF: ("pdf-host", 1),
        ExtensionClass.TEXT: ("text-host", 2),
        ExtensionClass.ARCHIVE: ("zip-host", 3),
    })
    translator = PathTranslator(tmp_path, "~S1")
    (tmp_path / "docs" / "lib").mkdir(parents=True)
    (tmp_path / "docs" / "main.c").write_text("")
    (tmp_path / "docs" / "lib" / "util.c").write_text("")
    (tmp_path / "docs" / "staged.pdf").write_text("")
    return ListingAggregator(translator, routing, client_factory=FakeBackend)


async def test_groups_in_order(aggregator):
    groups = await aggregator.collect("~S1/docs")

    assert groups == [
        (ExtensionClass.SOURCE, ["main.c", "util.c"]),
        (ExtensionClass.PDF, ["a.pdf", "z.pdf"]),
        (ExtensionClass.TEXT, ["notes.txt"]),
        (ExtensionClass.ARCHIVE, []),
    ]
    assert FakeBackend.calls == [
        ("pdf", "docs", True),
        ("text", "docs", True),
        ("archive", "docs", True),
    ]


async def test_render(aggregator):
    payload = ListingAggregator.render(await aggregator.collect("~S1/docs"))
    assert payload == b"main.c\nutil.c\na.pdf\nz.pdf\nnotes.txt\n"


async def test_empty_render(aggregator):
    assert ListingAggregator.render(await aggregator.collect("~S1/empty")) == b""


async def test_escape_rejected(aggregator):
    with pytest.raises(PathEscapeError):
        await aggregator.collect("~S1/../..")
    assert FakeBackend.calls == []


def test_client_for_unrouted():
    assert client_for(RoutingTable(), ExtensionClass.PDF) is None

    client = client_for(RoutingTable({ExtensionClass.TEXT: ("h", 9)}), ExtensionClass.TEXT)
    assert (client.name, client.host, client.port) == ("text", "h", 9)
