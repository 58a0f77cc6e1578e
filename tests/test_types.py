"""
Tests for extension classification and the routing table.
"""

import pytest

from tiercore.types import ExtensionClass, RoutingTable, TIER_ORDER


class TestExtensionClass:

    @pytest.mark.parametrize("name,expected", [
        ("main.c", ExtensionClass.SOURCE),
        ("report.pdf", ExtensionClass.PDF),
        ("~S1/docs/notes.txt", ExtensionClass.TEXT),
        ("bundle.zip", ExtensionClass.ARCHIVE),
        ("backup.tar.pdf", ExtensionClass.PDF),
    ])
    def test_from_filename(self, name, expected):
        assert ExtensionClass.from_filename(name) is expected

    @pytest.mark.parametrize("name", [
        "Makefile",
        "image.png",
        "notes.TXT",
        "docs.pdf/readme",
        "",
    ])
    def test_from_filename_unmanaged(self, name):
        assert ExtensionClass.from_filename(name) is None

    @pytest.mark.parametrize("token,expected", [
        (".c", ExtensionClass.SOURCE),
        ("c", ExtensionClass.SOURCE),
        ("pdf", ExtensionClass.PDF),
        (".txt", ExtensionClass.TEXT),
        ("text", ExtensionClass.TEXT),
        ("zip", ExtensionClass.ARCHIVE),
        ("archive", ExtensionClass.ARCHIVE),
    ])
    def test_from_token(self, token, expected):
        assert ExtensionClass.from_token(token) is expected

    @pytest.mark.parametrize("token", ["", "  ", "exe", ".doc"])
    def test_from_token_unknown(self, token):
        assert ExtensionClass.from_token(token) is None

    def test_only_zip_is_not_archivable(self):
        assert [ext for ext in ExtensionClass if not ext.archivable] == [ExtensionClass.ARCHIVE]

    def test_tarball_names(self):
        assert ExtensionClass.SOURCE.tarball_name == "cfiles.tar"
        assert ExtensionClass.PDF.tarball_name == "pdf.tar"
        assert ExtensionClass.TEXT.tarball_name == "text.tar"


class TestRoutingTable:

    def test_rejects_source_backend(self):
        with pytest.raises(ValueError):
            RoutingTable({ExtensionClass.SOURCE: ("127.0.0.1", 1)})

        routing = RoutingTable()
        with pytest.raises(ValueError):
            routing.set(ExtensionClass.SOURCE, "127.0.0.1", 1)

    def test_lookup(self):
        routing = RoutingTable({ExtensionClass.PDF: ("10.0.0.2", 6000)})
        assert routing.lookup(ExtensionClass.PDF) == ("10.0.0.2", 6000)
        assert routing.lookup(ExtensionClass.TEXT) is None

    def test_iterates_in_tier_order(self):
        routing = RoutingTable()
        routing.set(ExtensionClass.ARCHIVE, "h", 3)
        routing.set(ExtensionClass.PDF, "h", 1)
        routing.set(ExtensionClass.TEXT, "h", 2)

        assert [ext for ext, _ in routing] == list(TIER_ORDER)
        assert len(routing) == 3
