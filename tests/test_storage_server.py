"""
Tests for the backend storage service, driven through BackendClient
and, where framing itself is under test, raw sockets.
"""

import asyncio
import io
import os
import tarfile

import pytest

from tiercore.types import ExtensionClass
from tierwire import wire
from tierwire.client import BackendClient, BackendError, BackendUnavailable


@pytest.fixture
def pdf_tier(tiers):
    return tiers[ExtensionClass.PDF]


@pytest.fixture
def pdf_client(pdf_tier):
    return BackendClient("pdf", *pdf_tier.address)


async def open_raw(server):
    return await asyncio.open_connection(*server.address)


async def read_sized(reader) -> bytes:
    header = await wire.read_line(reader)
    size = wire.parse_size(header)
    assert size is not None, header
    return await reader.readexactly(size)


class TestStoreAndGet:

    async def test_round_trip(self, pdf_client, pdf_tier):
        data = b"%PDF-1.7 " + bytes(range(256)) * 40
        await pdf_client.store("docs/report.pdf", io.BytesIO(data), len(data))

        assert (pdf_tier.root / "docs" / "report.pdf").read_bytes() == data
        async with pdf_client.download("docs/report.pdf") as session:
            assert await session.read_all() == data

    async def test_alias_prefixed_paths(self, pdf_client, pdf_tier):
        await pdf_client.store("~S2/a/b.pdf", io.BytesIO(b"xyz"), 3)

        assert (pdf_tier.root / "a" / "b.pdf").read_bytes() == b"xyz"
        async with pdf_client.download("a/b.pdf") as session:
            assert await session.read_all() == b"xyz"

    async def test_no_partial_files_left(self, pdf_client, pdf_tier):
        await pdf_client.store("deep/er/x.pdf", io.BytesIO(b"1234"), 4)

        leftovers = [p.name for p in pdf_tier.root.rglob(".*")]
        assert leftovers == []

    async def test_get_missing(self, pdf_client):
        with pytest.raises(BackendError) as exc_info:
            async with pdf_client.download("nope.pdf"):
                pass
        assert exc_info.value.line == "ERROR: File not found"

    async def test_get_directory_is_not_found(self, pdf_client, pdf_tier):
        (pdf_tier.root / "adir").mkdir()
        with pytest.raises(BackendError) as exc_info:
            async with pdf_client.download("adir"):
                pass
        assert exc_info.value.line == "ERROR: File not found"

    async def test_truncated_store_discards_partial(self, pdf_tier):
        reader, writer = await open_raw(pdf_tier)
        writer.write(b"STORE cut/x.pdf 100\n" + b"a" * 10)
        await writer.drain()
        writer.write_eof()

        reply = await reader.read()
        writer.close()

        assert reply == b"ERROR\n"
        assert not (pdf_tier.root / "cut").exists()

    async def test_escaping_path_drains_payload(self, pdf_tier):
        reader, writer = await open_raw(pdf_tier)
        writer.write(b"STORE ../../evil.pdf 4\nEVILLIST .\n")
        await writer.drain()

        assert await wire.read_line(reader) == "ERROR: Invalid path"
        assert await read_sized(reader) == b""
        assert not (pdf_tier.root.parent / "evil.pdf").exists()
        writer.close()

    async def test_invalid_store_commands(self, pdf_tier):
        reader, writer = await open_raw(pdf_tier)
        writer.write(b"STORE onlypath\nSTORE x.pdf big\n")
        await writer.drain()

        assert await wire.read_line(reader) == "ERROR: Invalid STORE command"
        assert await wire.read_line(reader) == "ERROR: Invalid file size"
        writer.close()


class TestDeleteAndList:

    async def test_delete_prunes_empty_ancestors(self, pdf_client, pdf_tier):
        await pdf_client.store("a/b/c/x.pdf", io.BytesIO(b"x"), 1)
        await pdf_client.store("a/keep.pdf", io.BytesIO(b"k"), 1)

        await pdf_client.delete("a/b/c/x.pdf")

        assert not (pdf_tier.root / "a" / "b").exists()
        assert (pdf_tier.root / "a" / "keep.pdf").exists()
        assert pdf_tier.root.is_dir()

    async def test_delete_missing(self, pdf_client):
        with pytest.raises(BackendError) as exc_info:
            await pdf_client.delete("ghost.pdf")
        assert exc_info.value.line == "ERROR"

    async def test_list_sorted_immediate_files(self, pdf_client, pdf_tier):
        for name in ("b.pdf", "a.pdf", "sub/c.pdf"):
            await pdf_client.store(f"docs/{name}", io.BytesIO(b"."), 1)

        assert await pdf_client.list("docs") == ["a.pdf", "b.pdf"]
        assert await pdf_client.list() == []

    async def test_list_recursive(self, pdf_client):
        for name in ("docs/b.pdf", "docs/sub/a.pdf", "other/c.pdf"):
            await pdf_client.store(name, io.BytesIO(b"."), 1)

        assert await pdf_client.list("docs", recursive=True) == ["b.pdf", "sub/a.pdf"]
        assert await pdf_client.list(recursive=True) == [
            "docs/b.pdf", "docs/sub/a.pdf", "other/c.pdf",
        ]

    async def test_list_missing_directory(self, pdf_tier):
        reader, writer = await open_raw(pdf_tier)
        writer.write(b"LIST nowhere\n")
        await writer.drain()

        assert await wire.read_line(reader) == "0"
        writer.close()


class TestArchive:

    async def test_tar_matching_extension(self, pdf_client):
        await pdf_client.store("x/one.pdf", io.BytesIO(b"1"), 1)
        await pdf_client.store("two.pdf", io.BytesIO(b"22"), 2)

        async with pdf_client.archive(ExtensionClass.PDF) as session:
            data = await session.read_all()

        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            assert sorted(os.path.normpath(m.name) for m in tar.getmembers()) == ["two.pdf", "x/one.pdf"]

    async def test_tar_without_space(self, pdf_tier):
        reader, writer = await open_raw(pdf_tier)
        writer.write(b"TAR.pdf\n")
        await writer.drain()

        data = await read_sized(reader)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            assert tar.getmembers() == []
        writer.close()

    async def test_tar_wrong_extension(self, pdf_client):
        with pytest.raises(BackendError) as exc_info:
            async with pdf_client.archive(ExtensionClass.TEXT):
                pass
        assert exc_info.value.line == "ERROR: pdf tier only handles .pdf files"

    async def test_archive_tier_refuses_tar(self, tiers):
        client = BackendClient("archive", *tiers[ExtensionClass.ARCHIVE].address)
        with pytest.raises(BackendError) as exc_info:
            async with client.archive(ExtensionClass.ARCHIVE):
                pass
        assert exc_info.value.line.startswith("ERROR: Archive download not supported")


class TestConnection:

    async def test_unknown_command_keeps_connection(self, pdf_tier):
        reader, writer = await open_raw(pdf_tier)
        writer.write(b"FROB x\n\nLIST .\n")
        await writer.drain()

        assert await wire.read_line(reader) == "ERROR: Unknown command"
        assert await wire.read_line(reader) == "0"
        writer.close()

    async def test_unreachable_backend(self, dead_address):
        client = BackendClient("pdf", *dead_address)
        with pytest.raises(BackendUnavailable) as exc_info:
            await client.list()
        assert exc_info.value.line == "ERROR: File server unavailable"
