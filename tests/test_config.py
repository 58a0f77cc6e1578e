"""
Tests for backend spec parsing and environment-driven configuration.
"""

from pathlib import Path

import pytest

from tiercore.config import (
    DEFAULT_HOST,
    DEFAULT_PORTS,
    DispatcherConfig,
    StorageConfig,
    default_alias,
    default_root,
    parse_address,
    parse_backend,
)
from tiercore.types import ExtensionClass

ENV_VARS = [
    "TIERMUX_ROOT", "TIERMUX_ALIAS", "TIERMUX_HOST", "TIERMUX_PORT",
    "TIERMUX_PDF_ADDR", "TIERMUX_TEXT_ADDR", "TIERMUX_ARCHIVE_ADDR",
    "TIERMUX_TEXT_ROOT", "TIERMUX_TEXT_ALIAS", "TIERMUX_TEXT_HOST", "TIERMUX_TEXT_PORT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestParsing:

    def test_parse_address(self):
        assert parse_address("10.0.0.5:6000") == ("10.0.0.5", 6000)
        assert parse_address("6000") == (DEFAULT_HOST, 6000)
        assert parse_address(":6000") == (DEFAULT_HOST, 6000)

    @pytest.mark.parametrize("spec,expected", [
        ("pdf=127.0.0.1:50005", (ExtensionClass.PDF, "127.0.0.1", 50005)),
        ("text=storage:7000", (ExtensionClass.TEXT, "storage", 7000)),
        (".txt=storage:7000", (ExtensionClass.TEXT, "storage", 7000)),
        ("archive=10.1.1.1:9", (ExtensionClass.ARCHIVE, "10.1.1.1", 9)),
    ])
    def test_parse_backend(self, spec, expected):
        assert parse_backend(spec) == expected

    @pytest.mark.parametrize("spec", [
        "pdf",
        "pdf=50005",
        "c=127.0.0.1:50004",
        "video=127.0.0.1:1",
        "pdf=127.0.0.1:notaport",
    ])
    def test_parse_backend_rejects(self, spec):
        with pytest.raises(ValueError):
            parse_backend(spec)


class TestDefaults:

    def test_classic_deployment(self):
        assert default_alias(ExtensionClass.SOURCE) == "~S1"
        assert default_alias(ExtensionClass.ARCHIVE) == "~S4"
        assert default_root(ExtensionClass.TEXT) == Path.home() / "S3"
        assert [DEFAULT_PORTS[ext] for ext in ExtensionClass] == [50004, 50005, 50006, 50007]


class TestDispatcherConfig:

    def test_from_env_defaults(self, clean_env):
        config = DispatcherConfig.from_env()

        assert config.alias == "~S1"
        assert config.port == 50004
        assert config.routing.lookup(ExtensionClass.PDF) == (DEFAULT_HOST, 50005)
        assert config.routing.lookup(ExtensionClass.ARCHIVE) == (DEFAULT_HOST, 50007)

    def test_from_env_overrides(self, clean_env, tmp_path):
        clean_env.setenv("TIERMUX_ROOT", str(tmp_path))
        clean_env.setenv("TIERMUX_ALIAS", "root")
        clean_env.setenv("TIERMUX_PORT", "6004")
        clean_env.setenv("TIERMUX_PDF_ADDR", "10.0.0.2:6005")

        config = DispatcherConfig.from_env()

        assert config.root == tmp_path
        assert config.alias == "root"
        assert config.port == 6004
        assert config.routing.lookup(ExtensionClass.PDF) == ("10.0.0.2", 6005)
        assert config.routing.lookup(ExtensionClass.TEXT) == (DEFAULT_HOST, 50006)


class TestStorageConfig:

    def test_source_tier_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            StorageConfig(tier=ExtensionClass.SOURCE, root=tmp_path, alias="~S1")

    def test_from_env(self, clean_env, tmp_path):
        clean_env.setenv("TIERMUX_TEXT_ROOT", str(tmp_path / "text"))
        clean_env.setenv("TIERMUX_TEXT_PORT", "7006")

        config = StorageConfig.from_env(ExtensionClass.TEXT)

        assert config.root == tmp_path / "text"
        assert config.alias == "~S3"
        assert config.port == 7006
