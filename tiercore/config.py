"""
Service configuration.

Settings come from TIERMUX_* environment variables (a .env file is
loaded by each CLI via python-dotenv) and can be overridden on the
command line. Defaults reproduce the classic four-server deployment:

    dispatcher  ~/S1  alias ~S1  port 50004
    pdf         ~/S2  alias ~S2  port 50005
    text        ~/S3  alias ~S3  port 50006
    archive     ~/S4  alias ~S4  port 50007
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from .types import ExtensionClass, RoutingTable, TIER_ORDER

DEFAULT_HOST = "127.0.0.1"
DEFAULT_BIND = "0.0.0.0"

DEFAULT_PORTS = {
    ExtensionClass.SOURCE: 50004,
    ExtensionClass.PDF: 50005,
    ExtensionClass.TEXT: 50006,
    ExtensionClass.ARCHIVE: 50007,
}

# Tier number used in default roots and aliases (~/S2, ~S2, ...)
_TIER_NUMBERS = {
    ExtensionClass.SOURCE: 1,
    ExtensionClass.PDF: 2,
    ExtensionClass.TEXT: 3,
    ExtensionClass.ARCHIVE: 4,
}


def default_root(ext: ExtensionClass) -> Path:
    return Path.home() / f"S{_TIER_NUMBERS[ext]}"


def default_alias(ext: ExtensionClass) -> str:
    return f"~S{_TIER_NUMBERS[ext]}"


def parse_address(addr: str, default_host: str = DEFAULT_HOST) -> Tuple[str, int]:
    """
    Parse 'host:port' (or a bare port) into (host, port).
    """
    addr = addr.strip()
    if ':' not in addr:
        return default_host, int(addr)
    host, port_str = addr.rsplit(':', 1)
    host = host.strip() or default_host
    return host, int(port_str.strip())


def parse_backend(spec: str) -> Tuple[ExtensionClass, str, int]:
    """
    Parse a backend spec: name=host:port
    `name` is a tier name or extension (pdf, .txt, archive, zip, ...).
    Returns (extension class, host, port).
    """
    if '=' not in spec:
        raise ValueError(f"Invalid backend spec '{spec}'. Expected name=host:port")

    name, addr = spec.split('=', 1)
    ext = ExtensionClass.from_token(name.strip())
    if ext is None or ext is ExtensionClass.SOURCE:
        raise ValueError(f"Unknown backend tier '{name.strip()}'")

    if ':' not in addr:
        raise ValueError(f"Invalid address '{addr}'. Expected host:port")

    host, port = parse_address(addr)
    return ext, host, port


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(f"TIERMUX_{name}")
    if value is None or value.strip() == "":
        return default
    return value.strip()


@dataclass
class DispatcherConfig:
    """Settings for the client-facing dispatcher."""
    root: Path = field(default_factory=lambda: default_root(ExtensionClass.SOURCE))
    alias: str = field(default_factory=lambda: default_alias(ExtensionClass.SOURCE))
    host: str = DEFAULT_BIND
    port: int = DEFAULT_PORTS[ExtensionClass.SOURCE]
    routing: RoutingTable = field(default_factory=RoutingTable)

    @classmethod
    def from_env(cls) -> 'DispatcherConfig':
        routing = RoutingTable()
        for ext in TIER_ORDER:
            addr = _env(f"{ext.tier_name.upper()}_ADDR",
                        f"{DEFAULT_HOST}:{DEFAULT_PORTS[ext]}")
            routing.set(ext, *parse_address(addr))

        return cls(
            root=Path(_env("ROOT", str(default_root(ExtensionClass.SOURCE)))).expanduser(),
            alias=_env("ALIAS", default_alias(ExtensionClass.SOURCE)),
            host=_env("HOST", DEFAULT_BIND),
            port=int(_env("PORT", str(DEFAULT_PORTS[ExtensionClass.SOURCE]))),
            routing=routing,
        )


@dataclass
class StorageConfig:
    """Settings for one backend storage tier."""
    tier: ExtensionClass
    root: Path
    alias: str
    host: str = DEFAULT_BIND
    port: int = 0

    def __post_init__(self):
        if self.tier is ExtensionClass.SOURCE:
            raise ValueError("source files are stored by the dispatcher, not a backend")
        self.root = Path(self.root).expanduser()

    @classmethod
    def from_env(cls, tier: ExtensionClass) -> 'StorageConfig':
        prefix = tier.tier_name.upper()
        return cls(
            tier=tier,
            root=Path(_env(f"{prefix}_ROOT", str(default_root(tier)))),
            alias=_env(f"{prefix}_ALIAS", default_alias(tier)),
            host=_env(f"{prefix}_HOST", DEFAULT_BIND),
            port=int(_env(f"{prefix}_PORT", str(DEFAULT_PORTS[tier]))),
        )
