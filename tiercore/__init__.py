# Shared types, path translation and archiving for the storage tiers
from .types import ExtensionClass, RoutingTable, TIER_ORDER
from .paths import (
    PathTranslator,
    PathEscapeError,
    ensure_directory,
    prune_empty_dirs,
    remove_file,
    list_regular_files,
    walk_regular_files,
)
from .archive import Archive, build_archive, collect_matching
from .config import DispatcherConfig, StorageConfig, parse_backend, parse_address

__all__ = [
    'ExtensionClass',
    'RoutingTable',
    'TIER_ORDER',
    'PathTranslator',
    'PathEscapeError',
    'ensure_directory',
    'prune_empty_dirs',
    'remove_file',
    'list_regular_files',
    'walk_regular_files',
    'Archive',
    'build_archive',
    'collect_matching',
    'DispatcherConfig',
    'StorageConfig',
    'parse_backend',
    'parse_address',
]
