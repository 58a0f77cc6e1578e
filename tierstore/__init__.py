"""
tierstore — Per-extension backend storage service.

    python -m tierstore --tier pdf --port 50005 --root ~/S2
"""

from .server import StorageServer, StorageConnection

__all__ = ['StorageServer', 'StorageConnection']
