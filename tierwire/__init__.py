# Line protocol spoken between client, dispatcher and storage tiers
from .wire import (
    TransferSession,
    TransferError,
    ProtocolError,
    read_line,
    split_command,
    parse_size,
    size_line,
    error_line,
    success_line,
    send_sized,
    send_stream,
    CHUNK_SIZE,
    MAX_LINE,
)
from .client import (
    BackendClient,
    BackendError,
    BackendUnavailable,
    DispatcherClient,
    DispatcherError,
)

__all__ = [
    'TransferSession',
    'TransferError',
    'ProtocolError',
    'read_line',
    'split_command',
    'parse_size',
    'size_line',
    'error_line',
    'success_line',
    'send_sized',
    'send_stream',
    'CHUNK_SIZE',
    'MAX_LINE',
    'BackendClient',
    'BackendError',
    'BackendUnavailable',
    'DispatcherClient',
    'DispatcherError',
]
