"""
Transfer Module - Handshake and Bulk Transfer

Handles the TCP protocol spoken between sender and receiver.
"""

from .protocol import (
    CHUNK_SIZE,
    DEFAULT_PORT,
    FileMetadata,
    HandshakeEngine,
    Role,
    SessionState,
    TransferStream,
    connect,
    decode_field,
    encode_field,
)
from .engine import TransferEngine, TransferProgress
from .session import Session
from .uploader import FileServer, RETRYABLE_ACCEPT_ERRNOS
from .downloader import FileReceiver, ReceiveResult

__all__ = [
    'CHUNK_SIZE',
    'DEFAULT_PORT',
    'FileMetadata',
    'HandshakeEngine',
    'Role',
    'SessionState',
    'TransferStream',
    'connect',
    'decode_field',
    'encode_field',
    'TransferEngine',
    'TransferProgress',
    'Session',
    'FileServer',
    'RETRYABLE_ACCEPT_ERRNOS',
    'FileReceiver',
    'ReceiveResult',
]
