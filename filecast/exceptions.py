"""
Exception hierarchy for filecast.

The sender treats ProtocolError and TransportError as session-scoped;
the receiver treats every FilecastError as fatal.
"""

import os


class FilecastError(Exception):
    """Base exception for filecast errors"""
    pass


class UsageError(FilecastError):
    """Bad command-line input, raised before any network activity"""
    pass


class ProtocolError(FilecastError):
    """Peer sent something the handshake cannot accept"""
    pass


class FieldOverflowError(ProtocolError):
    """Value does not fit in a fixed-width decimal field"""
    pass


class MalformedFieldError(ProtocolError):
    """Field bytes are not a decimal number"""
    pass


class TransportError(FilecastError):
    """Socket read/write failed or the peer closed the stream early"""
    pass


class ConnectError(TransportError):
    """Could not establish the connection to the sender"""
    pass


class FileExistsConflict(FilecastError):
    """Receiver already has a file with the announced name"""

    def __init__(self, path):
        shown = os.fsencode(path).decode('utf-8', 'replace')
        super().__init__(f"the file {shown} already exists")
        self.path = path
