"""
Wire Protocol and Handshake

Design Decision: Field Encoding
===============================

Options Considered:
1. Exact-length decimal strings
   - Smallest on the wire
   - Receiver cannot tell where the field ends without a delimiter

2. Binary integers (struct '>Q')
   - Compact, fixed width
   - Not what existing peers speak

3. Fixed-width 16-byte decimal ASCII
   - Readable in a packet capture
   - Receiver always reads exactly 16 bytes, no delimiter needed

Decision: Fixed-width 16-byte decimal ASCII for both numeric fields
- Left-padded with '0' ("0000000000000005")
- Decoder also accepts NUL/space padding for older peers
- Filename length and file size share the same convention

Wire Format:
```
Sender                               Receiver
  | -- filename length (16B) ------->  |
  | <------------------- ack (0x00) -- |
  | -- filename (N bytes) ---------->  |
  | <------------------- ack (0x00) -- |
  | -- file size (16B) ------------->  |
  | <------------------- ack (0x00) -- |
  | -- file bytes (size bytes) ----->  |
```

The ack carries no status. It only paces the sender; the sender reads
it and never looks at the value.
"""

import os
import asyncio
import logging
import posixpath
import ntpath
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Tuple, Callable

from ..exceptions import (
    ConnectError, FieldOverflowError, MalformedFieldError,
    ProtocolError, TransportError,
)
from ..file.storage import display_name

logger = logging.getLogger(__name__)

DEFAULT_PORT = 48763
FIELD_WIDTH = 16
MAX_FIELD_VALUE = 10 ** FIELD_WIDTH - 1
CHUNK_SIZE = 64 * 1024  # 65,536 bytes
ACK = b'\x00'

# Receiver refuses to allocate more than this for a filename
MAX_FILENAME_LENGTH = 4096


class Role(Enum):
    """Which half of the protocol a session speaks."""
    SEND = "send"
    RECEIVE = "receive"


class SessionState(Enum):
    """Per-connection state machine."""
    CONNECTED = "connected"
    HANDSHAKE_LENGTH = "handshake_length"
    HANDSHAKE_NAME = "handshake_name"
    HANDSHAKE_SIZE = "handshake_size"
    TRANSFERRING = "transferring"
    CLOSED = "closed"


# Called with the state a session is entering
PhaseCallback = Callable[[SessionState], None]


def encode_field(value: int) -> bytes:
    """Encode an unsigned integer as a 16-byte decimal ASCII field."""
    if value < 0 or value > MAX_FIELD_VALUE:
        raise FieldOverflowError(
            f"{value} does not fit in a {FIELD_WIDTH}-digit field"
        )
    return str(value).zfill(FIELD_WIDTH).encode('ascii')


def decode_field(raw: bytes) -> int:
    """Decode a fixed-width decimal field, tolerating NUL/space padding."""
    text = raw.strip(b'\x00 \t\r\n')
    if not text or len(text) > FIELD_WIDTH or not text.isdigit():
        raise MalformedFieldError(f"not a decimal field: {raw!r}")
    return int(text)


def basename(name: str) -> str:
    """Strip any POSIX or Windows directory component from a name."""
    return ntpath.basename(posixpath.basename(name))


@dataclass
class FileMetadata:
    """What the handshake agrees on before any file bytes move."""
    filename: str
    file_size: int

    @property
    def filename_bytes(self) -> bytes:
        """Name as sent on the wire (filesystem encoding, undecodable bytes kept)."""
        return os.fsencode(self.filename)

    @property
    def display_name(self) -> str:
        return display_name(self.filename)

    @property
    def filename_length(self) -> int:
        return len(self.filename_bytes)


class TransferStream:
    """
    Connected byte stream used by both roles.

    Wraps an asyncio reader/writer pair and turns every socket-level
    failure into TransportError so callers only handle one type.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False

    @property
    def peer(self) -> Optional[Tuple[str, int]]:
        """Get remote peer address."""
        peername = self.writer.get_extra_info('peername')
        # Unix socket pairs report '' instead of an address tuple
        if not isinstance(peername, tuple):
            return None
        return peername[0], peername[1]

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int) -> bytes:
        """Read up to n bytes. Returns b'' at end of stream."""
        try:
            return await self.reader.read(n)
        except OSError as e:
            raise TransportError(f"read failed: {e}") from e

    async def read_exact(self, n: int) -> bytes:
        """Read exactly n bytes or fail."""
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                f"connection closed after {len(e.partial)} of {n} bytes"
            ) from e
        except OSError as e:
            raise TransportError(f"read failed: {e}") from e

    async def write_all(self, data: bytes):
        """Write the whole buffer and wait until it is flushed."""
        if self._closed:
            raise TransportError("Connection closed")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except OSError as e:
            raise TransportError(f"write failed: {e}") from e

    async def close(self):
        """Close the connection."""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            # Peer already reset the connection; nothing left to flush
            logger.debug(f"Error while closing stream: {e}")


async def connect(host: str, port: int = DEFAULT_PORT,
                  timeout: Optional[float] = None) -> TransferStream:
    """
    Connect to a sender.

    The timeout only bounds connection establishment; reads and writes
    on the returned stream block for as long as the peer does.

    Raises:
        ConnectError: if the connection cannot be established
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise ConnectError(f"connect to {host}:{port} timed out") from e
    except OSError as e:
        raise ConnectError(f"connect to {host}:{port} failed: {e}") from e
    return TransferStream(reader, writer)


class HandshakeEngine:
    """
    Metadata exchange for one session.

    The same class drives both directions; each operation checks that it
    is called on the side of the protocol it belongs to.
    """

    def __init__(self, stream: TransferStream, role: Role,
                 on_phase: Optional[PhaseCallback] = None):
        self.stream = stream
        self.role = role
        self._on_phase = on_phase

    def _require(self, role: Role):
        if self.role is not role:
            raise RuntimeError(
                f"{self.role.value} handshake cannot run a {role.value} step"
            )

    def _enter(self, state: SessionState):
        if self._on_phase:
            self._on_phase(state)

    # === Sender side ===

    async def _await_ack(self, what: str):
        try:
            await self.stream.read_exact(1)
        except TransportError as e:
            raise TransportError(f"recv {what} ack: {e}") from e

    async def send_filename_length(self, name: str):
        self._require(Role.SEND)
        self._enter(SessionState.HANDSHAKE_LENGTH)
        length = len(os.fsencode(name))
        await self.stream.write_all(encode_field(length))
        await self._await_ack("filename length")
        logger.debug(f"Sent filename length {length}")

    async def send_filename(self, name: str):
        self._require(Role.SEND)
        self._enter(SessionState.HANDSHAKE_NAME)
        await self.stream.write_all(os.fsencode(name))
        await self._await_ack("filename")
        logger.debug(f"Sent filename {name!r}")

    async def send_file_size(self, size: int):
        self._require(Role.SEND)
        self._enter(SessionState.HANDSHAKE_SIZE)
        await self.stream.write_all(encode_field(size))
        await self._await_ack("file size")
        logger.debug(f"Sent file size {size}")

    async def send_metadata(self, metadata: FileMetadata):
        """Run the whole sender handshake."""
        # Encode up front so an oversized file fails before any byte is sent
        encode_field(metadata.filename_length)
        encode_field(metadata.file_size)
        await self.send_filename_length(metadata.filename)
        await self.send_filename(metadata.filename)
        await self.send_file_size(metadata.file_size)

    # === Receiver side ===

    async def send_ack(self):
        self._require(Role.RECEIVE)
        await self.stream.write_all(ACK)

    async def recv_filename_length(self) -> int:
        self._require(Role.RECEIVE)
        self._enter(SessionState.HANDSHAKE_LENGTH)
        length = decode_field(await self.stream.read_exact(FIELD_WIDTH))
        logger.debug(f"filename size: {length}")
        return length

    async def recv_filename(self, length: int) -> str:
        """
        Read the filename and reduce it to a safe basename.

        Raises:
            ProtocolError: if the name is empty, too long, cannot be a local
                filename, or names a directory
        """
        self._require(Role.RECEIVE)
        self._enter(SessionState.HANDSHAKE_NAME)
        if length == 0 or length > MAX_FILENAME_LENGTH:
            raise ProtocolError(f"unacceptable filename length: {length}")

        raw = await self.stream.read_exact(length)
        try:
            name = os.fsdecode(raw)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"filename cannot be stored here: {raw!r}") from e

        name = basename(name)
        if name in ('', '.', '..') or '\x00' in name:
            raise ProtocolError(f"unacceptable filename: {raw!r}")
        logger.debug(f"filename: {display_name(name)}")
        return name

    async def recv_file_size(self) -> int:
        self._require(Role.RECEIVE)
        self._enter(SessionState.HANDSHAKE_SIZE)
        size = decode_field(await self.stream.read_exact(FIELD_WIDTH))
        logger.debug(f"file size: {size}")
        return size

    async def recv_metadata(self, check_name: Optional[Callable[[str], None]] = None
                            ) -> FileMetadata:
        """
        Run the whole receiver handshake.

        Args:
            check_name: Called with the filename after its ack has been
                sent and before the size field is read. Raising from it
                aborts the handshake without telling the sender.
        """
        length = await self.recv_filename_length()
        await self.send_ack()

        name = await self.recv_filename(length)
        await self.send_ack()

        if check_name:
            check_name(name)

        size = await self.recv_file_size()
        await self.send_ack()

        return FileMetadata(filename=name, file_size=size)
