import asyncio
import socket

import pytest

from filecast.transfer import TransferStream


class MemorySource:
    """Async read() over an in-memory buffer, like aiofiles in 'rb' mode."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    async def read(self, n):
        chunk = self.data[self.pos:self.pos + n]
        self.pos += len(chunk)
        return chunk


class MemorySink:
    """Async write() collecting bytes."""

    def __init__(self):
        self.data = bytearray()

    async def write(self, chunk):
        self.data.extend(chunk)


@pytest.fixture
def stream_pair():
    """Factory for two connected TransferStreams over a socketpair."""
    async def factory():
        a, b = socket.socketpair()
        ra, wa = await asyncio.open_connection(sock=a)
        rb, wb = await asyncio.open_connection(sock=b)
        return TransferStream(ra, wa), TransferStream(rb, wb)
    return factory


@pytest.fixture
def make_file(tmp_path):
    """Create a source file under tmp_path/src."""
    def factory(name: str, data: bytes):
        src_dir = tmp_path / "src"
        src_dir.mkdir(exist_ok=True)
        path = src_dir / name
        path.write_bytes(data)
        return path
    return factory
