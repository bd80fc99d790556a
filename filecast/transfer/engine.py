"""
Chunked Bulk Transfer

Moves the file bytes once the handshake has agreed on a size.

Design Decision: Stopping Criteria
==================================

- Sender stops when its file read returns zero bytes. It does not count
  bytes against the announced size.
- Receiver stops when it has read exactly the announced size. A sender
  that stops early makes the receiver's last read fail instead of
  silently delivering a short file.

Chunks are at most CHUNK_SIZE (64KB) so each session holds one buffer.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Callable

from .protocol import CHUNK_SIZE, Role, TransferStream
from ..exceptions import TransportError

logger = logging.getLogger(__name__)


@dataclass
class TransferProgress:
    """Byte counters for one transfer."""
    total_bytes: Optional[int] = None
    bytes_done: int = 0
    chunks_done: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0 (1.0 when the total is unknown or zero)."""
        if not self.total_bytes:
            return 1.0
        return self.bytes_done / self.total_bytes

    @property
    def progress_percent(self) -> float:
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_done / elapsed


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]


class TransferEngine:
    """
    Streams file bytes in one direction over a connected stream.

    source: anything with ``async read(n) -> bytes`` (sender)
    sink: anything with ``async write(data)`` (receiver)
    """

    def __init__(self, stream: TransferStream, role: Role,
                 chunk_size: int = CHUNK_SIZE,
                 progress_callback: Optional[ProgressCallback] = None):
        if chunk_size <= 0 or chunk_size > CHUNK_SIZE:
            raise ValueError(f"chunk size must be in 1..{CHUNK_SIZE}")
        self.stream = stream
        self.role = role
        self.chunk_size = chunk_size
        self.progress_callback = progress_callback

    def _report(self, progress: TransferProgress):
        if self.progress_callback:
            self.progress_callback(progress)

    def _log_done(self, verb: str, progress: TransferProgress):
        logger.debug(f"{verb} {progress.bytes_done:,} bytes in {progress.chunks_done} chunks, "
                     f"{progress.elapsed_seconds:.2f}s ({progress.speed_bytes_per_sec / 1024:.1f} KB/s)")

    async def send_file(self, source, total_bytes: Optional[int] = None) -> int:
        """
        Write the source to the stream until it runs dry.

        Returns:
            Number of bytes sent

        Raises:
            TransportError: on the first failed write
        """
        progress = TransferProgress(total_bytes=total_bytes)

        while True:
            chunk = await source.read(self.chunk_size)
            if not chunk:
                break
            try:
                await self.stream.write_all(chunk)
            except TransportError as e:
                raise TransportError(
                    f"send file: connection closed after {progress.bytes_done} bytes"
                ) from e

            progress.bytes_done += len(chunk)
            progress.chunks_done += 1
            logger.debug(f"sent {len(chunk)} bytes")
            self._report(progress)

        self._log_done("sent", progress)
        return progress.bytes_done

    async def receive_file(self, sink, file_size: int) -> int:
        """
        Read exactly file_size bytes from the stream into the sink.

        Returns:
            Number of bytes received (always file_size)

        Raises:
            TransportError: if the stream fails or ends early
        """
        progress = TransferProgress(total_bytes=file_size)

        while progress.bytes_done < file_size:
            wanted = min(self.chunk_size, file_size - progress.bytes_done)
            try:
                chunk = await self.stream.read_exact(wanted)
            except TransportError as e:
                raise TransportError(
                    f"recv file: {e} ({progress.bytes_done} of {file_size} bytes received)"
                ) from e

            await sink.write(chunk)
            progress.bytes_done += len(chunk)
            progress.chunks_done += 1
            logger.debug(f"wrote {len(chunk)} bytes")
            self._report(progress)

        self._log_done("received", progress)
        return progress.bytes_done

    async def run(self, file, file_size: Optional[int] = None) -> int:
        """Run the half of the transfer that matches this engine's role."""
        if self.role is Role.SEND:
            return await self.send_file(file, total_bytes=file_size)
        if file_size is None:
            raise ValueError("receiver needs the agreed file size")
        return await self.receive_file(file, file_size)
