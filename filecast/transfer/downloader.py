"""
File Receiver (client side)

Receive Flow:
1. Connect to the sender
2. Read filename length, ack
3. Read filename, ack
4. Refuse if the file already exists (nothing is sent back)
5. Read file size, ack
6. Create the output exclusively and read exactly file-size bytes
7. Close; on any failure during 6 the partial output is deleted

Every failure propagates to the caller. The receiver has one peer and
nothing to fall back to.
"""

import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, Tuple, Callable

from .protocol import (
    CHUNK_SIZE, DEFAULT_PORT, FileMetadata, HandshakeEngine, Role,
    SessionState, TransferStream, connect,
)
from .engine import TransferEngine, ProgressCallback
from .session import Session
from ..file.storage import (
    display_name, ensure_directory, exists, open_exclusive, remove_partial,
)
from ..exceptions import FilecastError, FileExistsConflict

logger = logging.getLogger(__name__)


@dataclass
class ReceiveResult:
    """Outcome of a completed receive."""
    path: Path
    file_size: int
    bytes_received: int
    duration_s: float
    peer: Optional[Tuple[str, int]] = None

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_received * 8 / 1_000_000) / self.duration_s


# Called once the handshake has agreed on name and size
MetadataCallback = Callable[[FileMetadata], None]


class FileReceiver:
    """
    Fetches one file from a sender.

    Args:
        output_dir: Directory the received file is written into
        chunk_size: Largest single read during the transfer
        progress_callback: Optional callback for progress updates
        metadata_callback: Optional callback once name and size are known
    """

    def __init__(self, output_dir: Optional[Path] = None,
                 chunk_size: int = CHUNK_SIZE,
                 progress_callback: Optional[ProgressCallback] = None,
                 metadata_callback: Optional[MetadataCallback] = None):
        self.output_dir = Path(output_dir) if output_dir else Path('.')
        self.chunk_size = chunk_size
        self.progress_callback = progress_callback
        self.metadata_callback = metadata_callback

    def _check_target(self, name: str):
        target = self.output_dir / name
        if exists(target):
            raise FileExistsConflict(target)

    async def fetch(self, host: str, port: int = DEFAULT_PORT,
                    connect_timeout: Optional[float] = None) -> ReceiveResult:
        """Connect to a sender and receive its file."""
        stream = await connect(host, port, timeout=connect_timeout)
        logger.info(f"connected to {host}:{port}")
        return await self.receive(stream)

    async def receive(self, stream: TransferStream) -> ReceiveResult:
        """
        Run the receiver session over an already connected stream.

        The stream is closed when this returns or raises.

        Raises:
            FileExistsConflict: target name already exists locally
            ProtocolError: malformed handshake field
            TransportError: connection failed or ended early
        """
        session = Session(role=Role.RECEIVE, stream=stream, peer=stream.peer)

        try:
            ensure_directory(self.output_dir)
            handshake = HandshakeEngine(stream, Role.RECEIVE, on_phase=session.enter)
            metadata = await handshake.recv_metadata(check_name=self._check_target)
            session.metadata = metadata
            if self.metadata_callback:
                self.metadata_callback(metadata)

            target = self.output_dir / metadata.filename
            session.enter(SessionState.TRANSFERRING)
            session.bytes_transferred = await self._receive_into(
                stream, target, metadata.file_size
            )
            logger.info(f"file transferred successfully: {display_name(target)} "
                        f"({session.bytes_transferred:,} bytes)")

        except FilecastError as e:
            session.error = e
            raise

        finally:
            await session.close()

        return ReceiveResult(
            path=target,
            file_size=metadata.file_size,
            bytes_received=session.bytes_transferred,
            duration_s=session.duration_s,
            peer=session.peer,
        )

    async def _receive_into(self, stream: TransferStream, target: Path,
                            file_size: int) -> int:
        try:
            out = await open_exclusive(target)
        except FileExistsError as e:
            raise FileExistsConflict(target) from e
        except OSError as e:
            raise FilecastError(f"{display_name(target)}: {e}") from e

        completed = False
        try:
            engine = TransferEngine(stream, Role.RECEIVE,
                                    chunk_size=self.chunk_size,
                                    progress_callback=self.progress_callback)
            received = await engine.receive_file(out, file_size)
            completed = True
        finally:
            await out.close()
            if not completed:
                await remove_partial(target)

        return received
