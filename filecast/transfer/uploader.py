"""
File Server (sender side)

Design Decision: Connection Handling
====================================

Options Considered:
1. asyncio.start_server with a task per connection
   - Concurrent peers
   - Needs a lock around the shared file cursor anyway
   - Accept errors are handled inside asyncio, not classifiable here

2. Explicit accept loop, one session at a time
   - Strictly sequential, like the protocol expects
   - Shared file cursor only ever touched by one session
   - Accept errors visible and classifiable

Decision: Explicit accept loop over loop.sock_accept()
- Next peer is accepted only after the current session has closed
- Peers that connect meanwhile wait in the listen backlog
- Session failures are logged and the loop carries on
- Accept errors in RETRYABLE_ACCEPT_ERRNOS are retried, anything else
  stops the server
"""

import asyncio
import errno
import socket
import logging
from pathlib import Path
from typing import Optional, FrozenSet

from .protocol import (
    CHUNK_SIZE, DEFAULT_PORT, FileMetadata, HandshakeEngine, Role,
    SessionState, TransferStream,
)
from .engine import TransferEngine, ProgressCallback
from .session import Session
from ..file.storage import SharedFile, display_name
from ..exceptions import ProtocolError, TransportError

logger = logging.getLogger(__name__)

RETRYABLE_ACCEPT_ERRNOS: FrozenSet[int] = frozenset({
    errno.EBADF,
    errno.ECONNABORTED,
    errno.EINTR,
    errno.EPROTO,
})


class FileServer:
    """
    Serves one file to every peer that connects, one peer at a time.

    Usage:
        async with FileServer(path, port=0) as server:
            await server.serve_forever(max_sessions=1)
    """

    def __init__(self, file_path: Path, host: str = '0.0.0.0',
                 port: int = DEFAULT_PORT, backlog: int = 1,
                 chunk_size: int = CHUNK_SIZE,
                 retryable_errnos: FrozenSet[int] = RETRYABLE_ACCEPT_ERRNOS,
                 progress_callback: Optional[ProgressCallback] = None):
        self.source = SharedFile(file_path)
        self.host = host
        self.port = port
        self.backlog = backlog
        self.chunk_size = chunk_size
        self.retryable_errnos = retryable_errnos
        self.progress_callback = progress_callback

        self._sock: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Future] = None
        self._idle: Optional[asyncio.Event] = None
        self._running = False

        # Statistics
        self.sessions_served = 0
        self.sessions_failed = 0
        self.bytes_uploaded = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sessions_total(self) -> int:
        return self.sessions_served + self.sessions_failed

    async def start(self):
        """Open the file and start listening."""
        if self._running:
            return

        await self.source.open()

        family = socket.AF_INET6 if ':' in self.host else socket.AF_INET
        try:
            # create_server sets SO_REUSEADDR on POSIX
            self._sock = socket.create_server(
                (self.host, self.port), family=family, backlog=self.backlog
            )
        except OSError:
            await self.source.close()
            raise
        self._sock.setblocking(False)
        self.port = self._sock.getsockname()[1]
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = True

        logger.info(f"server is listening on {self.host}:{self.port}")
        logger.info(f"Serving {display_name(self.source.name)} ({self.source.size:,} bytes)")

    async def stop(self):
        """Stop accepting and release the socket and file."""
        if not self._running:
            return
        self._running = False

        if self._accept_task is not None:
            self._accept_task.cancel()
        if self._sock is not None:
            self._sock.close()
            self._sock = None

        # A session in progress keeps the file until it closes
        await self._idle.wait()
        await self.source.close()

        logger.info(f"Server stopped. Served {self.sessions_served} peers "
                    f"({self.sessions_failed} failed), {self.bytes_uploaded:,} bytes")

    async def __aenter__(self) -> 'FileServer':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _accept(self) -> Optional[socket.socket]:
        """
        Wait for the next connection.

        Returns:
            Connected socket, or None if the server was stopped
        """
        loop = asyncio.get_running_loop()
        while self._running:
            self._accept_task = asyncio.ensure_future(loop.sock_accept(self._sock))
            try:
                conn, _ = await self._accept_task
                return conn
            except asyncio.CancelledError:
                if self._running:
                    raise
                return None
            except OSError as e:
                if not self._running:
                    return None
                if e.errno in self.retryable_errnos:
                    logger.warning(f"accept failed ({e}), retrying")
                    continue
                raise
            finally:
                self._accept_task = None
        return None

    async def serve_forever(self, max_sessions: Optional[int] = None):
        """
        Accept and serve peers until stopped.

        Args:
            max_sessions: Stop after this many sessions (success or failure)
        """
        if not self._running:
            await self.start()

        while self._running:
            if max_sessions is not None and self.sessions_total >= max_sessions:
                break
            conn = await self._accept()
            if conn is None:
                break
            await self.serve_peer(conn)

    async def serve_peer(self, conn: socket.socket) -> Session:
        """
        Run one sender session on an accepted socket.

        Transport and protocol failures end this session only. The shared
        file is rewound whatever happens.
        """
        self._idle.clear()
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError:
            conn.close()
            self._idle.set()
            raise
        stream = TransferStream(reader, writer)
        session = Session(role=Role.SEND, stream=stream, peer=stream.peer)
        logger.info(f"getting new connection from {session.peer_label}")

        try:
            metadata = FileMetadata(filename=self.source.name,
                                    file_size=self.source.size)
            session.metadata = metadata

            handshake = HandshakeEngine(stream, Role.SEND, on_phase=session.enter)
            await handshake.send_metadata(metadata)

            session.enter(SessionState.TRANSFERRING)
            logger.info(f"[{session.peer_label}] start transferring")
            engine = TransferEngine(stream, Role.SEND,
                                    chunk_size=self.chunk_size,
                                    progress_callback=self.progress_callback)
            session.bytes_transferred = await engine.send_file(
                self.source, total_bytes=metadata.file_size
            )

            logger.info(f"[{session.peer_label}] file transferred successfully "
                        f"({session.bytes_transferred:,} bytes)")

        except (TransportError, ProtocolError) as e:
            session.error = e
            logger.warning(f"[{session.peer_label}] session aborted: {e}")

        finally:
            await session.close()
            await self.source.rewind()
            self._idle.set()

        if session.succeeded:
            self.sessions_served += 1
            self.bytes_uploaded += session.bytes_transferred
        else:
            self.sessions_failed += 1
        return session

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'file': str(self.source.path),
            'file_size': self.source.size,
            'sessions_served': self.sessions_served,
            'sessions_failed': self.sessions_failed,
            'bytes_uploaded': self.bytes_uploaded,
            'port': self.port,
        }
