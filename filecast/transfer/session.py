"""
Session - one file transfer over one connected stream.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .protocol import FileMetadata, Role, SessionState, TransferStream

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Track one connection from accept/connect to close."""
    role: Role
    stream: TransferStream
    peer: Optional[Tuple[str, int]] = None
    state: SessionState = SessionState.CONNECTED
    metadata: Optional[FileMetadata] = None
    bytes_transferred: int = 0
    error: Optional[Exception] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def peer_label(self) -> str:
        if self.peer is None:
            return "unknown peer"
        return f"{self.peer[0]}:{self.peer[1]}"

    @property
    def succeeded(self) -> bool:
        return self.state is SessionState.CLOSED and self.error is None

    @property
    def duration_s(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return max(0.0, end - self.started_at)

    def enter(self, state: SessionState):
        """Record a state transition."""
        logger.debug(f"[{self.peer_label}] {self.state.value} -> {state.value}")
        self.state = state

    async def close(self):
        """Close the stream and mark the session finished."""
        await self.stream.close()
        self.finished_at = time.time()
        self.enter(SessionState.CLOSED)
