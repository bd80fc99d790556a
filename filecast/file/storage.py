"""
File Access

Design Decision: Sender File Handle
===================================

Options Considered:
1. Reopen the file for every peer
   - Simple, no shared state
   - Size can change between peers while the server runs

2. One open handle shared by every session, rewound between peers
   - File is validated once at startup
   - Cursor is shared state, must be reset after every session

Decision: One shared handle (SharedFile)
- Opened and sized once when the server starts
- Only the accept loop's current session touches it
- rewind() runs in the session's finally block, success or failure

Receiver side opens its output with exclusive create ('xb') so an
existing file is never truncated, and removes the file again if the
transfer does not complete.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


def display_name(name) -> str:
    """Printable form of a filesystem name; undecodable bytes become U+FFFD."""
    return os.fsencode(name).decode('utf-8', 'replace')


class SharedFile:
    """
    Read-only file served to every peer.

    Provides:
    - Chunked async reads
    - Size measured once at open
    - Rewind to offset 0 between sessions
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.size = 0
        self._file = None

    @property
    def name(self) -> str:
        """Name sent on the wire (no directory component)."""
        return self.path.name

    @property
    def is_open(self) -> bool:
        return self._file is not None

    async def open(self):
        """
        Open the file and measure its size.

        Raises:
            FileNotFoundError: if the path does not exist
            IsADirectoryError: if the path is a directory
        """
        if self._file is not None:
            return
        self._file = await aiofiles.open(self.path, 'rb')
        self.size = await self._file.seek(0, os.SEEK_END)
        await self._file.seek(0)
        logger.debug(f"Opened {display_name(self.path)} ({self.size:,} bytes)")

    async def read(self, n: int) -> bytes:
        """Read up to n bytes from the current position."""
        if self._file is None:
            raise ValueError("file is not open")
        return await self._file.read(n)

    async def rewind(self):
        """Move the cursor back to the start of the file."""
        if self._file is not None:
            await self._file.seek(0)

    async def close(self):
        if self._file is not None:
            await self._file.close()
            self._file = None

    async def __aenter__(self) -> 'SharedFile':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


def exists(path: Path) -> bool:
    """Check whether anything already occupies the path."""
    return os.path.lexists(path)


async def open_exclusive(path: Path):
    """
    Open a new file for writing.

    Raises:
        FileExistsError: if the path already exists
    """
    return await aiofiles.open(path, 'xb')


async def remove_partial(path: Path) -> bool:
    """Delete a partially written file. Returns True if one was removed."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    logger.info(f"Removed partial file {display_name(path)}")
    return True


def ensure_directory(path: Optional[Path]) -> Path:
    """Create an output directory if needed and return it."""
    directory = Path(path) if path else Path('.')
    directory.mkdir(parents=True, exist_ok=True)
    return directory
