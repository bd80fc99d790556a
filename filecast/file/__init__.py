"""
File Module - Shared source file and receiver output handling
"""

from .storage import (
    SharedFile, display_name, ensure_directory, exists, open_exclusive,
    remove_partial,
)

__all__ = [
    'SharedFile',
    'display_name',
    'ensure_directory',
    'exists',
    'open_exclusive',
    'remove_partial',
]
