"""
Content Hashing

SHA-256 digests used as the end-to-end integrity check of a transfer.
Files are always streamed through a fixed-size buffer, never read whole.
"""

import hashlib
from pathlib import Path
from typing import AsyncIterable, Optional, Union

import aiofiles

# Read buffer for hashing: 64KB
HASH_BUFFER_SIZE = 64 * 1024


def checksums_match(expected: Optional[str], actual: Optional[str]) -> bool:
    """Compare two hex digests, ignoring case and surrounding whitespace."""
    if not expected or not actual:
        return False
    return expected.strip().lower() == actual.strip().lower()


class ContentHasher:
    """
    Computes SHA-256 hex digests over bytes, files and async byte streams.

    Identical byte sequences always yield identical digests. An unreadable
    source raises the underlying OSError; no partial digest is returned.
    """

    algorithm = 'sha256'

    def __init__(self, buffer_size: int = HASH_BUFFER_SIZE):
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.buffer_size = buffer_size

    def digest_bytes(self, data: bytes) -> str:
        """Digest an in-memory buffer."""
        return hashlib.sha256(data).hexdigest()

    def digest_file_sync(self, path: Union[str, Path]) -> str:
        """Synchronous file digest, for callers outside the event loop."""
        hasher = hashlib.sha256()
        with open(path, 'rb') as f:
            while True:
                data = f.read(self.buffer_size)
                if not data:
                    break
                hasher.update(data)
        return hasher.hexdigest()

    async def digest_file(self, path: Union[str, Path]) -> str:
        """Digest a file on disk."""
        hasher = hashlib.sha256()
        async with aiofiles.open(path, 'rb') as f:
            while True:
                data = await f.read(self.buffer_size)
                if not data:
                    break
                hasher.update(data)
        return hasher.hexdigest()

    async def digest_stream(self, source: AsyncIterable[bytes]) -> str:
        """Digest everything an async byte source yields."""
        hasher = hashlib.sha256()
        async for data in source:
            hasher.update(data)
        return hasher.hexdigest()
