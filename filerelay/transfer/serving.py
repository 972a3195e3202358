"""
Range Serving Engine

Serves a stored file from a resume offset and keeps the registry's byte
counters in step with what has been handed to the transport.

Only the open-ended form `Range: bytes=<start>-` is honored. Any other
form (bounded `bytes=N-M`, suffix `bytes=-N`, multi-range, garbage)
resends the whole file from offset 0. Checksum verification is left to
the caller.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import aiofiles

from ..errors import InvalidRequestError, StorageError
from .state import StatusRegistry, generate_transfer_id

logger = logging.getLogger(__name__)

# Disk read block: 8KB
SERVE_BUFFER_SIZE = 8 * 1024

_OPEN_RANGE = re.compile(r'^bytes=(\d+)-$')


def parse_range(range_header: Optional[str], file_size: int) -> int:
    """
    Resolve a Range header to a starting offset within [0, file_size].

    Args:
        range_header: Raw header value, or None
        file_size: Size of the stored file

    Returns:
        Start offset; 0 for missing or unsupported range forms
    """
    if not range_header:
        return 0

    match = _OPEN_RANGE.match(range_header.strip())
    if not match:
        logger.debug(f"[Download] Unsupported range '{range_header}', sending from 0")
        return 0

    start = int(match.group(1))
    return max(0, min(start, file_size))


@dataclass(frozen=True)
class ServePlan:
    """What a single download request will send."""
    transfer_id: str
    path: Path
    file_size: int
    start: int

    @property
    def length(self) -> int:
        return self.file_size - self.start

    @property
    def partial(self) -> bool:
        return self.start > 0

    def content_range(self) -> str:
        """Value of the Content-Range header for a resumed response."""
        if self.start >= self.file_size:
            return f"bytes */{self.file_size}"
        return f"bytes {self.start}-{self.file_size - 1}/{self.file_size}"


class RangeServingEngine:
    """
    Streams stored files from a requested offset.

    Usage:
        plan = engine.prepare(None, path, request.headers.get('range'))
        async for block in engine.iter_plan(plan):
            ...
    """

    def __init__(self, registry: StatusRegistry, buffer_size: int = SERVE_BUFFER_SIZE):
        self.registry = registry
        self.buffer_size = buffer_size

    def prepare(self, transfer_id: Optional[str], stored_path: Path,
                range_header: Optional[str] = None,
                checksum: Optional[str] = None) -> ServePlan:
        """
        Resolve the offset and begin tracking the download.

        Raises:
            InvalidRequestError: stored_path is not a regular file
        """
        path = Path(stored_path)
        if not path.is_file():
            raise InvalidRequestError(f"File not found: {path.name}")

        file_size = path.stat().st_size
        start = parse_range(range_header, file_size)
        transfer_id = transfer_id or generate_transfer_id(path.name, checksum)

        self.registry.begin(transfer_id, path.name, file_size, checksum=checksum)
        self.registry.set_resume_offset(transfer_id, start)
        self.registry.set_final_path(transfer_id, str(path.resolve()))
        self.registry.progress(transfer_id, start)

        logger.info(f"[Download] Serving {path.name} from offset {start} of {file_size}")
        return ServePlan(transfer_id=transfer_id, path=path, file_size=file_size, start=start)

    async def iter_plan(self, plan: ServePlan) -> AsyncIterator[bytes]:
        """Yield the remainder of the file, advancing the registry per block."""
        sent = plan.start
        try:
            async with aiofiles.open(plan.path, 'rb') as f:
                await f.seek(plan.start)
                while sent < plan.file_size:
                    data = await f.read(min(self.buffer_size, plan.file_size - sent))
                    if not data:
                        break
                    yield data
                    sent += len(data)
                    self.registry.progress(plan.transfer_id, sent)
        except OSError as e:
            self.registry.fail(plan.transfer_id, f"Download error: {e}")
            raise StorageError(f"Failed reading {plan.path.name}", e) from e
        except (GeneratorExit, asyncio.CancelledError):
            # Consumer went away (client disconnect) before the last block
            self.registry.fail(plan.transfer_id, f"Client disconnected after "
                                                 f"{sent - plan.start} bytes")
            raise

        if sent < plan.file_size:
            message = f"{plan.path.name} shrank while serving ({sent} of {plan.file_size})"
            self.registry.fail(plan.transfer_id, message)
            raise StorageError(message)

        self.registry.complete(plan.transfer_id, str(plan.path.resolve()), bytes_written=sent)

    async def serve(self, transfer_id: Optional[str], stored_path: Path,
                    range_header: Optional[str],
                    sink: Callable[[bytes], Awaitable[None]]) -> int:
        """
        Copy the requested range of stored_path into sink.

        Returns:
            Number of bytes handed to sink
        """
        plan = self.prepare(transfer_id, stored_path, range_header)
        sent = 0
        async for block in self.iter_plan(plan):
            await sink(block)
            sent += len(block)
        return sent
