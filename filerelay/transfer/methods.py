"""
Transfer Methods

Design Decision: Transport Selection
====================================

Options Considered:
1. String switch at every call site ("HTTP", "S3", ...)
   - Typos only show up at run time, deep inside a transfer

2. Closed enum resolved once when configuration is loaded
   - Unknown modes are rejected before anything is sent
   - One factory maps a mode to its TransferMethod

Decision: TransferMode enum + create_transfer_method()
- HTTP is the reference transport
- ZEROTIER is HTTP addressed through the tunnel's virtual IP, so it
  reuses HttpTransferMethod
- Object-store backends (S3) are not part of this engine and are
  rejected at parse time
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..crypto.hashing import ContentHasher
from ..errors import InvalidRequestError
from ..file.chunker import CHUNK_SIZE
from .client import HttpTransferClient

logger = logging.getLogger(__name__)


class TransferMode(str, Enum):
    """Closed set of supported transports."""
    HTTP = "HTTP"
    ZEROTIER = "ZEROTIER"

    @classmethod
    def parse(cls, value) -> 'TransferMode':
        """Resolve a user-supplied mode string (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if value is None or not str(value).strip():
            raise InvalidRequestError("Transfer mode must not be empty")
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            supported = ', '.join(m.value for m in cls)
            raise InvalidRequestError(
                f"Unsupported transfer mode '{value}' (supported: {supported})"
            ) from None


class TransferMethod(ABC):
    """Capability set every transport provides."""

    mode: TransferMode

    @abstractmethod
    async def handshake(self) -> Dict:
        """Check that the remote side is reachable and ready."""

    @abstractmethod
    async def send(self, path: Path, transfer_id: str,
                   checksum: Optional[str] = None,
                   password: Optional[str] = None,
                   chunked: bool = False) -> Dict:
        """Upload a file under transfer_id, resuming if possible."""

    @abstractmethod
    async def receive(self, name: str, dest_dir: Path,
                      transfer_id: Optional[str] = None) -> Tuple[Path, Optional[str]]:
        """Fetch a named file into dest_dir, resuming a partial copy."""

    @abstractmethod
    async def resume_offset(self, transfer_id: str) -> int:
        """Bytes the remote side already holds for transfer_id."""

    @abstractmethod
    async def status(self, transfer_id: str) -> Optional[Dict]:
        """Remote snapshot of a transfer, or None if unknown."""

    @abstractmethod
    async def reset(self, transfer_id: str) -> str:
        """Discard a remote transfer; returns the id to use next."""

    async def checksum(self, path: Path) -> str:
        """SHA-256 hex digest of a local file."""
        return await ContentHasher().digest_file(path)

    async def close(self):
        """Release transport resources."""


class HttpTransferMethod(TransferMethod):
    """TransferMethod backed by HttpTransferClient."""

    mode = TransferMode.HTTP

    def __init__(self, client: HttpTransferClient, chunk_size: int = CHUNK_SIZE,
                 hasher: Optional[ContentHasher] = None,
                 mode: TransferMode = TransferMode.HTTP):
        self.client = client
        self.chunk_size = chunk_size
        self.hasher = hasher or ContentHasher()
        self.mode = mode

    async def handshake(self) -> Dict:
        return await self.client.handshake()

    async def send(self, path: Path, transfer_id: str,
                   checksum: Optional[str] = None,
                   password: Optional[str] = None,
                   chunked: bool = False) -> Dict:
        if chunked:
            return await self.client.upload_chunks(
                path, transfer_id, checksum=checksum, password=password,
                chunk_size=self.chunk_size,
            )
        return await self.client.upload_stream(
            path, transfer_id, checksum=checksum, password=password,
        )

    async def receive(self, name: str, dest_dir: Path,
                      transfer_id: Optional[str] = None) -> Tuple[Path, Optional[str]]:
        return await self.client.download(name, dest_dir, transfer_id=transfer_id)

    async def resume_offset(self, transfer_id: str) -> int:
        return await self.client.query_resume_offset(transfer_id)

    async def checksum(self, path: Path) -> str:
        return await self.hasher.digest_file(path)

    async def status(self, transfer_id: str) -> Optional[Dict]:
        return await self.client.query_status(transfer_id)

    async def reset(self, transfer_id: str) -> str:
        return await self.client.reset(transfer_id)

    async def close(self):
        await self.client.close()


def create_transfer_method(mode, host: str, port: int,
                           chunk_size: int = CHUNK_SIZE,
                           connect_timeout: float = 5.0,
                           read_timeout: float = 15.0,
                           buffer_size: int = 8 * 1024,
                           transport=None) -> TransferMethod:
    """
    Build the TransferMethod for a mode.

    Args:
        mode: TransferMode or its name
        host: Receiver address (for ZEROTIER, its virtual network IP)
        transport: Optional httpx transport (tests route to an in-process app)
    """
    mode = TransferMode.parse(mode)
    client = HttpTransferClient(
        host, port,
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        buffer_size=buffer_size,
        transport=transport,
    )
    if mode == TransferMode.ZEROTIER:
        logger.info(f"[ZeroTier] Using HTTP transport over tunnel address {host}")
    return HttpTransferMethod(client, chunk_size=chunk_size, mode=mode)
