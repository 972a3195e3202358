"""
Sender-side file preparation.

Before upload a file may be compressed into a ZIP archive and/or sealed
(encrypted at rest) into an `.enc` artifact in the outgoing area. The
returned PreparedFile carries the SHA-256 of exactly the bytes the
receiver will end up storing, which is the checksum negotiated for the
transfer.
"""

import asyncio
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..crypto.cipher import StreamCipher
from ..crypto.hashing import ContentHasher
from ..errors import InvalidRequestError, StorageError

logger = logging.getLogger(__name__)


@dataclass
class PreparedFile:
    """A file ready to upload."""
    source: Path
    path: Path
    checksum: str
    size: int
    compressed: bool = False
    sealed: bool = False

    @property
    def name(self) -> str:
        return self.path.name


def _zip_sync(source: Path, target: Path):
    with zipfile.ZipFile(target, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(source, arcname=source.name)


async def zip_if_needed(path: Path, outgoing_dir: Path) -> Path:
    """
    Compress path into outgoing_dir/<name>.zip.

    Files already ending in .zip are returned unchanged.
    """
    path = Path(path)
    if path.suffix.lower() == '.zip':
        logger.info(f"[Prepare] {path.name} is already a zip archive")
        return path

    outgoing_dir = Path(outgoing_dir)
    outgoing_dir.mkdir(parents=True, exist_ok=True)
    target = outgoing_dir / f"{path.name}.zip"

    try:
        await asyncio.to_thread(_zip_sync, path, target)
    except OSError as e:
        raise StorageError(f"Could not compress {path.name}", e) from e

    logger.info(f"[Prepare] Compressed {path.name} -> {target.name} "
                f"({target.stat().st_size:,} bytes)")
    return target


async def seal_file(path: Path, outgoing_dir: Path, password: str,
                    cipher: Optional[StreamCipher] = None) -> Path:
    """Encrypt path as a single IV-prefixed unit into outgoing_dir/<name>.enc."""
    path = Path(path)
    outgoing_dir = Path(outgoing_dir)
    outgoing_dir.mkdir(parents=True, exist_ok=True)
    target = outgoing_dir / f"{path.name}.enc"

    cipher = cipher or StreamCipher()
    try:
        return await cipher.encrypt_file(path, target, password)
    except OSError as e:
        raise StorageError(f"Could not encrypt {path.name}", e) from e


async def prepare_outgoing(path: Path, outgoing_dir: Path, compress: bool = False,
                           seal_password: Optional[str] = None,
                           hasher: Optional[ContentHasher] = None) -> PreparedFile:
    """
    Compress and/or seal a file, then hash the result.

    Args:
        path: File the user asked to send
        outgoing_dir: Scratch area for derived artifacts
        compress: Zip the file first
        seal_password: When set, store the file encrypted at the receiver

    Raises:
        InvalidRequestError: path is not a regular file
    """
    source = Path(path)
    if not source.is_file():
        raise InvalidRequestError(f"File not found: {source}")

    artifact = source
    if compress:
        artifact = await zip_if_needed(artifact, outgoing_dir)
    if seal_password:
        artifact = await seal_file(artifact, outgoing_dir, seal_password)

    hasher = hasher or ContentHasher()
    checksum = await hasher.digest_file(artifact)
    logger.info(f"[Prepare] {artifact.name} SHA-256={checksum}")

    return PreparedFile(
        source=source,
        path=artifact,
        checksum=checksum,
        size=artifact.stat().st_size,
        compressed=compress,
        sealed=bool(seal_password),
    )
