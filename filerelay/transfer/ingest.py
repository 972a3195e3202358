"""
Chunk Ingest Engine

Design Decision: Upload Modes
=============================

Options Considered:
1. Single continuous stream per file
   - Cheap, resumable by appending to the partial file
   - One connection, no parallelism

2. Independent indexed chunks, merged at the end
   - Chunks can be re-sent, reordered, parallelized
   - Needs a bitmap and a merge step

Decision: Support both, selected by the presence of a chunk index
- Stream mode appends to received/<name>; whatever is already on disk
  is the resume offset, so a retried upload continues instead of
  restarting. Partial bytes are kept on I/O failure; an attempt that
  fails to decrypt is truncated back to the offset it started from.
  The transfer is only marked COMPLETED once the source is exhausted.
- Chunk mode stores each fragment under a name derived from
  (transfer id, chunk index), so a re-sent chunk overwrites itself.
  The last fragment to arrive triggers exactly one merge.

Merge Safety:
A per-transfer asyncio.Lock is held across persist -> mark -> check ->
merge of one chunk. Two requests that both carry "the last missing chunk"
therefore serialize: the first merges, the second sees COMPLETED and
reports CHUNK_STORED.

Storage Layout:
```
data/
├── received/                     # Finalized files by name
└── tmp/uploads/
    └── <transfer_id>/            # In-flight fragments of one transfer
        ├── 0.chunk
        └── 1.chunk
```
"""

import asyncio
import logging
import re
from enum import Enum
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, Optional

import aiofiles
import aiofiles.os

from ..crypto.cipher import StreamCipher, StreamDecryptor, derive_key, key_fingerprint, wipe
from ..errors import (
    DecryptionError, IncompleteTransferError, InvalidRequestError,
    StorageError, TransferError, TransferStateError, WrongPasswordError,
)
from .state import StatusRegistry, TransferPhase

logger = logging.getLogger(__name__)

# Chunk size the sender is assumed to use when it does not say: 256KB
DEFAULT_CHUNK_SIZE = 256 * 1024

# Disk I/O block: 8KB
IO_BUFFER_SIZE = 8 * 1024

# Log stream progress roughly every 512KB
LOG_EVERY_BYTES = 512 * 1024


class ChunkResult(str, Enum):
    """Outcome of ingesting one chunk."""
    CHUNK_STORED = "CHUNK_STORED"
    MERGED = "MERGED"


def sanitize_file_name(file_name: Optional[str]) -> str:
    """
    Reduce a client-supplied name to a bare file name.

    Directory components are stripped; traversal attempts are rejected.
    """
    if file_name is None or not file_name.strip():
        raise InvalidRequestError("Missing fileName")

    name = file_name.strip().replace("\\", "/")
    if ".." in name:
        raise InvalidRequestError(f"Invalid file name: {file_name!r}")
    if "/" in name.rstrip("/"):
        name = name.rstrip("/").rsplit("/", 1)[1]

    if not name or name == "." or "/" in name:
        raise InvalidRequestError(f"Invalid file name: {file_name!r}")
    return name


def expected_chunk_count(total_bytes: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Number of fixed-size chunks needed to carry total_bytes."""
    if total_bytes <= 0:
        return 0
    return (total_bytes + chunk_size - 1) // chunk_size


async def rechunk(source: AsyncIterable[bytes], block_size: int) -> AsyncIterator[bytes]:
    """Re-slice an async byte source into blocks of block_size (last may be short)."""
    pending = bytearray()
    async for piece in source:
        if not piece:
            continue
        pending += piece
        while len(pending) >= block_size:
            yield bytes(pending[:block_size])
            del pending[:block_size]
    if pending:
        yield bytes(pending)


def _validate_transfer_id(transfer_id: Optional[str]) -> str:
    if transfer_id is None or not transfer_id.strip():
        raise InvalidRequestError("Missing transferId")
    return transfer_id.strip()


class ChunkIngestEngine:
    """
    Persists incoming bytes and keeps the StatusRegistry in step.

    - ingest_stream(): append-with-resume for one continuous upload
    - ingest_chunk(): store-then-merge for indexed fragments
    """

    def __init__(self, registry: StatusRegistry, received_dir: Path, temp_dir: Path,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 buffer_size: int = IO_BUFFER_SIZE,
                 cipher: StreamCipher = None):
        self.registry = registry
        self.received_dir = Path(received_dir)
        self.temp_dir = Path(temp_dir)
        self.chunk_size = chunk_size
        self.buffer_size = buffer_size
        self.cipher = cipher or StreamCipher(buffer_size)

        self._merge_locks: Dict[str, asyncio.Lock] = {}

        self.received_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    # === Paths ===

    def destination(self, file_name: str) -> Path:
        """Final location of a received file."""
        return self.received_dir / sanitize_file_name(file_name)

    def resume_offset(self, file_name: str) -> int:
        """Bytes of file_name already durable in the received area."""
        path = self.destination(file_name)
        return path.stat().st_size if path.exists() else 0

    def chunk_dir(self, transfer_id: str) -> Path:
        """Transfer-scoped directory holding in-flight fragments."""
        safe = re.sub(r'[^A-Za-z0-9._-]', '_', transfer_id)
        if safe.startswith('.'):
            safe = '_' + safe
        return self.temp_dir / safe

    def chunk_path(self, transfer_id: str, chunk_index: int) -> Path:
        return self.chunk_dir(transfer_id) / f"{chunk_index}.chunk"

    # === Stream mode ===

    async def ingest_stream(self, transfer_id: str, file_name: str, total_bytes: int,
                            source: AsyncIterable[bytes],
                            password: Optional[str] = None,
                            checksum: Optional[str] = None,
                            client_offset: Optional[int] = None) -> Path:
        """
        Append a continuous upload to received/<file_name>.

        The bytes already on disk are the resume offset. A sender that
        states its own offset (client_offset) must agree with it; an
        explicit 0 truncates and starts over.

        When a password is given the source is one logical ciphertext:
        IV first, then AES-CBC blocks, decrypted on the fly.

        Returns:
            Path of the completed file

        Raises:
            InvalidRequestError: bad id/name/size (before any I/O)
            IncompleteTransferError: stream ended short; partial bytes kept
            StorageError: disk or source I/O failed; partial bytes kept
            DecryptionError: ciphertext could not be decrypted; this
                attempt's bytes are truncated away
        """
        transfer_id = _validate_transfer_id(transfer_id)
        out_path = self.destination(file_name)
        if total_bytes is None or total_bytes < 0:
            raise InvalidRequestError(f"Invalid totalBytes: {total_bytes}")

        already = out_path.stat().st_size if out_path.exists() else 0
        mode = 'ab'
        if client_offset is not None and client_offset != already:
            if client_offset != 0:
                raise InvalidRequestError(
                    f"Resume offset {client_offset} does not match {already} bytes on disk"
                )
            if already:
                logger.info(f"[UploadStream] Sender restarts {out_path.name} from 0; "
                            f"discarding {already} bytes")
            already = 0
            mode = 'wb'
        if already > total_bytes:
            logger.warning(f"[UploadStream] {out_path.name} on disk ({already} bytes) is larger "
                           f"than declared size {total_bytes}; restarting from 0")
            already = 0
            mode = 'wb'

        self.registry.begin(
            transfer_id, out_path.name, total_bytes,
            checksum=checksum,
            encryption_enabled=password is not None,
            key_fingerprint=key_fingerprint(password) if password else None,
        )
        self.registry.set_resume_offset(transfer_id, already)
        self.registry.set_final_path(transfer_id, str(out_path.resolve()))
        # COMPLETED waits for the end of the source, not for the byte count
        ceiling = max(total_bytes - 1, 0)
        self.registry.progress(transfer_id, min(already, ceiling))

        logger.info(f"[UploadStream] Saving to: {out_path} (resume offset={already})")

        decryptor = None
        if password:
            key = derive_key(password)
            try:
                decryptor = StreamDecryptor(key)
            finally:
                wipe(key)

        written = already
        next_log = already + LOG_EVERY_BYTES
        try:
            async with aiofiles.open(out_path, mode) as out:
                async for block in rechunk(source, self.buffer_size):
                    data = decryptor.update(block) if decryptor else block
                    if not data:
                        continue
                    if written + len(data) > total_bytes:
                        raise InvalidRequestError(
                            f"Received more than the declared {total_bytes} bytes"
                        )
                    await out.write(data)
                    written += len(data)
                    self.registry.progress(transfer_id, min(written, ceiling))

                    if written >= next_log:
                        logger.info(f"[UploadStream] Written {written:,} bytes so far")
                        next_log = written + LOG_EVERY_BYTES

                if decryptor:
                    tail = decryptor.finalize()
                    if written + len(tail) != total_bytes:
                        # A whole ciphertext decrypts to exactly the remaining bytes
                        raise WrongPasswordError(
                            f"Decrypted stream ends at {written + len(tail)} "
                            f"of {total_bytes} bytes"
                        )
                    await out.write(tail)
                    written += len(tail)
                    self.registry.progress(transfer_id, min(written, ceiling))

                await out.flush()

        except DecryptionError as e:
            await self._rollback(transfer_id, out_path, already,
                                 f"Stream decryption failed: {e}")
            raise
        except TransferError as e:
            self.registry.fail(transfer_id, f"Stream upload error: {e}")
            raise
        except OSError as e:
            self.registry.fail(transfer_id, f"Stream upload error: {e}")
            raise StorageError("Stream upload error", e) from e
        except Exception as e:
            # Transport aborts surface here (e.g. client disconnect)
            self.registry.fail(transfer_id, f"Stream upload error: {e}")
            raise

        if written < total_bytes:
            message = f"Stream ended at {written} of {total_bytes} bytes"
            self.registry.fail(transfer_id, message)
            raise IncompleteTransferError(message)

        self.registry.complete(transfer_id, str(out_path.resolve()), bytes_written=written)
        logger.info(f"[UploadStream] Finished. Total bytes now on disk={written:,}")
        return out_path

    async def _rollback(self, transfer_id: str, path: Path, size: int, message: str):
        """Truncate a stream upload back to size and fail the transfer."""
        try:
            async with aiofiles.open(path, 'r+b') as f:
                await f.truncate(size)
        except OSError as e:
            self.registry.fail(transfer_id, f"{message}; rollback failed: {e}")
            raise StorageError(f"Could not truncate {path.name} to {size} bytes", e) from e

        logger.warning(f"[UploadStream] {path.name} truncated back to {size:,} bytes")
        self.registry.fail(transfer_id, message, bytes_written=size)

    # === Chunk mode ===

    async def ingest_chunk(self, transfer_id: str, file_name: str, chunk_index: int,
                           total_bytes: int, chunk_bytes: bytes,
                           password: Optional[str] = None,
                           total_chunks: Optional[int] = None,
                           checksum: Optional[str] = None) -> ChunkResult:
        """
        Store one indexed fragment; merge when every fragment is present.

        Returns:
            ChunkResult.MERGED for the request that produced the final file,
            ChunkResult.CHUNK_STORED otherwise
        """
        transfer_id = _validate_transfer_id(transfer_id)
        name = sanitize_file_name(file_name)
        if total_bytes is None or total_bytes <= 0:
            raise InvalidRequestError(f"Invalid totalBytes: {total_bytes}")
        if chunk_index is None or chunk_index < 0:
            raise InvalidRequestError(f"Invalid chunkIndex: {chunk_index}")
        if chunk_bytes is None:
            raise InvalidRequestError("Missing chunk body")
        if total_chunks is not None and total_chunks <= 0:
            raise InvalidRequestError(f"Invalid totalChunks: {total_chunks}")

        expected = total_chunks or expected_chunk_count(total_bytes, self.chunk_size)
        if chunk_index >= expected:
            raise InvalidRequestError(
                f"Chunk index {chunk_index} beyond expected count {expected}"
            )

        current = self.registry.snapshot(transfer_id)
        if current is not None and not current.state.is_terminal \
                and current.total_chunks and current.total_bytes != total_bytes:
            raise InvalidRequestError(
                f"totalBytes {total_bytes} does not match transfer ({current.total_bytes})"
            )

        snapshot = self.registry.begin_chunked(
            transfer_id, name, total_bytes, expected,
            checksum=checksum,
            encryption_enabled=password is not None,
            key_fingerprint=key_fingerprint(password) if password else None,
        )
        if self._finished(snapshot.state, transfer_id, chunk_index):
            return ChunkResult.CHUNK_STORED
        if chunk_index >= snapshot.total_chunks:
            raise InvalidRequestError(
                f"Chunk index {chunk_index} beyond expected count {snapshot.total_chunks}"
            )

        plain = chunk_bytes
        if password:
            try:
                plain = self.cipher.decrypt_buffer(chunk_bytes, password)
            except DecryptionError as e:
                logger.error(f"[AES] Chunk {chunk_index} decryption failed: {e}")
                self.registry.fail(transfer_id, f"AES decryption failed: {e}")
                raise

        lock = self._merge_locks.setdefault(transfer_id, asyncio.Lock())
        async with lock:
            state = self.registry.snapshot(transfer_id)
            if state is None or self._finished(state.state, transfer_id, chunk_index):
                return ChunkResult.CHUNK_STORED

            try:
                await self._store_chunk(transfer_id, chunk_index, plain)
            except OSError as e:
                self.registry.note_error(transfer_id, f"Chunk {chunk_index} write failed: {e}")
                raise StorageError(f"Could not store chunk {chunk_index}", e) from e

            newly = self.registry.mark_chunk(transfer_id, chunk_index)
            if not newly:
                logger.debug(f"[UploadChunk] Chunk {chunk_index} of {transfer_id} re-sent, overwritten")

            stored = self._stored_bytes(transfer_id)
            if stored >= total_bytes and self.registry.all_chunks_received(transfer_id):
                out_path = await self._merge(transfer_id, name, state.total_chunks)
                self.registry.complete(
                    transfer_id, str(out_path.resolve()),
                    bytes_written=min(stored, total_bytes),
                )
                self.registry.release_chunks(transfer_id)
                return ChunkResult.MERGED

            self.registry.progress(transfer_id, min(stored, total_bytes - 1))

        return ChunkResult.CHUNK_STORED

    def _finished(self, phase: TransferPhase, transfer_id: str, chunk_index: int) -> bool:
        if phase == TransferPhase.FAILED:
            raise TransferStateError(
                f"Transfer {transfer_id} has failed; reset it to upload again"
            )
        if phase == TransferPhase.COMPLETED:
            logger.info(f"[UploadChunk] Chunk {chunk_index} for already merged "
                        f"transfer {transfer_id} ignored")
            return True
        return False

    async def _store_chunk(self, transfer_id: str, chunk_index: int, data: bytes):
        """Write a fragment atomically (temp file, then rename over)."""
        chunk_path = self.chunk_path(transfer_id, chunk_index)
        await aiofiles.os.makedirs(chunk_path.parent, exist_ok=True)

        temp_path = chunk_path.with_suffix('.part')
        async with aiofiles.open(temp_path, 'wb') as f:
            await f.write(data)
        await aiofiles.os.replace(temp_path, chunk_path)

        logger.info(f"[UploadChunk] Stored chunk {chunk_index} ({len(data)} bytes)")

    def _stored_bytes(self, transfer_id: str) -> int:
        chunk_dir = self.chunk_dir(transfer_id)
        if not chunk_dir.exists():
            return 0
        return sum(p.stat().st_size for p in chunk_dir.glob('*.chunk'))

    async def _merge(self, transfer_id: str, file_name: str, total_chunks: int) -> Path:
        """Concatenate fragments in index order into received/<file_name>."""
        out_path = self.destination(file_name)
        chunk_dir = self.chunk_dir(transfer_id)
        temp_path = self.temp_dir / f"{chunk_dir.name}.merge"

        logger.info(f"[UploadChunk] All chunks received. Merging into {out_path}")

        try:
            async with aiofiles.open(temp_path, 'wb') as out:
                for index in range(total_chunks):
                    async with aiofiles.open(self.chunk_path(transfer_id, index), 'rb') as f:
                        while True:
                            data = await f.read(self.buffer_size)
                            if not data:
                                break
                            await out.write(data)
            await aiofiles.os.replace(temp_path, out_path)
        except OSError as e:
            self.registry.fail(transfer_id, f"Merge failed: {e}")
            raise StorageError(f"Merge failed for {transfer_id}", e) from e

        await self.discard_chunks(transfer_id)
        logger.info(f"[UploadChunk] Merge complete for {transfer_id}")
        return out_path

    async def discard_chunks(self, transfer_id: str):
        """Delete every temporary fragment of a transfer and drop its merge lock."""
        self._merge_locks.pop(transfer_id, None)
        chunk_dir = self.chunk_dir(transfer_id)
        if not chunk_dir.exists():
            return
        for path in chunk_dir.iterdir():
            try:
                await aiofiles.os.remove(path)
            except OSError as e:
                logger.warning(f"[UploadChunk] Failed to delete chunk {path}: {e}")
        try:
            await aiofiles.os.rmdir(chunk_dir)
        except OSError as e:
            logger.warning(f"[UploadChunk] Failed to remove {chunk_dir}: {e}")
