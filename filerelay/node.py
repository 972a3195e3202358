"""
Transfer Node - Main Controller

This is the receiving side that ties the engine components together:
- StatusRegistry for live progress
- ChunkIngestEngine for uploads (stream and chunk mode)
- RangeServingEngine for resumable downloads
- Receiver-side checksum verification
- SQLite audit log of terminal transitions
"""

import logging
import platform
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple

from .config import Config
from .crypto.hashing import ContentHasher
from .errors import ChecksumMismatchError, TransferNotFoundError
from .storage import Database, init_database
from .transfer.ingest import ChunkIngestEngine, ChunkResult, sanitize_file_name
from .transfer.serving import RangeServingEngine, ServePlan
from .transfer.state import StatusRegistry, TransferSnapshot
from .transfer.verify import verify_with_retry

logger = logging.getLogger(__name__)

__version__ = "1.0.0"


class TransferNode:
    """
    A complete receiving node.

    Combines all components into a unified interface:
    - receive_stream() / receive_chunk(): ingest uploads
    - open_download() / iter_download(): serve stored files
    - status() / reset() / history(): inspect and manage transfers
    """

    def __init__(self, config: Config = None, registry: StatusRegistry = None):
        """
        Initialize a transfer node.

        Args:
            config: Node configuration (uses defaults if not provided)
            registry: Shared registry (a fresh one if not provided)
        """
        self.config = config or Config()

        # Create data directories
        self.data_dir = Path(self.config.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        # Initialize components
        self.registry = registry or StatusRegistry()
        self.hasher = ContentHasher()
        self.ingest = ChunkIngestEngine(
            self.registry,
            received_dir=self.config.received_dir,
            temp_dir=self.config.temp_dir,
            chunk_size=self.config.chunk_size,
            buffer_size=self.config.buffer_size,
        )
        self.serving = RangeServingEngine(self.registry, buffer_size=self.config.buffer_size)
        self.db: Optional[Database] = None

        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def received_dir(self) -> Path:
        return self.ingest.received_dir

    async def start(self):
        """Open the audit database and accept transfers."""
        if self._running:
            return

        logger.info("Starting transfer node...")
        self.db = await init_database(self.data_dir)
        self._running = True

        logger.info("Transfer node started successfully")
        logger.info(f"  Received Dir: {self.config.received_dir}")
        logger.info(f"  Chunk Size: {self.config.chunk_size:,} bytes")
        logger.info(f"  Checksum Verification: {self.config.checksum_enabled}")

    async def stop(self):
        """Stop the node."""
        if not self._running:
            return

        logger.info("Stopping transfer node...")
        self._running = False

        if self.db:
            await self.db.close()
            self.db = None

        logger.info("Transfer node stopped")

    # === Uploads ===

    async def receive_stream(self, transfer_id: str, file_name: str, total_bytes: int,
                             source: AsyncIterable[bytes],
                             password: Optional[str] = None,
                             checksum: Optional[str] = None,
                             client_offset: Optional[int] = None) -> TransferSnapshot:
        """Ingest a stream-mode upload, then verify it."""
        try:
            path = await self.ingest.ingest_stream(
                transfer_id, file_name, total_bytes, source,
                password=password, checksum=checksum, client_offset=client_offset,
            )
            await self._verify_received(transfer_id, path, checksum)
        finally:
            await self._record(transfer_id)
        return self.registry.snapshot(transfer_id)

    async def receive_chunk(self, transfer_id: str, file_name: str, chunk_index: int,
                            total_bytes: int, chunk_bytes: bytes,
                            password: Optional[str] = None,
                            total_chunks: Optional[int] = None,
                            checksum: Optional[str] = None) -> Tuple[ChunkResult, TransferSnapshot]:
        """Ingest one chunk; verify the merged file when it is the last one."""
        result = ChunkResult.CHUNK_STORED
        try:
            result = await self.ingest.ingest_chunk(
                transfer_id, file_name, chunk_index, total_bytes, chunk_bytes,
                password=password, total_chunks=total_chunks, checksum=checksum,
            )
            if result == ChunkResult.MERGED:
                await self._verify_received(
                    transfer_id, self.ingest.destination(file_name), checksum,
                )
        finally:
            if result == ChunkResult.MERGED or self._is_terminal(transfer_id):
                await self._record(transfer_id)
        return result, self.registry.snapshot(transfer_id)

    async def _verify_received(self, transfer_id: str, path: Path, checksum: Optional[str]):
        """
        Check a completed upload once.

        The sender owns re-acquisition: on mismatch the artifact is deleted,
        the error is recorded (the transfer stays COMPLETED) and the 409
        makes the sender reset to a fresh id and re-send.
        """
        if not self.config.checksum_enabled:
            return

        async def no_reacquire():
            return None

        try:
            await verify_with_retry(path, checksum, reacquire=no_reacquire,
                                    max_attempts=0, hasher=self.hasher)
        except ChecksumMismatchError as e:
            self.registry.note_error(transfer_id, f"Checksum mismatch: expected {e.expected}, "
                                                  f"got {e.actual or '<missing>'}")
            raise

    # === Downloads ===

    async def open_download(self, name: str, transfer_id: Optional[str] = None,
                            range_header: Optional[str] = None) -> Tuple[ServePlan, Optional[str]]:
        """
        Resolve a stored file for download.

        Returns:
            (plan, SHA-256 of the whole file or None if checksums are disabled)
        """
        path = self.received_dir / sanitize_file_name(name)
        if not path.is_file():
            raise TransferNotFoundError(f"File not found: {name}")

        checksum = None
        if self.config.checksum_enabled:
            checksum = await self.hasher.digest_file(path)

        plan = self.serving.prepare(transfer_id, path, range_header, checksum=checksum)
        return plan, checksum

    async def iter_download(self, plan: ServePlan) -> AsyncIterator[bytes]:
        """Stream a prepared download; audits the outcome."""
        blocks = self.serving.iter_plan(plan)
        try:
            async for block in blocks:
                yield block
        finally:
            await blocks.aclose()
            await self._record(plan.transfer_id)

    # === Status ===

    def status(self, transfer_id: Optional[str] = None) -> TransferSnapshot:
        """Snapshot of one transfer (default: the most recent)."""
        snapshot = self.registry.snapshot(transfer_id)
        if snapshot is None:
            raise TransferNotFoundError(f"Unknown transfer: {transfer_id or '<latest>'}")
        return snapshot

    async def reset(self, transfer_id: str) -> str:
        """Discard a transfer and its fragments; returns a fresh id."""
        new_id = self.registry.reset(transfer_id)
        await self.ingest.discard_chunks(transfer_id)
        return new_id

    async def history(self, limit: int = 50, state: Optional[str] = None) -> List[Dict]:
        """Audit rows, most recent first (empty if the node is not started)."""
        if not self.db:
            return []
        return await self.db.list_transfers(limit=limit, state=state)

    def info(self) -> Dict:
        """Node info returned by the handshake endpoint."""
        return {
            'status': 'running' if self._running else 'stopped',
            'name': platform.node(),
            'version': __version__,
            'protocol': self.config.transfer_mode.value,
            'chunkSize': self.config.chunk_size,
            'checksumEnabled': self.config.checksum_enabled,
            'activeTransfers': len(self.registry),
        }

    # === Internals ===

    def _is_terminal(self, transfer_id: str) -> bool:
        if not transfer_id:
            return False
        snapshot = self.registry.snapshot(transfer_id)
        return snapshot is not None and snapshot.state.is_terminal

    async def _record(self, transfer_id: str):
        """Persist the current snapshot to the audit log."""
        if not self.db or not transfer_id:
            return
        snapshot = self.registry.snapshot(transfer_id)
        if snapshot is None or not snapshot.state.is_terminal:
            return
        try:
            await self.db.record_transfer(snapshot)
        except Exception as e:
            # The audit log never decides the outcome of a transfer
            logger.error(f"Failed to record transfer {transfer_id}: {e}", exc_info=True)
