"""
Transfer State and Status Registry

Design Decision: Shared Progress State
======================================

Options Considered:
1. One process-wide "current transfer" (static fields)
   - Simple, but only one transfer can be tracked at a time

2. Registry object owning a map of transfer id -> TransferState
   - Injected into the ingest/serve/status components
   - Any number of concurrent transfers

Decision: Registry with one coarse lock
- Every mutator and snapshot() run inside the same critical section,
  so a reader never sees bytes updated without the matching state flip
- The lock is a threading.Lock held only around in-memory field updates,
  never across file I/O or an await
- Snapshots are frozen dataclasses: polling clients get a stable view

State Machine:
```
PENDING --> IN_PROGRESS --+--> COMPLETED
                          +--> FAILED
```
COMPLETED and FAILED are terminal. The only way out is reset(), which
discards the state and hands back a fresh transfer id.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..errors import InvalidRequestError, TransferNotFoundError

logger = logging.getLogger(__name__)

# Below this throughput (bytes/s) no ETA is reported
MIN_ETA_SPEED = 1.0


class TransferPhase(str, Enum):
    """Lifecycle state of one transfer."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferPhase.COMPLETED, TransferPhase.FAILED)


def generate_transfer_id(file_name: str, checksum: Optional[str] = None) -> str:
    """
    Build a transfer id unique per attempt.

    Format: <file name>-<first 8 hex of checksum>-<monotonic ns>
    """
    prefix = checksum.strip().lower()[:8] if checksum and checksum.strip() else "nochecks"
    return f"{file_name}-{prefix}-{time.monotonic_ns()}"


@dataclass
class TransferState:
    """Authoritative in-memory record of one transfer."""
    transfer_id: str
    file_name: str
    total_bytes: int = -1
    expected_checksum: Optional[str] = None
    bytes_written: int = 0
    resume_offset: int = 0
    chunk_bitmap: Optional[List[bool]] = None
    final_output_path: Optional[str] = None
    encryption_enabled: bool = False
    key_fingerprint: Optional[str] = None
    state: TransferPhase = TransferPhase.PENDING
    error: Optional[str] = None
    protocol: str = "HTTP"
    started_at: float = 0.0
    last_updated: datetime = field(default_factory=datetime.now)

    @property
    def total_chunks(self) -> int:
        return len(self.chunk_bitmap) if self.chunk_bitmap is not None else 0

    @property
    def completed_chunks(self) -> int:
        if self.chunk_bitmap is None:
            return 0
        return sum(1 for received in self.chunk_bitmap if received)

    @property
    def missing_chunks(self) -> List[int]:
        if self.chunk_bitmap is None:
            return []
        return [i for i, received in enumerate(self.chunk_bitmap) if not received]

    def all_chunks_received(self) -> bool:
        return bool(self.chunk_bitmap) and all(self.chunk_bitmap)

    def touch(self):
        self.last_updated = datetime.now()


@dataclass(frozen=True)
class TransferSnapshot:
    """Immutable point-in-time view returned to polling clients."""
    transfer_id: str
    file_name: str
    bytes_written: int
    total_bytes: int
    percent: float
    speed: float
    eta_seconds: int
    state: TransferPhase
    resume_offset: int
    checksum: str
    error: str
    protocol: str
    file_path: str
    encryption_enabled: bool
    key_fingerprint: str
    total_chunks: int
    completed_chunks: int
    missing_chunks: tuple
    last_updated: str

    @property
    def resumable(self) -> bool:
        if self.state.is_terminal or self.total_bytes <= 0:
            return False
        return self.resume_offset > 0 or self.bytes_written > 0

    def to_dict(self) -> dict:
        """Flat record for the /status endpoint."""
        return {
            'transferId': self.transfer_id,
            'fileName': self.file_name,
            'protocol': self.protocol,
            'totalBytes': self.total_bytes,
            'bytesWritten': self.bytes_written,
            'progressPercent': round(self.percent, 2),
            'resumeOffset': self.resume_offset,
            'state': self.state.value,
            'error': self.error,
            'checksum': self.checksum,
            'aesEnabled': self.encryption_enabled,
            'keyFingerprint': self.key_fingerprint,
            'filePath': self.file_path,
            'speedBytesPerSecond': round(self.speed, 2),
            'estimatedEtaSeconds': self.eta_seconds,
            'totalChunks': self.total_chunks,
            'completedChunks': self.completed_chunks,
            'missingChunks': list(self.missing_chunks),
            'resumable': self.resumable,
            'lastUpdated': self.last_updated,
        }


class StatusRegistry:
    """
    Single-writer/multi-reader record of every live transfer.

    All mutators and snapshot() share one lock. Progress updates only move
    byte counters forward (fail() may roll them back to the durable size),
    and reaching total_bytes flips the state to COMPLETED inside the same
    critical section.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._transfers: Dict[str, TransferState] = {}
        self._latest_id: Optional[str] = None

    # === Lifecycle ===

    def begin(self, transfer_id: str, file_name: str, total_bytes: int,
              checksum: Optional[str] = None, encryption_enabled: bool = False,
              key_fingerprint: Optional[str] = None,
              protocol: str = "HTTP") -> TransferSnapshot:
        """
        Start (or restart) a transfer. Destructive: every field is reset.
        """
        with self._lock:
            state = TransferState(
                transfer_id=transfer_id,
                file_name=file_name,
                total_bytes=total_bytes,
                expected_checksum=checksum or None,
                encryption_enabled=encryption_enabled,
                key_fingerprint=key_fingerprint,
                state=TransferPhase.IN_PROGRESS,
                protocol=protocol,
                started_at=self._clock(),
            )
            self._transfers[transfer_id] = state
            self._latest_id = transfer_id
            logger.info(f"[Status] Begin transfer: {transfer_id} ({file_name}), "
                        f"totalBytes={total_bytes}")
            return self._snapshot(state)

    def begin_chunked(self, transfer_id: str, file_name: str, total_bytes: int,
                      total_chunks: int, checksum: Optional[str] = None,
                      encryption_enabled: bool = False,
                      key_fingerprint: Optional[str] = None) -> TransferSnapshot:
        """
        Start a chunked transfer unless one is already live under this id.

        Re-sent or out-of-order chunks never wipe an existing bitmap.
        """
        with self._lock:
            state = self._transfers.get(transfer_id)
            if state is not None and state.state != TransferPhase.PENDING:
                return self._snapshot(state)

            state = TransferState(
                transfer_id=transfer_id,
                file_name=file_name,
                total_bytes=total_bytes,
                expected_checksum=checksum or None,
                chunk_bitmap=[False] * total_chunks,
                encryption_enabled=encryption_enabled,
                key_fingerprint=key_fingerprint,
                state=TransferPhase.IN_PROGRESS,
                started_at=self._clock(),
            )
            self._transfers[transfer_id] = state
            self._latest_id = transfer_id
            logger.info(f"[Status] Begin chunked transfer: {transfer_id} ({file_name}), "
                        f"totalBytes={total_bytes}, chunks={total_chunks}")
            return self._snapshot(state)

    def reset(self, transfer_id: str) -> str:
        """
        Discard a transfer and register a fresh PENDING one for the same file.

        Returns:
            The new transfer id
        """
        with self._lock:
            old = self._transfers.pop(transfer_id, None)
            if old is None:
                raise TransferNotFoundError(f"Unknown transfer: {transfer_id}")

            new_id = generate_transfer_id(old.file_name, old.expected_checksum)
            self._transfers[new_id] = TransferState(
                transfer_id=new_id,
                file_name=old.file_name,
                total_bytes=old.total_bytes,
                expected_checksum=old.expected_checksum,
            )
            self._latest_id = new_id
            logger.info(f"[Status] Reset transfer {transfer_id} -> {new_id}")
            return new_id

    # === Metadata ===

    def set_resume_offset(self, transfer_id: str, offset: int):
        with self._lock:
            state = self._require(transfer_id)
            state.resume_offset = max(offset, 0)
            state.touch()

    def set_final_path(self, transfer_id: str, path: str):
        with self._lock:
            self._require(transfer_id).final_output_path = path

    # === Progress ===

    def progress(self, transfer_id: str, absolute_bytes_written: int):
        """Record the absolute byte count. Never moves the counter back."""
        with self._lock:
            state = self._require(transfer_id)
            if state.state.is_terminal:
                return
            if absolute_bytes_written > state.bytes_written:
                state.bytes_written = absolute_bytes_written
            self._advance(state)

    def add_bytes(self, transfer_id: str, delta: int):
        """Add to the byte counter. Negative deltas are ignored."""
        if delta < 0:
            return
        with self._lock:
            state = self._require(transfer_id)
            if state.state.is_terminal:
                return
            state.bytes_written += delta
            self._advance(state)

    def mark_chunk(self, transfer_id: str, chunk_index: int) -> bool:
        """
        Flag a chunk index as received.

        Returns:
            True if the index was newly marked, False if already set
        """
        with self._lock:
            state = self._require(transfer_id)
            bitmap = state.chunk_bitmap
            if bitmap is None or not 0 <= chunk_index < len(bitmap):
                raise InvalidRequestError(
                    f"Chunk index {chunk_index} outside bitmap of {state.total_chunks}"
                )
            if bitmap[chunk_index]:
                return False
            bitmap[chunk_index] = True
            state.touch()
            return True

    def all_chunks_received(self, transfer_id: str) -> bool:
        with self._lock:
            return self._require(transfer_id).all_chunks_received()

    def release_chunks(self, transfer_id: str):
        """Drop the chunk bitmap once fragments are merged."""
        with self._lock:
            state = self._transfers.get(transfer_id)
            if state is not None:
                state.chunk_bitmap = None

    # === Terminal transitions ===

    def complete(self, transfer_id: str, final_path: Optional[str] = None,
                 bytes_written: Optional[int] = None):
        """
        Mark COMPLETED. Calling again only updates the path.

        A FAILED transfer stays FAILED.
        """
        with self._lock:
            state = self._require(transfer_id)
            if state.state == TransferPhase.FAILED:
                logger.warning(f"[Status] Ignoring completion of failed transfer {transfer_id}")
                return
            if bytes_written is not None and bytes_written > state.bytes_written:
                state.bytes_written = bytes_written
            if final_path is not None:
                state.final_output_path = final_path
            if state.state != TransferPhase.COMPLETED:
                state.state = TransferPhase.COMPLETED
                logger.info(f"[Status] Transfer completed: {state.file_name}")
            state.touch()

    def fail(self, transfer_id: str, message: str, bytes_written: Optional[int] = None):
        """
        Mark FAILED with a message. Calling again only updates the message.

        A COMPLETED transfer stays COMPLETED; only the message is recorded.

        Args:
            transfer_id: Transfer to fail
            message: Error shown to polling clients
            bytes_written: Roll the byte counter back to what is still
                durable (used when an attempt's bytes were discarded)
        """
        with self._lock:
            state = self._require(transfer_id)
            state.error = message
            state.touch()
            if state.state == TransferPhase.COMPLETED:
                logger.warning(f"[Status] Transfer {transfer_id} already completed; "
                               f"recorded error: {message}")
                return
            if bytes_written is not None:
                state.bytes_written = max(bytes_written, 0)
            if state.state != TransferPhase.FAILED:
                state.state = TransferPhase.FAILED
                logger.error(f"[Status] Transfer failed: {transfer_id}: {message}")

    def note_error(self, transfer_id: str, message: str):
        """Record a recoverable error without leaving the current state."""
        with self._lock:
            state = self._transfers.get(transfer_id)
            if state is not None:
                state.error = message
                state.touch()

    # === Readers ===

    def snapshot(self, transfer_id: Optional[str] = None) -> Optional[TransferSnapshot]:
        """
        Immutable view of one transfer (default: the most recently begun).

        Returns:
            TransferSnapshot, or None if the id is unknown
        """
        with self._lock:
            key = transfer_id if transfer_id is not None else self._latest_id
            state = self._transfers.get(key) if key is not None else None
            return self._snapshot(state) if state is not None else None

    def get_bytes_written(self, transfer_id: str) -> int:
        with self._lock:
            state = self._transfers.get(transfer_id)
            return state.bytes_written if state is not None else 0

    def __contains__(self, transfer_id: str) -> bool:
        with self._lock:
            return transfer_id in self._transfers

    def __len__(self) -> int:
        with self._lock:
            return len(self._transfers)

    # === Internals (lock held) ===

    def _require(self, transfer_id: str) -> TransferState:
        state = self._transfers.get(transfer_id)
        if state is None:
            raise TransferNotFoundError(f"Unknown transfer: {transfer_id}")
        return state

    def _advance(self, state: TransferState):
        if state.state == TransferPhase.PENDING:
            state.state = TransferPhase.IN_PROGRESS
            state.started_at = self._clock()
        state.touch()
        if state.total_bytes > 0 and state.bytes_written >= state.total_bytes:
            state.state = TransferPhase.COMPLETED
            logger.info(f"[Status] {state.transfer_id} reached total bytes, marking COMPLETED")

    def _snapshot(self, state: TransferState) -> TransferSnapshot:
        total = state.total_bytes
        written = state.bytes_written

        percent = 0.0
        if total > 0:
            percent = min(written * 100.0 / total, 100.0)

        speed = 0.0
        if state.started_at > 0:
            elapsed = max(self._clock() - state.started_at, 1e-3)
            speed = written / elapsed

        remaining = total - written if 0 < total and written <= total else 0
        eta = int(math.ceil(remaining / speed)) if speed > MIN_ETA_SPEED and remaining > 0 else 0

        return TransferSnapshot(
            transfer_id=state.transfer_id,
            file_name=state.file_name,
            bytes_written=written,
            total_bytes=total,
            percent=percent,
            speed=speed,
            eta_seconds=eta,
            state=state.state,
            resume_offset=state.resume_offset,
            checksum=state.expected_checksum or "",
            error=state.error or "",
            protocol=state.protocol,
            file_path=state.final_output_path or "",
            encryption_enabled=state.encryption_enabled,
            key_fingerprint=state.key_fingerprint or "",
            total_chunks=state.total_chunks,
            completed_chunks=state.completed_chunks,
            missing_chunks=tuple(state.missing_chunks),
            last_updated=state.last_updated.isoformat(),
        )
