"""
Sender and Receiver Orchestration

Sender Flow:
1. Handshake with the receiver
2. Prepare the file (optional zip / seal) and hash it
3. Generate a transfer id from name + checksum
4. Upload with retry; a retried upload resumes from the receiver's offset
5. Confirm the receiver reports COMPLETED with the same checksum
6. If the receiver rejects the checksum, reset the id and upload again

Receiver Flow:
1. Handshake with the sender's node
2. Ranged download (resumes a partial local copy)
3. Verify against the expected checksum, re-downloading on mismatch
4. Optionally decrypt a sealed artifact
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ..crypto.cipher import StreamCipher
from ..crypto.hashing import ContentHasher, checksums_match
from ..errors import (
    ChecksumMismatchError, TransferError, TransferNotFoundError, TransferStateError,
)
from ..file.prepare import PreparedFile, prepare_outgoing
from .methods import TransferMethod
from .retry import retry_async
from .state import TransferPhase, generate_transfer_id
from .verify import verify_with_retry

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Outcome of a successful send."""
    transfer_id: str
    file_name: str
    checksum: str
    size: int
    checksum_attempts: int
    status: Dict


@dataclass
class ReceiveResult:
    """Outcome of a successful receive."""
    path: Path
    checksum: str
    decrypted_path: Optional[Path] = None


class SenderOrchestrator:
    """Drives one upload end to end over a TransferMethod."""

    def __init__(self, method: TransferMethod, outgoing_dir: Path,
                 retry_max_attempts: int = 3, retry_delay: float = 2.0,
                 checksum_max_attempts: int = 3,
                 cancel_event: Optional[asyncio.Event] = None):
        self.method = method
        self.outgoing_dir = Path(outgoing_dir)
        self.retry_max_attempts = retry_max_attempts
        self.retry_delay = retry_delay
        self.checksum_max_attempts = checksum_max_attempts
        self.cancel_event = cancel_event or asyncio.Event()

    @classmethod
    def from_config(cls, method: TransferMethod, config,
                    cancel_event: Optional[asyncio.Event] = None) -> 'SenderOrchestrator':
        """Build from a filerelay.config.Config."""
        return cls(
            method, config.outgoing_dir,
            retry_max_attempts=config.retry_max_attempts,
            retry_delay=config.retry_delay,
            checksum_max_attempts=config.checksum_max_attempts,
            cancel_event=cancel_event,
        )

    def cancel(self):
        """Stop retrying after the current attempt."""
        self.cancel_event.set()

    async def send(self, path: Path, chunked: bool = False,
                   password: Optional[str] = None, compress: bool = False,
                   seal: bool = False) -> SendResult:
        """
        Upload a file and wait for the receiver to confirm it.

        Args:
            path: File to send
            chunked: Send independent chunks instead of one stream
            password: AES password; encrypts on the wire, or at rest if seal
            compress: Zip the file first
            seal: Store the file encrypted at the receiver

        Raises:
            ChecksumMismatchError: receiver kept rejecting the content
            TransferError: upload failed after every retry
        """
        info = await self.method.handshake()
        logger.info(f"[Sender] Receiver ready: {info.get('name', 'unknown')}")

        prepared = await prepare_outgoing(
            path, self.outgoing_dir, compress=compress,
            seal_password=password if seal else None,
        )
        wire_password = None if seal else password

        if chunked and prepared.size == 0:
            logger.info(f"[Sender] {prepared.name} is empty; sending as a stream")
            chunked = False

        transfer_id = generate_transfer_id(prepared.name, prepared.checksum)
        checksum_failures = 0

        while True:
            try:
                status = await self._upload(prepared, transfer_id, wire_password, chunked)
                logger.info(f"[Sender] {prepared.name} delivered as {transfer_id}")
                return SendResult(
                    transfer_id=transfer_id,
                    file_name=prepared.name,
                    checksum=prepared.checksum,
                    size=prepared.size,
                    checksum_attempts=checksum_failures + 1,
                    status=status,
                )
            except ChecksumMismatchError as e:
                checksum_failures += 1
                if checksum_failures > self.checksum_max_attempts:
                    logger.error(f"[Sender] Giving up on {prepared.name}: {e}")
                    raise ChecksumMismatchError(
                        f"Receiver rejected {prepared.name} {checksum_failures} times",
                        expected=prepared.checksum, attempts=checksum_failures,
                    ) from e
                logger.warning(f"[Sender] Checksum rejected ({checksum_failures}/"
                               f"{self.checksum_max_attempts}); re-sending {prepared.name}")
                transfer_id = await self.method.reset(transfer_id)

    async def _upload(self, prepared: PreparedFile, transfer_id: str,
                      password: Optional[str], chunked: bool) -> Dict:
        await retry_async(
            lambda: self.method.send(prepared.path, transfer_id, checksum=prepared.checksum,
                                     password=password, chunked=chunked),
            max_attempts=self.retry_max_attempts,
            delay=self.retry_delay,
            cancel_event=self.cancel_event,
            give_up_on=(ChecksumMismatchError, TransferStateError),
            description=f"Upload of {prepared.name}",
        )
        return await self._confirm(prepared, transfer_id)

    async def _confirm(self, prepared: PreparedFile, transfer_id: str) -> Dict:
        status = await self.method.status(transfer_id)
        if status is None:
            raise TransferError(f"Receiver has no record of {transfer_id}")

        state = status.get('state')
        if state != TransferPhase.COMPLETED.value:
            raise TransferStateError(
                f"Receiver reports {transfer_id} as {state}: {status.get('error') or ''}"
            )

        remote = status.get('checksum')
        if remote and not checksums_match(remote, prepared.checksum):
            raise ChecksumMismatchError(
                f"Receiver recorded checksum {remote}", expected=prepared.checksum, actual=remote,
            )
        return status


class ReceiverOrchestrator:
    """Downloads a file from a node and checks its integrity."""

    def __init__(self, method: TransferMethod,
                 retry_max_attempts: int = 3, retry_delay: float = 2.0,
                 checksum_max_attempts: int = 3,
                 cancel_event: Optional[asyncio.Event] = None,
                 hasher: Optional[ContentHasher] = None,
                 cipher: Optional[StreamCipher] = None):
        self.method = method
        self.retry_max_attempts = retry_max_attempts
        self.retry_delay = retry_delay
        self.checksum_max_attempts = checksum_max_attempts
        self.cancel_event = cancel_event or asyncio.Event()
        self.hasher = hasher or ContentHasher()
        self.cipher = cipher or StreamCipher()

    @classmethod
    def from_config(cls, method: TransferMethod, config,
                    cancel_event: Optional[asyncio.Event] = None) -> 'ReceiverOrchestrator':
        """Build from a filerelay.config.Config."""
        return cls(
            method,
            retry_max_attempts=config.retry_max_attempts,
            retry_delay=config.retry_delay,
            checksum_max_attempts=config.checksum_max_attempts,
            cancel_event=cancel_event,
        )

    def cancel(self):
        self.cancel_event.set()

    async def receive(self, name: str, dest_dir: Path,
                      expected_checksum: Optional[str] = None,
                      password: Optional[str] = None) -> ReceiveResult:
        """
        Download name into dest_dir and verify it.

        Args:
            name: File name on the remote node
            dest_dir: Local directory
            expected_checksum: Known SHA-256; defaults to the one the node advertises
            password: Decrypt a sealed artifact after verification

        Raises:
            ChecksumMismatchError: still corrupt after every re-download
        """
        await self.method.handshake()
        dest_dir = Path(dest_dir)

        async def fetch():
            return await retry_async(
                lambda: self.method.receive(name, dest_dir),
                max_attempts=self.retry_max_attempts,
                delay=self.retry_delay,
                cancel_event=self.cancel_event,
                give_up_on=(TransferNotFoundError,),
                description=f"Download of {name}",
            )

        path, advertised = await fetch()

        expected = expected_checksum or advertised
        if expected_checksum and advertised and not checksums_match(expected_checksum, advertised):
            logger.warning(f"[Receiver] Node advertises {advertised} for {name}, "
                           f"expected {expected_checksum}")

        actual = await verify_with_retry(
            path, expected, reacquire=fetch,
            max_attempts=self.checksum_max_attempts,
            hasher=self.hasher,
            delay=self.retry_delay,
            cancel_event=self.cancel_event,
        )
        if not actual:
            actual = await self.hasher.digest_file(path)

        decrypted = None
        if password:
            target = path.with_suffix('') if path.suffix == '.enc' else \
                path.with_name(path.name + '.dec')
            decrypted = await self.cipher.decrypt_file(path, target, password)

        return ReceiveResult(path=path, checksum=actual, decrypted_path=decrypted)
