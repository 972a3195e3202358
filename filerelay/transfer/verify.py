"""
Checksum verification with re-acquisition.

verify_with_retry() checks the artifact first. Each mismatch deletes the
corrupted file and calls reacquire() to fetch it again; after
max_attempts re-acquisitions that still do not match, the transfer has
failed for good.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

import aiofiles.os

from ..crypto.hashing import ContentHasher, checksums_match
from ..errors import ChecksumMismatchError, StorageError
from .retry import check_cancelled, sleep_or_cancel

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


async def _remove(path: Path):
    try:
        await aiofiles.os.remove(path)
        logger.info(f"[Checksum] Deleted corrupted file: {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        raise StorageError(f"Could not delete corrupted file {path}", e) from e


async def verify_with_retry(path: Union[str, Path],
                            expected_checksum: Optional[str],
                            reacquire: Callable[[], Awaitable[object]],
                            max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                            hasher: Optional[ContentHasher] = None,
                            delay: float = 0.0,
                            cancel_event: Optional[asyncio.Event] = None) -> str:
    """
    Verify path against expected_checksum, re-acquiring on mismatch.

    Args:
        path: Artifact to verify; reacquire() must recreate it here
        expected_checksum: Hex SHA-256; blank skips verification
        reacquire: Coroutine factory that re-runs the ingest
        max_attempts: Re-acquisitions allowed before giving up
        delay: Pause before each re-acquisition

    Returns:
        The actual digest ("" when verification was skipped)

    Raises:
        ChecksumMismatchError: Still mismatched after max_attempts re-acquisitions
    """
    path = Path(path)
    if not expected_checksum or not expected_checksum.strip():
        logger.info(f"[Checksum] No checksum provided for {path.name}; skipping verification")
        return ""

    hasher = hasher or ContentHasher()
    reacquired = 0

    while True:
        actual = await hasher.digest_file(path) if path.exists() else ""
        if checksums_match(expected_checksum, actual):
            logger.info(f"[Checksum] Verified {path.name} after {reacquired} re-acquisitions")
            return actual

        logger.warning(f"[Checksum] Mismatch for {path.name}: expected={expected_checksum} "
                       f"actual={actual or '<missing>'}")
        await _remove(path)

        if reacquired >= max_attempts:
            raise ChecksumMismatchError(
                f"Checksum verification failed for {path.name} after "
                f"{reacquired} re-acquisitions",
                expected=expected_checksum, actual=actual, attempts=reacquired,
            )

        await sleep_or_cancel(delay, cancel_event)
        check_cancelled(cancel_event, f"Verification of {path.name}")
        reacquired += 1
        logger.info(f"[Checksum] Re-acquiring {path.name} ({reacquired}/{max_attempts})")
        await reacquire()
