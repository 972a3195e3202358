"""
Retry helpers with doubling backoff.

Loops check an optional asyncio.Event between attempts so a caller can
cancel a transfer that is sleeping before its next try.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..errors import (
    DecryptionError, InvalidRequestError, TransferCancelledError, TransferError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Failures that cannot succeed on a second try with the same inputs
NON_RETRYABLE: Tuple[Type[BaseException], ...] = (DecryptionError, InvalidRequestError)


def check_cancelled(cancel_event: Optional[asyncio.Event], what: str = "Transfer"):
    if cancel_event is not None and cancel_event.is_set():
        raise TransferCancelledError(f"{what} cancelled")


async def sleep_or_cancel(delay: float, cancel_event: Optional[asyncio.Event]):
    """Sleep for delay seconds, waking early (and raising) if cancelled."""
    if delay <= 0:
        check_cancelled(cancel_event)
        return
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    check_cancelled(cancel_event)


async def retry_async(operation: Callable[[], Awaitable[T]],
                      max_attempts: int = 3,
                      delay: float = 2.0,
                      backoff: float = 2.0,
                      cancel_event: Optional[asyncio.Event] = None,
                      retry_on: Tuple[Type[BaseException], ...] = (TransferError, OSError),
                      give_up_on: Tuple[Type[BaseException], ...] = (),
                      description: str = "operation") -> T:
    """
    Run operation until it succeeds or max_attempts is reached.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total tries (at least 1)
        delay: Sleep before the second try; multiplied by backoff after each failure
        cancel_event: Checked before every try and while sleeping
        retry_on: Exception types worth retrying; NON_RETRYABLE always propagates
        give_up_on: Further types the caller handles itself (propagate at once)

    Returns:
        Result of the first successful call

    Raises:
        The last failure once attempts are exhausted
        TransferCancelledError: cancel_event was set
    """
    attempts = max(1, max_attempts)
    wait = delay
    propagate = NON_RETRYABLE + (TransferCancelledError,) + tuple(give_up_on)

    for attempt in range(1, attempts + 1):
        check_cancelled(cancel_event, description)
        try:
            return await operation()
        except propagate:
            raise
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{description} attempt {attempt}/{attempts} failed: {e}; "
                           f"retrying in {wait:.1f}s")
            await sleep_or_cancel(wait, cancel_event)
            wait *= backoff

    raise TransferError(f"{description} did not run")
