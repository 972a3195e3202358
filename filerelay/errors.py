"""
Transfer Errors

Every failure raised by the transfer engine carries a human-readable
message and, optionally, the underlying exception that caused it.

Taxonomy:
- InvalidRequestError: bad transfer id, file name, chunk index or size.
  Raised before any I/O happens.
- ChecksumMismatchError: integrity check still failing after retries.
- DecryptionError / WrongPasswordError: the payload cannot be decrypted.
  Never retried automatically.
- StorageError: disk or stream I/O failed.
- TransferStateError: operation not allowed in the current state.
"""

from typing import Optional


class TransferError(Exception):
    """Base class for all transfer engine failures."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class InvalidRequestError(TransferError):
    """Missing or invalid request field."""


class TransferNotFoundError(TransferError):
    """No transfer is registered under the given id."""


class TransferStateError(TransferError):
    """The transfer is in a state that does not allow the operation."""


class StorageError(TransferError):
    """Reading or writing transfer data failed."""


class IncompleteTransferError(TransferError):
    """The source stream ended before all declared bytes arrived."""


class ChecksumMismatchError(TransferError):
    """The content hash did not match after every allowed attempt."""

    def __init__(self, message: str, expected: str = "", actual: str = "",
                 attempts: int = 0):
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.attempts = attempts


class DecryptionError(TransferError):
    """Ciphertext is malformed (truncated, missing IV, bad length)."""


class WrongPasswordError(DecryptionError):
    """Decryption produced invalid padding, i.e. wrong password or IV."""


class TransferCancelledError(TransferError):
    """A retry loop was stopped through its cancel event."""
