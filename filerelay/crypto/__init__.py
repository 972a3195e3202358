"""
Crypto Module - Content Hashing and Stream Encryption

Integrity (SHA-256) and optional confidentiality (AES-256-CBC) primitives
used by the transfer engine.
"""

from .hashing import ContentHasher, checksums_match, HASH_BUFFER_SIZE
from .cipher import (
    StreamCipher, StreamEncryptor, StreamDecryptor,
    derive_key, key_fingerprint, wipe, IV_LENGTH, KEY_LENGTH,
)

__all__ = [
    'ContentHasher',
    'checksums_match',
    'HASH_BUFFER_SIZE',
    'StreamCipher',
    'StreamEncryptor',
    'StreamDecryptor',
    'derive_key',
    'key_fingerprint',
    'wipe',
    'IV_LENGTH',
    'KEY_LENGTH',
]
