"""
Stream Cipher

Design Decision: Encryption Format
==================================

Options Considered:
1. AES-GCM over the whole file
   - Authenticated, but needs the whole payload before verifying
   - Cannot decrypt a partially received stream

2. AES-CBC with PKCS#7 padding, IV prefix
   - Streams block by block, partial output is usable plaintext
   - Compatible with existing senders

3. Per-record AEAD framing
   - Best security, new wire format

Decision: AES-256-CBC, PKCS#7 padding, 16 random IV bytes first
- Every protected unit starts with its own IV
- Stream mode: one unit per upload attempt (single IV at byte 0)
- Chunk mode: one unit per chunk, so chunks decrypt independently and
  may arrive in any order

Key Derivation
==============
derive_key() repeats the UTF-8 password bytes cyclically until 32 bytes.
This is NOT a real KDF: no salt, no work factor. It is kept only for
compatibility with ciphertext produced by existing peers. Hardening it
(e.g. PBKDF2/scrypt) changes the wire format and must be negotiated.

Wire Format:
```
+----------------+---------------------------------+
| IV (16 bytes)  | AES-256-CBC ciphertext (padded) |
+----------------+---------------------------------+
```
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional, Union

import aiofiles
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import DecryptionError, InvalidRequestError, WrongPasswordError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
KEY_LENGTH = 32
BLOCK_BITS = 128
BLOCK_BYTES = BLOCK_BITS // 8

# Streaming buffer: 8KB
CIPHER_BUFFER_SIZE = 8 * 1024


def derive_key(password: str) -> bytearray:
    """
    Stretch or truncate a password to a 32-byte AES key.

    Deterministic and length independent: the same password always
    yields the same key. Caller should wipe() the result after use.
    """
    if password is None or password == "":
        raise InvalidRequestError("Encryption password must not be empty")

    pwd = bytearray(password.encode('utf-8'))
    key = bytearray(KEY_LENGTH)
    for i in range(KEY_LENGTH):
        key[i] = pwd[i % len(pwd)]
    wipe(pwd)
    return key


def key_fingerprint(password: str) -> str:
    """Short identifier of the derived key, safe to log and store."""
    key = derive_key(password)
    try:
        return hashlib.sha256(key).hexdigest()[:16]
    finally:
        wipe(key)


def wipe(buffer: Optional[bytearray]):
    """Overwrite a sensitive buffer with zeros."""
    if buffer is None:
        return
    for i in range(len(buffer)):
        buffer[i] = 0


def _aes_cbc(key: Union[bytes, bytearray], iv: bytes) -> Cipher:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"AES key must be {KEY_LENGTH} bytes, got {len(key)}")
    return Cipher(algorithms.AES(bytes(key)), modes.CBC(iv))


class StreamEncryptor:
    """
    Incremental encryptor for one protected unit.

    The first output emitted (from update() or finalize()) is prefixed
    with the IV. finalize() flushes the last padded block.
    """

    def __init__(self, key: Union[bytes, bytearray], iv: Optional[bytes] = None):
        self.iv = iv if iv is not None else os.urandom(IV_LENGTH)
        if len(self.iv) != IV_LENGTH:
            raise ValueError(f"IV must be {IV_LENGTH} bytes")
        self._encryptor = _aes_cbc(key, self.iv).encryptor()
        self._padder = padding.PKCS7(BLOCK_BITS).padder()
        self._header_sent = False

    def _with_header(self, data: bytes) -> bytes:
        if self._header_sent:
            return data
        self._header_sent = True
        return self.iv + data

    def update(self, data: bytes) -> bytes:
        return self._with_header(self._encryptor.update(self._padder.update(data)))

    def finalize(self) -> bytes:
        tail = self._encryptor.update(self._padder.finalize())
        tail += self._encryptor.finalize()
        return self._with_header(tail)


class StreamDecryptor:
    """
    Incremental decryptor for one protected unit.

    The IV is consumed exactly once, from the first 16 bytes fed in,
    no matter how the input is split across update() calls.
    """

    def __init__(self, key: Union[bytes, bytearray]):
        self._key = bytes(key)
        self._iv = bytearray()
        self._decryptor = None
        self._unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        self._ciphertext_bytes = 0

    @property
    def iv_consumed(self) -> bool:
        return self._decryptor is not None

    def update(self, data: bytes) -> bytes:
        if self._decryptor is None:
            need = IV_LENGTH - len(self._iv)
            self._iv += data[:need]
            data = data[need:]
            if len(self._iv) < IV_LENGTH:
                return b''
            self._decryptor = _aes_cbc(self._key, bytes(self._iv)).decryptor()

        if not data:
            return b''
        self._ciphertext_bytes += len(data)
        return self._unpadder.update(self._decryptor.update(data))

    def finalize(self) -> bytes:
        if self._decryptor is None:
            raise DecryptionError("Missing IV in encrypted stream")
        if self._ciphertext_bytes == 0 or self._ciphertext_bytes % BLOCK_BYTES:
            raise DecryptionError(
                f"Encrypted stream truncated ({self._ciphertext_bytes} ciphertext bytes)"
            )
        tail = self._decryptor.finalize()
        try:
            return self._unpadder.update(tail) + self._unpadder.finalize()
        except ValueError as e:
            logger.warning("[AES] Wrong password or invalid IV")
            raise WrongPasswordError("Wrong password", e) from e


class StreamCipher:
    """
    Password-based AES-256-CBC for byte streams and single buffers.

    Stream methods take an already derived key; buffer methods take the
    password and derive (then wipe) their own key on each call.
    """

    def __init__(self, buffer_size: int = CIPHER_BUFFER_SIZE):
        self.buffer_size = buffer_size

    derive_key = staticmethod(derive_key)

    # === Streams ===

    def encrypt_stream(self, source: BinaryIO, sink: BinaryIO,
                       key: Union[bytes, bytearray]) -> int:
        """
        Encrypt everything readable from source into sink.

        Returns:
            Number of bytes written to sink (IV included)
        """
        encryptor = StreamEncryptor(key)
        written = 0
        while True:
            data = source.read(self.buffer_size)
            if not data:
                break
            out = encryptor.update(data)
            sink.write(out)
            written += len(out)
        out = encryptor.finalize()
        sink.write(out)
        sink.flush()
        return written + len(out)

    def decrypt_stream(self, source: BinaryIO, sink: BinaryIO,
                       key: Union[bytes, bytearray]) -> int:
        """
        Decrypt an IV-prefixed stream from source into sink.

        Returns:
            Number of plaintext bytes written
        """
        decryptor = StreamDecryptor(key)
        written = 0
        while True:
            data = source.read(self.buffer_size)
            if not data:
                break
            out = decryptor.update(data)
            sink.write(out)
            written += len(out)
        out = decryptor.finalize()
        sink.write(out)
        sink.flush()
        return written + len(out)

    # === Buffers ===

    def encrypt_buffer(self, data: bytes, password: str) -> bytes:
        """Encrypt one buffer with its own IV; result depends on nothing else."""
        key = derive_key(password)
        try:
            encryptor = StreamEncryptor(key)
            return encryptor.update(data) + encryptor.finalize()
        finally:
            wipe(key)

    def decrypt_buffer(self, data: bytes, password: str) -> bytes:
        """Decrypt one buffer produced by encrypt_buffer()."""
        if data is None or len(data) < IV_LENGTH + BLOCK_BYTES:
            raise DecryptionError("Encrypted payload too small")
        key = derive_key(password)
        try:
            decryptor = StreamDecryptor(key)
            return decryptor.update(data) + decryptor.finalize()
        finally:
            wipe(key)

    # === Files ===

    async def encrypt_file(self, input_path: Path, output_path: Path,
                           password: str) -> Path:
        """Encrypt a file on disk into a single IV-prefixed unit."""
        key = derive_key(password)
        try:
            encryptor = StreamEncryptor(key)
            async with aiofiles.open(input_path, 'rb') as src, \
                    aiofiles.open(output_path, 'wb') as dst:
                while True:
                    data = await src.read(self.buffer_size)
                    if not data:
                        break
                    await dst.write(encryptor.update(data))
                await dst.write(encryptor.finalize())
        finally:
            wipe(key)

        logger.info(f"[AES] File encrypted -> {output_path}")
        return Path(output_path)

    async def decrypt_file(self, input_path: Path, output_path: Path,
                           password: str) -> Path:
        """Decrypt a file produced by encrypt_file()."""
        key = derive_key(password)
        try:
            decryptor = StreamDecryptor(key)
            async with aiofiles.open(input_path, 'rb') as src, \
                    aiofiles.open(output_path, 'wb') as dst:
                while True:
                    data = await src.read(self.buffer_size)
                    if not data:
                        break
                    await dst.write(decryptor.update(data))
                await dst.write(decryptor.finalize())
        finally:
            wipe(key)

        logger.info(f"[AES] File decrypted -> {output_path}")
        return Path(output_path)
