"""
HTTP Transfer Client

Sender/receiver side of the HTTP surface exposed by a transfer node.

Upload modes:
- upload_stream(): one request per attempt, body starts at the
  receiver's bytesWritten. With a password the remaining plaintext is
  encrypted as one ciphertext with a fresh IV at byte 0 of the attempt.
- upload_chunks(): one request per chunk, each chunk encrypted on its
  own. Chunks the receiver already holds are skipped.

Downloads resume with `Range: bytes=<local size>-`.

Error responses carry {"detail": {"error": <class name>, "message": ...}}
and are re-raised here as the matching TransferError subclass.
"""

import logging
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple

import aiofiles
import httpx

from .. import errors
from ..crypto.cipher import StreamCipher, StreamEncryptor, derive_key, wipe
from ..errors import TransferError
from ..file.chunker import CHUNK_SIZE, FileChunker

logger = logging.getLogger(__name__)

# Upload read block: 8KB
UPLOAD_BUFFER_SIZE = 8 * 1024

CHECKSUM_HEADER = 'X-File-Checksum-SHA256'

_ERRORS_BY_NAME = {
    cls.__name__: cls for cls in (
        errors.InvalidRequestError, errors.TransferNotFoundError,
        errors.TransferStateError, errors.StorageError,
        errors.IncompleteTransferError, errors.ChecksumMismatchError,
        errors.DecryptionError, errors.WrongPasswordError,
    )
}

_ERRORS_BY_STATUS = {
    400: errors.InvalidRequestError,
    404: errors.TransferNotFoundError,
    409: errors.TransferStateError,
}


def _raise_for_response(response: httpx.Response, action: str):
    """Turn an error response into the matching TransferError."""
    if response.status_code < 400:
        return

    error_name = None
    message = response.text
    try:
        detail = response.json().get('detail')
    except ValueError:
        detail = None
    if isinstance(detail, dict):
        error_name = detail.get('error')
        message = detail.get('message', message)
    elif isinstance(detail, str):
        message = detail

    cls = _ERRORS_BY_NAME.get(error_name) or _ERRORS_BY_STATUS.get(
        response.status_code, TransferError
    )
    raise cls(f"{action} failed (HTTP {response.status_code}): {message}")


class HttpTransferClient:
    """
    Async client for a remote transfer node.

    Usage:
        async with HttpTransferClient("10.0.0.5", 8080) as client:
            await client.handshake()
            await client.upload_stream(path, transfer_id, checksum)
    """

    def __init__(self, host: str, port: int,
                 connect_timeout: float = 5.0,
                 read_timeout: float = 15.0,
                 buffer_size: int = UPLOAD_BUFFER_SIZE,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = f"http://{host}:{port}"
        self.buffer_size = buffer_size
        self.cipher = StreamCipher(buffer_size)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
            transport=transport,
        )

    async def __aenter__(self) -> 'HttpTransferClient':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        await self._client.aclose()

    # === Handshake / status ===

    async def handshake(self) -> Dict:
        """Confirm the receiver is up. Returns its info record."""
        try:
            response = await self._client.get('/')
        except httpx.HTTPError as e:
            raise TransferError(f"Handshake with {self.base_url} failed", e) from e
        _raise_for_response(response, "Handshake")

        info = response.json()
        logger.info(f"[Handshake] {self.base_url} is {info.get('status', 'up')}")
        return info

    async def query_status(self, transfer_id: str) -> Optional[Dict]:
        """Receiver's snapshot of a transfer, or None if it does not know it."""
        try:
            response = await self._client.get('/status', params={'transferId': transfer_id})
        except httpx.HTTPError as e:
            raise TransferError(f"Status query for {transfer_id} failed", e) from e
        if response.status_code == 404:
            return None
        _raise_for_response(response, "Status query")
        return response.json()

    async def query_resume_offset(self, transfer_id: str) -> int:
        """Bytes the receiver already holds for transfer_id (0 on any failure)."""
        try:
            status = await self.query_status(transfer_id)
        except TransferError as e:
            logger.warning(f"[Resume] Could not query offset for {transfer_id}: {e}")
            return 0
        if not status:
            return 0
        return int(status.get('bytesWritten') or 0)

    async def reset(self, transfer_id: str) -> str:
        """Ask the receiver to discard a transfer. Returns the fresh id."""
        try:
            response = await self._client.post(f'/transfers/{transfer_id}/reset')
        except httpx.HTTPError as e:
            raise TransferError(f"Reset of {transfer_id} failed", e) from e
        _raise_for_response(response, "Reset")
        return response.json()['transferId']

    async def history(self, limit: int = 50) -> list:
        """Audit log rows from the receiver."""
        try:
            response = await self._client.get('/transfers/history', params={'limit': limit})
        except httpx.HTTPError as e:
            raise TransferError("History query failed", e) from e
        _raise_for_response(response, "History query")
        return response.json()['transfers']

    # === Uploads ===

    async def _file_body(self, path: Path, offset: int,
                         password: Optional[str]) -> AsyncIterator[bytes]:
        encryptor = None
        if password:
            key = derive_key(password)
            try:
                encryptor = StreamEncryptor(key)
            finally:
                wipe(key)

        async with aiofiles.open(path, 'rb') as f:
            await f.seek(offset)
            while True:
                data = await f.read(self.buffer_size)
                if not data:
                    break
                yield encryptor.update(data) if encryptor else data
        if encryptor:
            yield encryptor.finalize()

    def _headers(self, transfer_id: str, file_name: str, total_bytes: int,
                 checksum: Optional[str], password: Optional[str]) -> Dict[str, str]:
        headers = {
            'X-Transfer-Id': transfer_id,
            'X-File-Name': file_name,
            'X-Total-Bytes': str(total_bytes),
            'X-Encryption-Enabled': 'true' if password else 'false',
        }
        if checksum:
            headers['X-Checksum'] = checksum
        if password:
            headers['X-AES-Password'] = password
        return headers

    async def upload_stream(self, path: Path, transfer_id: str,
                            checksum: Optional[str] = None,
                            password: Optional[str] = None,
                            file_name: Optional[str] = None) -> Dict:
        """
        Upload path as one stream, resuming where the receiver stopped.

        Returns:
            The receiver's JSON response
        """
        path = Path(path)
        total = path.stat().st_size
        offset = await self.query_resume_offset(transfer_id)
        if offset > total:
            logger.warning(f"[UploadStream] Receiver reports {offset} > {total} bytes; restarting")
            offset = 0

        headers = self._headers(transfer_id, file_name or path.name, total, checksum, password)
        headers['X-Resume-Offset'] = str(offset)
        headers['Content-Type'] = 'application/octet-stream'

        logger.info(f"[UploadStream] Sending {path.name} from offset {offset} of {total}")
        try:
            response = await self._client.post(
                '/upload', content=self._file_body(path, offset, password), headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransferError(f"Upload of {path.name} interrupted", e) from e
        _raise_for_response(response, "Upload")
        return response.json()

    async def upload_chunks(self, path: Path, transfer_id: str,
                            checksum: Optional[str] = None,
                            password: Optional[str] = None,
                            chunk_size: int = CHUNK_SIZE,
                            file_name: Optional[str] = None) -> Dict:
        """
        Upload path as independently sent chunks.

        Returns:
            The receiver's JSON response to the last chunk sent
        """
        path = Path(path)
        total = path.stat().st_size
        chunker = FileChunker(chunk_size)
        total_chunks = chunker.get_chunk_count(total)

        skip = set()
        status = await self.query_status(transfer_id)
        if status and status.get('totalChunks') == total_chunks:
            missing = set(status.get('missingChunks') or [])
            skip = set(range(total_chunks)) - missing
            if skip:
                logger.info(f"[UploadChunk] Receiver already has {len(skip)}/{total_chunks} chunks")

        headers = self._headers(transfer_id, file_name or path.name, total, checksum, password)
        headers['X-Total-Chunks'] = str(total_chunks)
        headers['Content-Type'] = 'application/octet-stream'

        result: Dict = status or {}
        async for index, data in chunker.chunk_file(path, skip=skip):
            body = self.cipher.encrypt_buffer(data, password) if password else data
            try:
                response = await self._client.post(
                    '/upload', content=body, headers={**headers, 'X-Chunk-Index': str(index)},
                )
            except httpx.HTTPError as e:
                raise TransferError(f"Chunk {index} of {path.name} interrupted", e) from e
            _raise_for_response(response, f"Chunk {index}")
            result = response.json()
            logger.debug(f"[UploadChunk] Chunk {index}/{total_chunks}: {result.get('result')}")

        return result

    # === Downloads ===

    async def download(self, name: str, dest_dir: Path,
                       transfer_id: Optional[str] = None) -> Tuple[Path, Optional[str]]:
        """
        Fetch a file from the receiver, resuming a partial local copy.

        Returns:
            (local path, checksum advertised by the server or None)
        """
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        local = dest_dir / Path(name).name
        offset = local.stat().st_size if local.exists() else 0

        headers = {'Range': f"bytes={offset}-"} if offset else {}
        params = {'name': name}
        if transfer_id:
            params['transferId'] = transfer_id

        try:
            async with self._client.stream('GET', '/download', params=params,
                                           headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                _raise_for_response(response, f"Download of {name}")

                mode = 'ab' if response.status_code == 206 else 'wb'
                if mode == 'wb' and offset:
                    logger.info(f"[Download] Server ignored resume offset; restarting {name}")

                async with aiofiles.open(local, mode) as out:
                    async for data in response.aiter_bytes(self.buffer_size):
                        await out.write(data)

                checksum = response.headers.get(CHECKSUM_HEADER)
        except httpx.HTTPError as e:
            raise TransferError(f"Download of {name} interrupted", e) from e

        logger.info(f"[Download] {name} -> {local} ({local.stat().st_size:,} bytes)")
        return local, checksum
