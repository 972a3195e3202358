"""
REST API for a Transfer Node

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Modern, fast, auto-docs, async support
2. Flask - Simple, widely used, but sync-focused
3. aiohttp - Async, but less features

Decision: FastAPI
- Native async support: upload bodies are consumed as a stream
  (request.stream()) and downloads are produced as one (StreamingResponse)
- Automatic OpenAPI documentation
- Pydantic models for responses

API Design:
- POST /upload            ingest (stream mode, or chunk mode when X-Chunk-Index is set)
- GET  /status            flat snapshot of one transfer
- GET  /download          ranged download (206 + Content-Range when resuming)
- POST /transfers/{id}/reset
- GET  /transfers/history audit log
Upload fields may come as query parameters or X-* headers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..errors import (
    ChecksumMismatchError, DecryptionError, IncompleteTransferError,
    InvalidRequestError, TransferError, TransferNotFoundError, TransferStateError,
)
from ..node import TransferNode, __version__
from ..transfer.client import CHECKSUM_HEADER

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class TransferStatus(BaseModel):
    """Snapshot of one transfer, as polled by clients."""
    transferId: str
    fileName: str
    protocol: str
    totalBytes: int
    bytesWritten: int
    progressPercent: float
    resumeOffset: int
    state: str
    error: str
    checksum: str
    aesEnabled: bool
    keyFingerprint: str
    filePath: str
    speedBytesPerSecond: float
    estimatedEtaSeconds: int
    totalChunks: int
    completedChunks: int
    missingChunks: List[int]
    resumable: bool
    lastUpdated: str


class UploadResponse(BaseModel):
    """Outcome of one upload request."""
    result: str
    status: TransferStatus


class ResetResponse(BaseModel):
    """Fresh transfer id after a reset."""
    transferId: str
    previousTransferId: str


class HistoryResponse(BaseModel):
    """Audit log rows, most recent first."""
    transfers: List[Dict[str, Any]]


# === Request helpers ===

def _field(request: Request, name: str, header: str) -> Optional[str]:
    """Read an upload field from the query string, falling back to a header."""
    value = request.query_params.get(name)
    if value is None:
        value = request.headers.get(header)
    if value is not None:
        value = value.strip()
    return value or None


def _int_field(request: Request, name: str, header: str,
               required: bool = False) -> Optional[int]:
    raw = _field(request, name, header)
    if raw is None:
        if required:
            raise InvalidRequestError(f"Missing {name}")
        return None
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequestError(f"Invalid {name}: {raw!r}") from None


def _bool_field(request: Request, name: str, header: str) -> bool:
    raw = _field(request, name, header)
    return raw is not None and raw.lower() in ('1', 'true', 'yes', 'on')


def _http_error(e: TransferError) -> HTTPException:
    """Map an engine failure to an HTTP status."""
    if isinstance(e, (InvalidRequestError, DecryptionError)):
        status_code = 400
    elif isinstance(e, TransferNotFoundError):
        status_code = 404
    elif isinstance(e, (TransferStateError, ChecksumMismatchError, IncompleteTransferError)):
        status_code = 409
    else:
        status_code = 500
        logger.error(f"Transfer error: {e}", exc_info=True)
    return HTTPException(
        status_code=status_code,
        detail={"error": type(e).__name__, "message": str(e)},
    )


# === API Creation ===

def create_app(node: TransferNode) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        node: TransferNode instance to expose

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        await node.start()
        yield
        await node.stop()
        logger.info("API server stopping...")

    app = FastAPI(
        title="File Relay API",
        description="Resumable, integrity-verified file transfer",
        version=__version__,
        lifespan=lifespan,
    )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """Handshake - node info."""
        return node.info()

    @app.post("/upload", response_model=UploadResponse, tags=["Transfers"])
    async def upload(request: Request):
        """Receive a stream upload or a single chunk."""
        try:
            transfer_id = _field(request, 'transferId', 'X-Transfer-Id')
            file_name = _field(request, 'fileName', 'X-File-Name')
            total_bytes = _int_field(request, 'totalBytes', 'X-Total-Bytes', required=True)
            chunk_index = _int_field(request, 'chunkIndex', 'X-Chunk-Index')
            total_chunks = _int_field(request, 'totalChunks', 'X-Total-Chunks')
            resume_offset = _int_field(request, 'resumeOffset', 'X-Resume-Offset')
            checksum = _field(request, 'checksum', 'X-Checksum')

            password = request.headers.get('X-AES-Password') or None
            if _bool_field(request, 'encryptionEnabled', 'X-Encryption-Enabled') and not password:
                password = node.config.encryption_password
                if not password:
                    raise InvalidRequestError("Encryption enabled but no password available")

            if checksum is None:
                logger.info(f"[Upload] No checksum provided for {file_name}")

            if chunk_index is None:
                snapshot = await node.receive_stream(
                    transfer_id, file_name, total_bytes, request.stream(),
                    password=password, checksum=checksum, client_offset=resume_offset,
                )
                result = snapshot.state.value
            else:
                body = await request.body()
                outcome, snapshot = await node.receive_chunk(
                    transfer_id, file_name, chunk_index, total_bytes, body,
                    password=password, total_chunks=total_chunks, checksum=checksum,
                )
                result = outcome.value
        except TransferError as e:
            raise _http_error(e)

        return UploadResponse(result=result, status=TransferStatus(**snapshot.to_dict()))

    @app.get("/status", response_model=TransferStatus, tags=["Transfers"])
    async def get_status(transferId: Optional[str] = None):
        """Snapshot of a transfer (default: the most recent)."""
        try:
            snapshot = node.status(transferId)
        except TransferError as e:
            raise _http_error(e)
        return TransferStatus(**snapshot.to_dict())

    @app.get("/download", tags=["Transfers"])
    async def download(request: Request, name: str, transferId: Optional[str] = None):
        """Serve a received file, resuming from `Range: bytes=N-`."""
        try:
            plan, checksum = await node.open_download(
                name, transfer_id=transferId, range_header=request.headers.get('range'),
            )
        except TransferError as e:
            raise _http_error(e)

        headers = {
            'Accept-Ranges': 'bytes',
            'Content-Length': str(plan.length),
            'Content-Disposition': f'attachment; filename="{plan.path.name}"',
            'X-Transfer-Id': plan.transfer_id,
        }
        if checksum:
            headers[CHECKSUM_HEADER] = checksum
        if plan.partial:
            headers['Content-Range'] = plan.content_range()

        return StreamingResponse(
            node.iter_download(plan),
            status_code=206 if plan.partial else 200,
            media_type='application/octet-stream',
            headers=headers,
        )

    @app.post("/transfers/{transfer_id}/reset", response_model=ResetResponse, tags=["Transfers"])
    async def reset_transfer(transfer_id: str):
        """Discard a transfer; returns a fresh id for the same file."""
        try:
            new_id = await node.reset(transfer_id)
        except TransferError as e:
            raise _http_error(e)
        return ResetResponse(transferId=new_id, previousTransferId=transfer_id)

    @app.get("/transfers/history", response_model=HistoryResponse, tags=["Transfers"])
    async def history(limit: int = 50, state: Optional[str] = None):
        """Audit log of finished transfers."""
        return HistoryResponse(transfers=await node.history(limit=limit, state=state))

    return app


async def run_api_server(node: TransferNode, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the API server.

    Args:
        node: TransferNode instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(node)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
