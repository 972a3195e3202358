"""
Transfer Module - Ingest, serving, status tracking and HTTP transport
"""

from .state import (
    StatusRegistry, TransferPhase, TransferSnapshot, TransferState, generate_transfer_id,
)
from .ingest import ChunkIngestEngine, ChunkResult, sanitize_file_name
from .serving import RangeServingEngine, ServePlan, parse_range
from .verify import verify_with_retry
from .retry import retry_async
from .client import HttpTransferClient
from .methods import TransferMode, TransferMethod, HttpTransferMethod, create_transfer_method
from .orchestrator import SenderOrchestrator, ReceiverOrchestrator, SendResult, ReceiveResult

__all__ = [
    'StatusRegistry',
    'TransferPhase',
    'TransferSnapshot',
    'TransferState',
    'generate_transfer_id',
    'ChunkIngestEngine',
    'ChunkResult',
    'sanitize_file_name',
    'RangeServingEngine',
    'ServePlan',
    'parse_range',
    'verify_with_retry',
    'retry_async',
    'HttpTransferClient',
    'TransferMode',
    'TransferMethod',
    'HttpTransferMethod',
    'create_transfer_method',
    'SenderOrchestrator',
    'ReceiverOrchestrator',
    'SendResult',
    'ReceiveResult',
]
