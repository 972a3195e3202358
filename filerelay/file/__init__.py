"""
File Module - Chunking and Sender-side Preparation

This module handles file operations on the sending side of a transfer.
"""

from .chunker import FileChunker, CHUNK_SIZE
from .prepare import PreparedFile, prepare_outgoing, seal_file, zip_if_needed

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'PreparedFile',
    'prepare_outgoing',
    'seal_file',
    'zip_if_needed',
]
