"""
File Relay - resumable, integrity-verified, optionally encrypted file transfer.
"""

from .errors import TransferError
from .config import Config, load_config
from .node import TransferNode, __version__

__all__ = ['TransferError', 'Config', 'load_config', 'TransferNode', '__version__']
