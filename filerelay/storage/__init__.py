"""
Storage Module - Transfer audit log
"""

from .database import Database, init_database

__all__ = ['Database', 'init_database']
