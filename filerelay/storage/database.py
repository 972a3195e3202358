"""
SQLite Audit Log for Transfers

Design Decision: Why persist anything?
======================================

The StatusRegistry is in-memory working state: it is lost on restart and
entries are discarded on reset. Operators still want to answer "did
file X arrive, with which checksum, and why did it fail?".

Options Considered:
1. Append-only text log - easy, but no querying
2. JSON file per transfer - simple, racy under concurrent writers
3. SQLite - embedded, ACID, queryable

Decision: SQLite with aiosqlite
- Zero configuration, single file next to the data directory
- Async support via aiosqlite
- One row per transfer id, upserted on every terminal transition

Tables:
- transfers: last known terminal snapshot of every transfer
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

from ..transfer.state import TransferSnapshot

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1


class Database:
    """
    SQLite database for the transfer audit log.

    Stores:
    - Final state, byte counts and checksum of each transfer
    - Failure messages
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._init_schema()

        logger.info(f"Database connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def _init_schema(self):
        """Initialize database schema."""
        await self._connection.executescript(f"""
            CREATE TABLE IF NOT EXISTS transfers (
                transfer_id TEXT PRIMARY KEY,
                file_name TEXT NOT NULL,
                protocol TEXT NOT NULL,
                total_bytes INTEGER NOT NULL,
                bytes_written INTEGER NOT NULL,
                state TEXT NOT NULL,
                checksum TEXT,
                error TEXT,
                file_path TEXT,
                aes_enabled INTEGER DEFAULT 0,
                key_fingerprint TEXT,
                total_chunks INTEGER DEFAULT 0,
                recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_transfers_state ON transfers(state);
            CREATE INDEX IF NOT EXISTS idx_transfers_recorded ON transfers(recorded_at);

            PRAGMA user_version = {SCHEMA_VERSION};
        """)

        await self._connection.commit()

    # === Transfers ===

    async def record_transfer(self, snapshot: TransferSnapshot):
        """Insert or update the audit row for a transfer."""
        await self._connection.execute(
            """INSERT INTO transfers (transfer_id, file_name, protocol, total_bytes,
                                      bytes_written, state, checksum, error, file_path,
                                      aes_enabled, key_fingerprint, total_chunks)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(transfer_id) DO UPDATE SET
                   bytes_written = excluded.bytes_written,
                   state = excluded.state,
                   checksum = excluded.checksum,
                   error = excluded.error,
                   file_path = excluded.file_path,
                   recorded_at = CURRENT_TIMESTAMP""",
            (snapshot.transfer_id, snapshot.file_name, snapshot.protocol,
             snapshot.total_bytes, snapshot.bytes_written, snapshot.state.value,
             snapshot.checksum or None, snapshot.error or None,
             snapshot.file_path or None, int(snapshot.encryption_enabled),
             snapshot.key_fingerprint or None, snapshot.total_chunks)
        )
        await self._connection.commit()

    async def get_transfer(self, transfer_id: str) -> Optional[Dict]:
        """Get the audit row for one transfer."""
        async with self._connection.execute(
            "SELECT * FROM transfers WHERE transfer_id = ?",
            (transfer_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def list_transfers(self, limit: int = 50, state: Optional[str] = None) -> List[Dict]:
        """Get audit rows, most recent first."""
        if state:
            query = """SELECT * FROM transfers WHERE state = ?
                       ORDER BY recorded_at DESC, rowid DESC LIMIT ?"""
            params = (state, limit)
        else:
            query = "SELECT * FROM transfers ORDER BY recorded_at DESC, rowid DESC LIMIT ?"
            params = (limit,)

        async with self._connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]


async def init_database(data_dir: Path) -> Database:
    """Initialize and return a database instance."""
    db_path = Path(data_dir) / "filerelay.db"
    db = Database(db_path)
    await db.connect()
    return db
