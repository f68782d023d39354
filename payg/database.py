"""
Database module for payg

Handles SQLite persistence for:
- State channels (the local ledger)
- Channel labor records (append-only)
- Small key/value state (indexer identity, event cursor)

Thread Safety:
- Uses threading.local() to provide each thread with its own SQLite connection
- The coordinator runs on one event loop thread, so every read-modify-write
  without an intervening await is atomic with respect to other handlers
"""

import os
import sqlite3
import threading
import time
from typing import Dict, List, Optional

from .logs import log
from .models import Channel, ChannelLabor, ChannelStatus


AMOUNT_FIELDS = ("total", "spent", "onchain", "remote", "price")

CHANNEL_COLUMNS = (
    "id", "status", "deployment_id", "indexer", "consumer", "agent",
    "total", "spent", "onchain", "remote", "price",
    "expired_at", "terminated_at", "terminate_by_indexer",
    "last_final", "last_indexer_sign", "last_consumer_sign",
)


class PaygDatabase:
    """
    SQLite database manager for the channel ledger.

    Thread Safety:
    - Each thread gets its own isolated SQLite connection via threading.local()
    - WAL mode enabled for better concurrent read/write performance
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file (':memory:' allowed)
        """
        self.db_path = db_path if db_path == ":memory:" else os.path.expanduser(db_path)
        self._local = threading.local()

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: db: {msg}", level=level)

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create a thread-local database connection."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            if self.db_path != ":memory:":
                directory = os.path.dirname(self.db_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)

            self._local.conn = sqlite3.connect(
                self.db_path,
                isolation_level=None  # Autocommit mode
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL;")

            self._log(
                f"created thread-local connection (thread={threading.current_thread().name})",
                level='debug'
            )
        return self._local.conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # =====================================================================
        # CHANNELS TABLE
        # =====================================================================
        # Amounts are uint256 and stored as decimal text
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channels (
                id TEXT PRIMARY KEY,
                status INTEGER NOT NULL,
                deployment_id TEXT NOT NULL DEFAULT '',
                indexer TEXT NOT NULL DEFAULT '',
                consumer TEXT NOT NULL DEFAULT '',
                agent TEXT NOT NULL DEFAULT '',
                total TEXT NOT NULL DEFAULT '0',
                spent TEXT NOT NULL DEFAULT '0',
                onchain TEXT NOT NULL DEFAULT '0',
                remote TEXT NOT NULL DEFAULT '0',
                price TEXT NOT NULL DEFAULT '0',
                expired_at INTEGER NOT NULL DEFAULT 0,
                terminated_at INTEGER NOT NULL DEFAULT 0,
                terminate_by_indexer INTEGER NOT NULL DEFAULT 0,
                last_final INTEGER NOT NULL DEFAULT 0,
                last_indexer_sign TEXT NOT NULL DEFAULT '',
                last_consumer_sign TEXT NOT NULL DEFAULT '',
                updated_at INTEGER NOT NULL DEFAULT 0
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_channels_status_expiry
            ON channels(status, expired_at)
        """)

        # =====================================================================
        # CHANNEL LABOR TABLE
        # =====================================================================
        # Append-only record of Labor events
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channel_labor (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                deployment_id TEXT NOT NULL,
                indexer TEXT NOT NULL,
                total TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_channel_labor_deployment
            ON channel_labor(deployment_id, created_at)
        """)

        # =====================================================================
        # KEY/VALUE STATE TABLE
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS payg_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        self._log("tables initialized", level='debug')

    def close(self) -> None:
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # =========================================================================
    # CHANNELS
    # =========================================================================

    @staticmethod
    def _row_to_channel(row: sqlite3.Row) -> Channel:
        return Channel(
            id=row["id"],
            status=ChannelStatus(row["status"]),
            deployment_id=row["deployment_id"],
            indexer=row["indexer"],
            consumer=row["consumer"],
            agent=row["agent"],
            total=int(row["total"]),
            spent=int(row["spent"]),
            onchain=int(row["onchain"]),
            remote=int(row["remote"]),
            price=int(row["price"]),
            expired_at=row["expired_at"],
            terminated_at=row["terminated_at"],
            terminate_by_indexer=bool(row["terminate_by_indexer"]),
            last_final=bool(row["last_final"]),
            last_indexer_sign=row["last_indexer_sign"],
            last_consumer_sign=row["last_consumer_sign"],
        )

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM channels WHERE id = ?", (channel_id,)
        ).fetchone()
        return self._row_to_channel(row) if row else None

    def save_channel(self, channel: Channel) -> Channel:
        """Insert or replace a channel row."""
        conn = self._get_connection()
        values = (
            channel.id,
            int(channel.status),
            channel.deployment_id,
            channel.indexer,
            channel.consumer,
            channel.agent,
            *(str(getattr(channel, name)) for name in AMOUNT_FIELDS),
            int(channel.expired_at),
            int(channel.terminated_at),
            1 if channel.terminate_by_indexer else 0,
            1 if channel.last_final else 0,
            channel.last_indexer_sign,
            channel.last_consumer_sign,
            int(time.time()),
        )
        placeholders = ", ".join("?" for _ in values)
        conn.execute(
            f"INSERT OR REPLACE INTO channels ({', '.join(CHANNEL_COLUMNS)}, updated_at) "
            f"VALUES ({placeholders})",
            values,
        )
        return channel

    def delete_channel(self, channel_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM channels WHERE id = ?", (channel_id,))
        return cursor.rowcount > 0

    def list_channels(self, status: Optional[ChannelStatus] = None) -> List[Channel]:
        conn = self._get_connection()
        if status is None:
            rows = conn.execute("SELECT * FROM channels ORDER BY id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM channels WHERE status = ? ORDER BY id", (int(status),)
            ).fetchall()
        return [self._row_to_channel(r) for r in rows]

    def get_alive_channels(self, now: Optional[int] = None) -> List[Channel]:
        """Channels not yet finalized, or finalized but not yet expired."""
        now = int(time.time()) if now is None else now
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM channels WHERE status != ? OR expired_at > ? ORDER BY id",
            (int(ChannelStatus.FINALIZED), now),
        ).fetchall()
        return [self._row_to_channel(r) for r in rows]

    # =========================================================================
    # CHANNEL LABOR
    # =========================================================================

    def add_channel_labor(self, labor: ChannelLabor) -> None:
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO channel_labor (deployment_id, indexer, total, created_at) "
            "VALUES (?, ?, ?, ?)",
            (labor.deployment_id, labor.indexer, str(labor.total), int(labor.created_at)),
        )

    def list_channel_labor(self, deployment_id: Optional[str] = None) -> List[ChannelLabor]:
        conn = self._get_connection()
        if deployment_id:
            rows = conn.execute(
                "SELECT * FROM channel_labor WHERE deployment_id = ? ORDER BY id",
                (deployment_id,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM channel_labor ORDER BY id").fetchall()
        return [
            ChannelLabor(
                deployment_id=r["deployment_id"],
                indexer=r["indexer"],
                total=int(r["total"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # =========================================================================
    # KEY/VALUE STATE
    # =========================================================================

    def get_state(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM payg_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "INSERT OR REPLACE INTO payg_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, str(value), int(time.time())),
        )

    def delete_state(self, key: str) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM payg_state WHERE key = ?", (key,))

    def get_all_state(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM payg_state").fetchall()
        return {r["key"]: r["value"] for r in rows}
