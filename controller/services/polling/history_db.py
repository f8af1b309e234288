"""
Local SQLite History Store

Stores point samples as a time series for offline operation.
Blocking sqlite3 calls run in the default executor so they never stall
the polling timers.
"""

import asyncio
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from common.logging_setup import get_service_logger

logger = get_service_logger("polling.history")

# Default database path
DEFAULT_DB_PATH = Path("/var/lib/plc-supervision/history.db")


class SqliteHistorySink:
    """
    SQLite-backed history sink.

    Features:
    - Automatic table creation
    - Range queries per point
    - Data retention cleanup
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    point_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    raw_value REAL,
                    value REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_point_ts
                ON history (point_id, timestamp)
            """)
            conn.commit()

        logger.info(f"History database initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager"""
        # timeout=10.0: fail fast on lock contention instead of blocking forever
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row

        # WAL keeps readers and the writer out of each other's way
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield conn
        finally:
            conn.close()

    async def _run_db(self, func, *args):
        """Run a blocking database method in a thread"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def append(
        self,
        point_id: str,
        timestamp: datetime,
        raw_value: int | float,
        engineering_value: int | float,
    ) -> None:
        await self._run_db(
            self.insert_sample, point_id, timestamp, raw_value, engineering_value
        )

    def insert_sample(
        self,
        point_id: str,
        timestamp: datetime,
        raw_value: int | float,
        engineering_value: int | float,
    ) -> int:
        """Insert a single sample"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO history (point_id, timestamp, raw_value, value) VALUES (?, ?, ?, ?)",
                (point_id, _to_iso(timestamp), float(raw_value), float(engineering_value)),
            )
            conn.commit()
            return cursor.lastrowid

    async def query(
        self,
        point_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[dict]:
        return await self._run_db(self.get_samples, point_id, since, until, limit)

    def get_samples(
        self,
        point_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[dict]:
        """Get samples for a point in ascending time order"""
        sql = "SELECT point_id, timestamp, raw_value, value FROM history WHERE point_id = ?"
        params: list = [point_id]
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(_to_iso(since))
        if until is not None:
            sql += " AND timestamp <= ?"
            params.append(_to_iso(until))
        sql += " ORDER BY timestamp ASC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            {
                "point_id": row["point_id"],
                "timestamp": row["timestamp"],
                "raw_value": row["raw_value"],
                "engineering_value": row["value"],
            }
            for row in rows
        ]

    def count(self, point_id: str | None = None) -> int:
        """Count stored samples, optionally for one point"""
        with self._get_connection() as conn:
            if point_id is None:
                return conn.execute("SELECT COUNT(*) FROM history").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM history WHERE point_id = ?", (point_id,)
            ).fetchone()[0]

    def cleanup_old_samples(self, retention_days: int) -> int:
        """Delete samples older than the retention window"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM history WHERE timestamp < ?", (_to_iso(cutoff),)
            )
            conn.commit()
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Retention cleanup removed {deleted} samples older than {retention_days}d")
        return deleted


def _to_iso(ts: datetime) -> str:
    """UTC ISO string so lexical order matches time order"""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")
