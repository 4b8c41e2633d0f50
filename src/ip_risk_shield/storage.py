"""Durable repositories for block state.

The block store writes every mutation through a ``BlockRepository`` before
touching memory. Two implementations ship with the package:

- InMemoryBlockRepository: process-local, for development and tests
- SQLiteBlockRepository: single-file SQLite database

Repositories raise ``PersistenceError`` when a write cannot be committed.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from threading import RLock
from typing import Deque, Dict, List, Optional

from ip_risk_shield.exceptions import PersistenceError
from ip_risk_shield.models import BlockRecord, HistoryAction, HistoryEntry

logger = logging.getLogger(__name__)


class BlockRepository(ABC):
    """Abstract base class for durable block storage."""

    @abstractmethod
    def save(self, record: BlockRecord, history: Optional[HistoryEntry] = None) -> None:
        """Persist a block record and, atomically with it, an optional history entry."""
        pass

    @abstractmethod
    def save_offense_count(self, ip: str, count: int) -> None:
        """Persist the number of blocks an IP has received."""
        pass

    @abstractmethod
    def load_active(self) -> List[BlockRecord]:
        """Load every record that is still marked active."""
        pass

    @abstractmethod
    def load_history(self, limit: int) -> List[HistoryEntry]:
        """Load the most recent history entries, oldest first."""
        pass

    @abstractmethod
    def load_offense_counts(self) -> Dict[str, int]:
        pass

    def close(self) -> None:
        pass


class InMemoryBlockRepository(BlockRepository):
    """Process-local repository."""

    def __init__(self, history_limit: int = 1000):
        self._records: Dict[str, BlockRecord] = {}
        self._history: Deque[HistoryEntry] = deque(maxlen=history_limit)
        self._offenses: Dict[str, int] = {}
        self._lock = RLock()

    def save(self, record: BlockRecord, history: Optional[HistoryEntry] = None) -> None:
        with self._lock:
            self._records[record.ip] = BlockRecord.from_dict(record.to_dict())
            if history is not None:
                self._history.append(history)

    def save_offense_count(self, ip: str, count: int) -> None:
        with self._lock:
            self._offenses[ip] = count

    def load_active(self) -> List[BlockRecord]:
        with self._lock:
            return [
                BlockRecord.from_dict(record.to_dict())
                for record in self._records.values() if record.is_active
            ]

    def load_history(self, limit: int) -> List[HistoryEntry]:
        with self._lock:
            entries = list(self._history)
        return entries[-limit:] if limit else []

    def load_offense_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._offenses)


class SQLiteBlockRepository(BlockRepository):
    """SQLite-backed block repository."""

    def __init__(self, db_path: str = "ip_blocks.db", history_limit: int = 1000):
        self.db_path = db_path
        self.history_limit = history_limit
        self._lock = RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._init_database()
        logger.info(f"SQLiteBlockRepository initialized with path: {db_path}")

    def _init_database(self):
        """Initialize SQLite database schema."""
        with self._lock, self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS blocked_ips (
                    ip TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    risk_score REAL NOT NULL,
                    category TEXT NOT NULL,
                    indicators TEXT,
                    created_at TEXT NOT NULL,
                    expires_at TEXT,
                    is_automatic INTEGER NOT NULL,
                    source TEXT NOT NULL,
                    country TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """)

            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_blocked_active ON blocked_ips(is_active)
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS block_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ip TEXT NOT NULL,
                    action TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    risk_score REAL,
                    category TEXT,
                    is_automatic INTEGER,
                    expires_at TEXT
                )
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS offense_counts (
                    ip TEXT PRIMARY KEY,
                    count INTEGER NOT NULL
                )
            """)

    def save(self, record: BlockRecord, history: Optional[HistoryEntry] = None) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute("""
                        INSERT OR REPLACE INTO blocked_ips
                        (ip, reason, risk_score, category, indicators, created_at,
                         expires_at, is_automatic, source, country, is_active)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        record.ip,
                        record.reason,
                        record.risk_score,
                        record.category,
                        json.dumps(record.indicators),
                        record.created_at.isoformat(),
                        record.expires_at.isoformat() if record.expires_at else None,
                        int(record.is_automatic),
                        record.source,
                        record.country,
                        int(record.is_active),
                    ))
                    if history is not None:
                        self._insert_history(history)
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Failed to persist block record for {record.ip}: {e}", {"ip": record.ip}
                ) from e

    def _insert_history(self, entry: HistoryEntry) -> None:
        self._conn.execute("""
            INSERT INTO block_history
            (ip, action, reason, timestamp, risk_score, category, is_automatic, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.ip,
            entry.action.value,
            entry.reason,
            entry.timestamp.isoformat(),
            entry.risk_score,
            entry.category,
            None if entry.is_automatic is None else int(entry.is_automatic),
            entry.expires_at.isoformat() if entry.expires_at else None,
        ))
        self._conn.execute("""
            DELETE FROM block_history WHERE id NOT IN (
                SELECT id FROM block_history ORDER BY id DESC LIMIT ?
            )
        """, (self.history_limit,))

    def save_offense_count(self, ip: str, count: int) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT OR REPLACE INTO offense_counts (ip, count) VALUES (?, ?)",
                        (ip, count),
                    )
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Failed to persist offense count for {ip}: {e}", {"ip": ip}
                ) from e

    def load_active(self) -> List[BlockRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM blocked_ips WHERE is_active = 1"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def load_history(self, limit: int) -> List[HistoryEntry]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM block_history ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_history(row) for row in reversed(rows)]

    def load_offense_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute("SELECT ip, count FROM offense_counts").fetchall()
        return {row["ip"]: row["count"] for row in rows}

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> BlockRecord:
        return BlockRecord(
            ip=row["ip"],
            reason=row["reason"],
            risk_score=row["risk_score"],
            category=row["category"],
            indicators=json.loads(row["indicators"]) if row["indicators"] else [],
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
            is_automatic=bool(row["is_automatic"]),
            source=row["source"],
            country=row["country"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            ip=row["ip"],
            action=HistoryAction(row["action"]),
            reason=row["reason"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            risk_score=row["risk_score"],
            category=row["category"],
            is_automatic=None if row["is_automatic"] is None else bool(row["is_automatic"]),
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
        )
