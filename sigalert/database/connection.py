"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


class Database:
    """SQLite database connection manager.

    A single connection is shared by the request threads of one process;
    statements are serialized through a re-entrant lock. Cross-process safety
    relies on conditional UPDATE statements, not on this lock.
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, timeout=30
        )
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically.

        Commits on success, rolls back and re-raises on any exception.
        """
        with self._lock:
            conn = self.connection
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT,
                    phone TEXT,
                    telegram_chat_id TEXT,
                    channels TEXT NOT NULL DEFAULT '["app"]',
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ticker TEXT NOT NULL,
                    action TEXT NOT NULL,
                    price REAL NOT NULL,
                    timeframe TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    message TEXT NOT NULL,
                    source TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    ticker TEXT NOT NULL,
                    condition TEXT NOT NULL,
                    target_value REAL NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    one_shot INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    triggered_at TEXT,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS smart_timing_preferences (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    ticker_symbol TEXT,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    quiet_hours_start TEXT,
                    quiet_hours_end TEXT,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    max_hourly_notifications INTEGER NOT NULL DEFAULT 5,
                    volatility_threshold REAL NOT NULL DEFAULT 0.1,
                    high_volatility_pause INTEGER NOT NULL DEFAULT 0,
                    signal_frequency TEXT NOT NULL DEFAULT 'medium',
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            # signal_id is a weak reference: deactivating or removing a
            # signal must not touch queued notifications.
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    signal_id INTEGER,
                    rule_id INTEGER,
                    channel TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    visible_after TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    sent_at TEXT,
                    claimed_at TEXT,
                    last_error TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS smart_timing_decisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    ticker TEXT NOT NULL,
                    signal_type TEXT NOT NULL,
                    should_send INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    delay_seconds INTEGER NOT NULL,
                    urgency TEXT NOT NULL,
                    market_conditions TEXT NOT NULL DEFAULT '{}',
                    timestamp TEXT NOT NULL
                )
            """)

            # Indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_signals_ticker
                ON signals(ticker, timestamp)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_ticker_active
                ON alert_rules(ticker, is_active)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_prefs_user_ticker
                ON smart_timing_preferences(user_id, ticker_symbol)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_due
                ON notification_queue(status, visible_after)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_user
                ON notification_queue(user_id, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_decisions_user
                ON smart_timing_decisions(user_id, timestamp)
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
