"""
Repository classes for CRUD operations.

Write methods accept an optional ``conn`` so that several statements can
share one transaction opened by the caller via ``Database.transaction()``.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sigalert.timeutil import from_iso, to_iso
from .connection import Database
from .models import (
    AlertRule,
    NotificationIntent,
    Signal,
    SmartTimingDecisionLog,
    SmartTimingPreference,
    UserProfile,
    PRIORITY_HIGH,
    STATUS_DEFERRED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
)


class _Repository:
    """Shared cursor handling."""

    def __init__(self, db: Database):
        self.db = db

    @contextmanager
    def _cursor(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Cursor]:
        if conn is not None:
            yield conn.cursor()
        else:
            with self.db.transaction() as own:
                yield own.cursor()


class UserRepository(_Repository):
    """CRUD operations for user profiles."""

    def create(self, user: UserProfile, now: datetime) -> UserProfile:
        """Create a new user."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO users (email, phone, telegram_chat_id, channels, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user.email,
                    user.phone,
                    user.telegram_chat_id,
                    json.dumps(user.channels),
                    to_iso(now),
                ),
            )
            user.id = cursor.lastrowid
        user.created_at = now
        return user

    def get_by_id(self, user_id: int) -> Optional[UserProfile]:
        """Get user by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def update(self, user: UserProfile) -> None:
        """Update destinations and enabled channels."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET email = ?, phone = ?, telegram_chat_id = ?, channels = ?
                WHERE id = ?
                """,
                (
                    user.email,
                    user.phone,
                    user.telegram_chat_id,
                    json.dumps(user.channels),
                    user.id,
                ),
            )

    def list_all(self) -> list[UserProfile]:
        """List all users."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users ORDER BY id")
            rows = cursor.fetchall()
        return [self._row_to_user(row) for row in rows]

    def _row_to_user(self, row) -> UserProfile:
        """Convert database row to UserProfile."""
        return UserProfile(
            id=row["id"],
            email=row["email"],
            phone=row["phone"],
            telegram_chat_id=row["telegram_chat_id"],
            channels=json.loads(row["channels"]),
            created_at=from_iso(row["created_at"]),
        )


class SignalRepository(_Repository):
    """Append-only storage for trading signals."""

    def create(self, signal: Signal) -> Signal:
        """Insert a new signal."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO signals
                (ticker, action, price, timeframe, strategy, message, source,
                 timestamp, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    signal.ticker,
                    signal.action,
                    signal.price,
                    signal.timeframe,
                    signal.strategy,
                    signal.message,
                    signal.source,
                    to_iso(signal.timestamp),
                    1 if signal.is_active else 0,
                ),
            )
            signal.id = cursor.lastrowid
        return signal

    def get_by_id(self, signal_id: int) -> Optional[Signal]:
        """Get signal by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM signals WHERE id = ?", (signal_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_signal(row)

    def deactivate(self, signal_id: int) -> bool:
        """Soft-deactivate a signal. Returns False if it was already inactive."""
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE signals SET is_active = 0 WHERE id = ? AND is_active = 1",
                (signal_id,),
            )
            return cursor.rowcount == 1

    def list_recent(
        self,
        limit: int = 50,
        ticker: Optional[str] = None,
        active_only: bool = True,
    ) -> list[Signal]:
        """List newest signals first."""
        clauses = []
        params: list = []
        if ticker:
            clauses.append("ticker = ?")
            params.append(ticker)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM signals {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
                params,
            )
            rows = cursor.fetchall()
        return [self._row_to_signal(row) for row in rows]

    def _row_to_signal(self, row) -> Signal:
        """Convert database row to Signal."""
        return Signal(
            id=row["id"],
            ticker=row["ticker"],
            action=row["action"],
            price=row["price"],
            timeframe=row["timeframe"],
            strategy=row["strategy"],
            message=row["message"],
            source=row["source"],
            timestamp=from_iso(row["timestamp"]),
            is_active=bool(row["is_active"]),
        )


class AlertRuleRepository(_Repository):
    """CRUD operations for alert rules."""

    def create(self, rule: AlertRule, now: datetime) -> AlertRule:
        """Create a new rule."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO alert_rules
                (user_id, ticker, condition, target_value, is_active, one_shot, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.user_id,
                    rule.ticker,
                    rule.condition,
                    rule.target_value,
                    1 if rule.is_active else 0,
                    1 if rule.one_shot else 0,
                    to_iso(now),
                ),
            )
            rule.id = cursor.lastrowid
        rule.created_at = now
        return rule

    def get_by_id(self, rule_id: int) -> Optional[AlertRule]:
        """Get rule by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def get_user_rules(self, user_id: int) -> list[AlertRule]:
        """Get all rules for a user."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM alert_rules WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    def get_active_for_ticker(self, ticker: str) -> list[AlertRule]:
        """Get active rules watching a ticker, in creation order."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM alert_rules
                WHERE ticker = ? AND is_active = 1
                ORDER BY id
                """,
                (ticker,),
            )
            rows = cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    def list_active_tickers(self) -> list[str]:
        """Distinct tickers with at least one active rule."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT DISTINCT ticker FROM alert_rules WHERE is_active = 1 ORDER BY ticker"
            )
            rows = cursor.fetchall()
        return [row["ticker"] for row in rows]

    def set_active(self, rule_id: int, active: bool) -> None:
        """Enable or disable a rule."""
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE alert_rules SET is_active = ? WHERE id = ?",
                (1 if active else 0, rule_id),
            )

    def deactivate_if_active(
        self,
        rule_id: int,
        now: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Conditionally flip a rule to inactive.

        Returns True only for the caller that performed the transition.
        """
        with self._cursor(conn) as cursor:
            cursor.execute(
                """
                UPDATE alert_rules
                SET is_active = 0, triggered_at = ?
                WHERE id = ? AND is_active = 1
                """,
                (to_iso(now), rule_id),
            )
            return cursor.rowcount == 1

    def mark_triggered(
        self,
        rule_id: int,
        now: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Record the last trigger time of a repeating rule."""
        with self._cursor(conn) as cursor:
            cursor.execute(
                "UPDATE alert_rules SET triggered_at = ? WHERE id = ?",
                (to_iso(now), rule_id),
            )

    def delete(self, rule_id: int) -> None:
        """Delete a rule."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))

    def _row_to_rule(self, row) -> AlertRule:
        """Convert database row to AlertRule."""
        return AlertRule(
            id=row["id"],
            user_id=row["user_id"],
            ticker=row["ticker"],
            condition=row["condition"],
            target_value=row["target_value"],
            is_active=bool(row["is_active"]),
            one_shot=bool(row["one_shot"]),
            created_at=from_iso(row["created_at"]),
            triggered_at=from_iso(row["triggered_at"]),
        )


class PreferenceRepository(_Repository):
    """Smart-timing preferences, one per (user, ticker) plus a global default."""

    def upsert(self, pref: SmartTimingPreference) -> SmartTimingPreference:
        """Create or replace the preference for (user, ticker)."""
        existing = self.get_exact(pref.user_id, pref.ticker_symbol)
        values = (
            1 if pref.enabled else 0,
            _hour_to_text(pref.quiet_hours_start),
            _hour_to_text(pref.quiet_hours_end),
            pref.timezone,
            pref.max_hourly_notifications,
            pref.volatility_threshold,
            1 if pref.high_volatility_pause else 0,
            pref.signal_frequency,
        )
        with self._cursor() as cursor:
            if existing is None:
                cursor.execute(
                    """
                    INSERT INTO smart_timing_preferences
                    (enabled, quiet_hours_start, quiet_hours_end, timezone,
                     max_hourly_notifications, volatility_threshold,
                     high_volatility_pause, signal_frequency, user_id, ticker_symbol)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values + (pref.user_id, pref.ticker_symbol),
                )
                pref.id = cursor.lastrowid
            else:
                cursor.execute(
                    """
                    UPDATE smart_timing_preferences
                    SET enabled = ?, quiet_hours_start = ?, quiet_hours_end = ?,
                        timezone = ?, max_hourly_notifications = ?,
                        volatility_threshold = ?, high_volatility_pause = ?,
                        signal_frequency = ?
                    WHERE id = ?
                    """,
                    values + (existing.id,),
                )
                pref.id = existing.id
        return pref

    def get_exact(
        self, user_id: int, ticker_symbol: Optional[str]
    ) -> Optional[SmartTimingPreference]:
        """Get the record for exactly (user, ticker); None ticker = global."""
        with self._cursor() as cursor:
            if ticker_symbol is None:
                cursor.execute(
                    """
                    SELECT * FROM smart_timing_preferences
                    WHERE user_id = ? AND ticker_symbol IS NULL
                    """,
                    (user_id,),
                )
            else:
                cursor.execute(
                    """
                    SELECT * FROM smart_timing_preferences
                    WHERE user_id = ? AND ticker_symbol = ?
                    """,
                    (user_id, ticker_symbol),
                )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_pref(row)

    def get_for(
        self, user_id: int, ticker_symbol: Optional[str]
    ) -> Optional[SmartTimingPreference]:
        """Ticker-specific preference, falling back to the user's global one."""
        if ticker_symbol:
            pref = self.get_exact(user_id, ticker_symbol)
            if pref is not None:
                return pref
        return self.get_exact(user_id, None)

    def _row_to_pref(self, row) -> SmartTimingPreference:
        """Convert database row to SmartTimingPreference."""
        return SmartTimingPreference(
            id=row["id"],
            user_id=row["user_id"],
            ticker_symbol=row["ticker_symbol"],
            enabled=bool(row["enabled"]),
            quiet_hours_start=_text_to_hour(row["quiet_hours_start"]),
            quiet_hours_end=_text_to_hour(row["quiet_hours_end"]),
            timezone=row["timezone"],
            max_hourly_notifications=row["max_hourly_notifications"],
            volatility_threshold=row["volatility_threshold"],
            high_volatility_pause=bool(row["high_volatility_pause"]),
            signal_frequency=row["signal_frequency"],
        )


class NotificationRepository(_Repository):
    """Rows of the notification queue.

    Every status change is a conditional UPDATE on the expected pre-state;
    methods return whether this caller won the transition.
    """

    def insert(
        self,
        intent: NotificationIntent,
        conn: Optional[sqlite3.Connection] = None,
    ) -> NotificationIntent:
        """Insert a queue row."""
        with self._cursor(conn) as cursor:
            cursor.execute(
                """
                INSERT INTO notification_queue
                (user_id, signal_id, rule_id, channel, title, message, status,
                 attempts, max_attempts, priority, visible_after, created_at,
                 sent_at, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.user_id,
                    intent.signal_id,
                    intent.rule_id,
                    intent.channel,
                    intent.title,
                    intent.message,
                    intent.status,
                    intent.attempts,
                    intent.max_attempts,
                    intent.priority,
                    to_iso(intent.visible_after),
                    to_iso(intent.created_at),
                    to_iso(intent.sent_at),
                    intent.last_error,
                ),
            )
            intent.id = cursor.lastrowid
        return intent

    def get_by_id(self, intent_id: int) -> Optional[NotificationIntent]:
        """Get queue row by ID."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM notification_queue WHERE id = ?", (intent_id,)
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_intent(row)

    def find_due(self, now: datetime, limit: int) -> list[NotificationIntent]:
        """Candidate rows whose visibility time has passed, high priority first."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM notification_queue
                WHERE status IN (?, ?) AND visible_after <= ?
                ORDER BY CASE priority WHEN ? THEN 0 ELSE 1 END,
                         visible_after ASC, id ASC
                LIMIT ?
                """,
                (STATUS_PENDING, STATUS_DEFERRED, to_iso(now), PRIORITY_HIGH, limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_intent(row) for row in rows]

    def claim(self, intent_id: int, now: datetime) -> bool:
        """Move a due row to processing if nobody else has."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE notification_queue
                SET status = ?, claimed_at = ?
                WHERE id = ? AND status IN (?, ?) AND visible_after <= ?
                """,
                (
                    STATUS_PROCESSING,
                    to_iso(now),
                    intent_id,
                    STATUS_PENDING,
                    STATUS_DEFERRED,
                    to_iso(now),
                ),
            )
            return cursor.rowcount == 1

    def mark_sent(self, intent_id: int, now: datetime) -> bool:
        """processing -> sent."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE notification_queue
                SET status = ?, sent_at = ?, claimed_at = NULL, last_error = NULL
                WHERE id = ? AND status = ?
                """,
                (STATUS_SENT, to_iso(now), intent_id, STATUS_PROCESSING),
            )
            return cursor.rowcount == 1

    def mark_failed(self, intent_id: int, error: str) -> bool:
        """processing -> failed, without consuming an attempt."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE notification_queue
                SET status = ?, last_error = ?, claimed_at = NULL
                WHERE id = ? AND status = ?
                """,
                (STATUS_FAILED, error, intent_id, STATUS_PROCESSING),
            )
            return cursor.rowcount == 1

    def record_attempt_failure(
        self,
        intent_id: int,
        expected_attempts: int,
        new_status: str,
        visible_after: datetime,
        error: str,
    ) -> bool:
        """processing -> deferred/failed with attempts incremented by one."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE notification_queue
                SET status = ?, attempts = attempts + 1, visible_after = ?,
                    last_error = ?, claimed_at = NULL
                WHERE id = ? AND status = ? AND attempts = ?
                """,
                (
                    new_status,
                    to_iso(visible_after),
                    error,
                    intent_id,
                    STATUS_PROCESSING,
                    expected_attempts,
                ),
            )
            return cursor.rowcount == 1

    def reset_failed(self, intent_id: int, now: datetime) -> bool:
        """failed -> pending at high priority, attempts incremented."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE notification_queue
                SET status = ?, attempts = attempts + 1, priority = ?,
                    visible_after = ?, claimed_at = NULL
                WHERE id = ? AND status = ?
                """,
                (STATUS_PENDING, PRIORITY_HIGH, to_iso(now), intent_id, STATUS_FAILED),
            )
            return cursor.rowcount == 1

    def release_stale_claims(self, cutoff: datetime, now: datetime) -> int:
        """Return rows stuck in processing since before cutoff to pending."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE notification_queue
                SET status = ?, claimed_at = NULL, visible_after = ?
                WHERE status = ? AND claimed_at IS NOT NULL AND claimed_at < ?
                """,
                (STATUS_PENDING, to_iso(now), STATUS_PROCESSING, to_iso(cutoff)),
            )
            return cursor.rowcount

    def delete_sent_before(self, cutoff: datetime) -> int:
        """Purge sent rows older than cutoff."""
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM notification_queue WHERE status = ? AND sent_at < ?",
                (STATUS_SENT, to_iso(cutoff)),
            )
            return cursor.rowcount

    def count_recent_for_user(self, user_id: int, now: datetime) -> int:
        """Notifications sent, or queued to send now, in the trailing hour."""
        since = to_iso(now - timedelta(hours=1))
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) AS n FROM notification_queue
                WHERE user_id = ?
                  AND (
                    (status = ? AND sent_at >= ?)
                    OR (status IN (?, ?) AND created_at >= ?)
                  )
                """,
                (
                    user_id,
                    STATUS_SENT,
                    since,
                    STATUS_PENDING,
                    STATUS_PROCESSING,
                    since,
                ),
            )
            return cursor.fetchone()["n"]

    def count_by_status(self) -> dict[str, int]:
        """Row counts per status."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT status, COUNT(*) AS n FROM notification_queue GROUP BY status"
            )
            rows = cursor.fetchall()
        return {row["status"]: row["n"] for row in rows}

    def get_user_history(
        self, user_id: int, limit: int = 50
    ) -> list[NotificationIntent]:
        """Get notification history for a user, newest first."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM notification_queue
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_intent(row) for row in rows]

    def _row_to_intent(self, row) -> NotificationIntent:
        """Convert database row to NotificationIntent."""
        return NotificationIntent(
            id=row["id"],
            user_id=row["user_id"],
            signal_id=row["signal_id"],
            rule_id=row["rule_id"],
            channel=row["channel"],
            title=row["title"],
            message=row["message"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            priority=row["priority"],
            visible_after=from_iso(row["visible_after"]),
            created_at=from_iso(row["created_at"]),
            sent_at=from_iso(row["sent_at"]),
            claimed_at=from_iso(row["claimed_at"]),
            last_error=row["last_error"],
        )


class DecisionLogRepository(_Repository):
    """Append-only smart-timing audit trail."""

    def append(self, entry: SmartTimingDecisionLog) -> SmartTimingDecisionLog:
        """Append a decision record."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO smart_timing_decisions
                (user_id, ticker, signal_type, should_send, reason, delay_seconds,
                 urgency, market_conditions, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.user_id,
                    entry.ticker,
                    entry.signal_type,
                    1 if entry.should_send else 0,
                    entry.reason,
                    entry.delay_seconds,
                    entry.urgency,
                    json.dumps(entry.market_conditions or {}, default=str),
                    to_iso(entry.timestamp),
                ),
            )
            entry.id = cursor.lastrowid
        return entry

    def list_for_user(
        self, user_id: int, limit: int = 100
    ) -> list[SmartTimingDecisionLog]:
        """Most recent decisions for a user."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM smart_timing_decisions
                WHERE user_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [
            SmartTimingDecisionLog(
                id=row["id"],
                user_id=row["user_id"],
                ticker=row["ticker"],
                signal_type=row["signal_type"],
                should_send=bool(row["should_send"]),
                reason=row["reason"],
                delay_seconds=row["delay_seconds"],
                urgency=row["urgency"],
                market_conditions=json.loads(row["market_conditions"]),
                timestamp=from_iso(row["timestamp"]),
            )
            for row in rows
        ]


def _hour_to_text(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _text_to_hour(value: Optional[str]):
    """Stored quiet-hour bounds come back as int hours when they were ints."""
    if value is None:
        return None
    if value.isdigit():
        return int(value)
    return value
