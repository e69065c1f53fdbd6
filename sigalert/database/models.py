"""
Data models for the signal dispatch service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# Signal actions
ACTIONS = ("buy", "sell", "hold")

# Alert rule conditions
CONDITIONS = ("price_above", "price_below", "change_above", "change_below")

# Delivery channels
CHANNELS = ("app", "email", "sms", "telegram")

# Notification intent lifecycle
STATUS_PENDING = "pending"
STATUS_DEFERRED = "deferred"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUSES = (
    STATUS_PENDING,
    STATUS_DEFERRED,
    STATUS_PROCESSING,
    STATUS_SENT,
    STATUS_FAILED,
)

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"

URGENCIES = ("low", "normal", "high", "critical")
SIGNAL_FREQUENCIES = ("low", "medium", "high")


@dataclass
class Signal:
    """Timestamped trading event for a ticker."""

    ticker: str
    action: str  # "buy", "sell", "hold"
    price: float
    timestamp: datetime
    timeframe: str = "1h"
    strategy: str = "tradingview"
    message: str = ""
    source: str = "tradingview_webhook"
    is_active: bool = True
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticker": self.ticker,
            "action": self.action,
            "price": self.price,
            "timeframe": self.timeframe,
            "strategy": self.strategy,
            "message": self.message,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "is_active": self.is_active,
        }


@dataclass
class AlertRule:
    """User-owned condition on a ticker."""

    user_id: int
    ticker: str
    condition: str  # "price_above", "price_below", "change_above", "change_below"
    target_value: float
    is_active: bool = True
    one_shot: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    triggered_at: Optional[datetime] = None


@dataclass
class SmartTimingPreference:
    """Per-user timing preferences, optionally scoped to one ticker."""

    user_id: int
    ticker_symbol: Optional[str] = None  # None = global default
    enabled: bool = True
    quiet_hours_start: Optional[Any] = None  # hour (int) or "HH:MM"
    quiet_hours_end: Optional[Any] = None
    timezone: str = "UTC"
    max_hourly_notifications: int = 5
    volatility_threshold: float = 0.1
    high_volatility_pause: bool = False
    signal_frequency: str = "medium"  # "low", "medium", "high"
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ticker_symbol": self.ticker_symbol,
            "enabled": self.enabled,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
            "timezone": self.timezone,
            "max_hourly_notifications": self.max_hourly_notifications,
            "volatility_threshold": self.volatility_threshold,
            "high_volatility_pause": self.high_volatility_pause,
            "signal_frequency": self.signal_frequency,
        }


@dataclass
class UserProfile:
    """Delivery destinations and enabled channels for a user."""

    id: Optional[int] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    channels: list[str] = field(default_factory=lambda: ["app"])
    created_at: Optional[datetime] = None

    def destination_for(self, channel: str) -> Optional[str]:
        """Return the address for a channel, or None when not set up."""
        if channel not in self.channels:
            return None
        if channel == "app":
            return str(self.id) if self.id is not None else None
        if channel == "email":
            return self.email or None
        if channel == "sms":
            return self.phone or None
        if channel == "telegram":
            return self.telegram_chat_id or None
        return None


@dataclass
class NotificationIntent:
    """Queued delivery of one notification to one user on one channel."""

    user_id: int
    channel: str  # "app", "email", "sms", "telegram"
    title: str
    message: str
    signal_id: Optional[int] = None
    rule_id: Optional[int] = None
    status: str = STATUS_PENDING
    attempts: int = 0
    max_attempts: int = 3
    priority: str = PRIORITY_NORMAL
    visible_after: Optional[datetime] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "signal_id": self.signal_id,
            "rule_id": self.rule_id,
            "channel": self.channel,
            "title": self.title,
            "message": self.message,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "visible_after": iso(self.visible_after),
            "created_at": iso(self.created_at),
            "sent_at": iso(self.sent_at),
            "last_error": self.last_error,
        }


@dataclass
class SmartTimingDecisionLog:
    """Append-only audit record of a gate decision."""

    user_id: int
    ticker: str
    signal_type: str
    should_send: bool
    reason: str
    delay_seconds: int
    urgency: str
    timestamp: datetime
    market_conditions: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
