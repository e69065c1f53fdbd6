"""
Smart-timing gate.

Decides whether a matched alert is sent now, deferred, or dropped. The
decision itself (``decide``) is a pure function of its inputs; the
``SmartTimingGate`` service gathers those inputs from the datastore and
appends every outcome to the decision log.

Rules are applied in precedence order, first match wins:

1. critical urgency sends immediately
2. quiet hours defer until the window ends (high urgency passes)
3. the hourly cap defers until the next hour boundary
4. low-frequency users drop minor signals outright
5. volatility above the user's threshold defers by a fixed pause
6. otherwise send
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sigalert.database.models import (
    SIGNAL_FREQUENCIES,
    Signal,
    SmartTimingDecisionLog,
    SmartTimingPreference,
)
from sigalert.database.repository import (
    DecisionLogRepository,
    NotificationRepository,
    PreferenceRepository,
)
from sigalert.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SIGNAL_MINOR = "minor"
SIGNAL_MAJOR = "major"


@dataclass
class GateSettings:
    """Fallbacks used when a user has no preference record."""

    default_max_hourly_notifications: int = 5
    default_volatility_threshold: float = 0.1
    volatility_pause_seconds: int = 1800
    minor_strategies: list[str] = field(default_factory=list)


@dataclass
class TimingDecision:
    """Outcome of the gate."""

    should_send: bool
    reason: str
    delay_seconds: int = 0
    urgency: str = "normal"

    @property
    def is_drop(self) -> bool:
        """Suppressed with nothing to retry later."""
        return not self.should_send and self.delay_seconds <= 0

    def suggested_send_time(self, now: datetime) -> Optional[datetime]:
        if self.should_send:
            return ensure_utc(now)
        if self.delay_seconds > 0:
            return ensure_utc(now) + timedelta(seconds=self.delay_seconds)
        return None


def classify_signal(signal: Signal, minor_strategies: Optional[list[str]] = None) -> str:
    """Hold signals and signals from configured strategies are minor."""
    if signal.action == "hold":
        return SIGNAL_MINOR
    strategies = {s.lower() for s in (minor_strategies or [])}
    if signal.strategy and signal.strategy.lower() in strategies:
        return SIGNAL_MINOR
    return SIGNAL_MAJOR


def parse_clock_time(value: Any) -> int:
    """
    Convert a quiet-hours bound to minutes since midnight.

    Args:
        value: Hour as int (0-23) or an "HH" / "HH:MM" string

    Raises:
        ValueError: If the value is not a valid time of day
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid time of day: {value!r}")
    if isinstance(value, int):
        hour, minute = value, 0
    elif isinstance(value, str):
        parts = value.strip().split(":")
        if len(parts) not in (1, 2) or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid time of day: {value!r}")
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) == 2 else 0
    else:
        raise ValueError(f"Invalid time of day: {value!r}")

    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour * 60 + minute


def in_quiet_window(minute_of_day: int, start: int, end: int) -> bool:
    """Half-open [start, end) window that may wrap past midnight."""
    if start == end:
        return False
    if start < end:
        return start <= minute_of_day < end
    return minute_of_day >= start or minute_of_day < end


def seconds_until_local_time(now: datetime, tz: ZoneInfo, minute_of_day: int) -> int:
    """Seconds from now until the next occurrence of a local wall-clock time."""
    local = ensure_utc(now).astimezone(tz)
    target = local.replace(
        hour=minute_of_day // 60, minute=minute_of_day % 60, second=0, microsecond=0
    )
    if target <= local:
        target = target + timedelta(days=1)
    delta = target.astimezone(timezone.utc) - ensure_utc(now)
    return max(0, math.ceil(delta.total_seconds()))


def seconds_until_next_hour(now: datetime) -> int:
    """Seconds remaining until the next top of the hour."""
    current = ensure_utc(now)
    boundary = current.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return math.ceil((boundary - current).total_seconds())


def validate_preferences(
    prefs: SmartTimingPreference,
) -> tuple[ZoneInfo, Optional[tuple[int, int]]]:
    """Check a preference record, returning its timezone and quiet window.

    Raises:
        ValueError: On any malformed value
    """
    try:
        tz = ZoneInfo(prefs.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone {prefs.timezone!r}") from e

    window = None
    start, end = prefs.quiet_hours_start, prefs.quiet_hours_end
    if start is not None and end is not None:
        window = (parse_clock_time(start), parse_clock_time(end))
    elif start is not None or end is not None:
        raise ValueError("quiet hours need both start and end")

    if prefs.max_hourly_notifications is None or prefs.max_hourly_notifications < 0:
        raise ValueError(
            f"max_hourly_notifications must be >= 0: {prefs.max_hourly_notifications!r}"
        )
    if prefs.volatility_threshold is None or prefs.volatility_threshold < 0:
        raise ValueError(
            f"volatility_threshold must be >= 0: {prefs.volatility_threshold!r}"
        )
    if prefs.signal_frequency not in SIGNAL_FREQUENCIES:
        raise ValueError(f"unknown signal_frequency {prefs.signal_frequency!r}")
    return tz, window


def decide(
    prefs: Optional[SmartTimingPreference],
    recent_count: int,
    now: datetime,
    urgency: str = "normal",
    market_conditions: Optional[dict[str, Any]] = None,
    signal_type: str = SIGNAL_MAJOR,
    settings: Optional[GateSettings] = None,
) -> TimingDecision:
    """
    Decide send-now / delay / drop for one candidate notification.

    Args:
        prefs: The user's preference record, or None for defaults
        recent_count: Notifications to this user in the trailing hour
        now: Current time
        urgency: "low", "normal", "high" or "critical"
        market_conditions: Optional dict, "volatility" is read
        signal_type: "minor" or "major"
        settings: Fallback thresholds

    Returns:
        TimingDecision; malformed preferences always yield a drop
    """
    settings = settings or GateSettings()
    urgency = str(urgency or "normal").lower()
    signal_type = str(signal_type or SIGNAL_MAJOR).lower()
    market_conditions = market_conditions or {}

    if urgency == "critical":
        return TimingDecision(True, "critical override", 0, urgency)

    if prefs is None:
        prefs = SmartTimingPreference(
            user_id=0,
            max_hourly_notifications=settings.default_max_hourly_notifications,
            volatility_threshold=settings.default_volatility_threshold,
        )

    if not prefs.enabled:
        return TimingDecision(True, "smart timing disabled", 0, urgency)

    try:
        tz, window = validate_preferences(prefs)
    except ValueError as e:
        return TimingDecision(False, f"invalid timing preferences: {e}", 0, urgency)

    if window is not None and urgency != "high":
        local = ensure_utc(now).astimezone(tz)
        if in_quiet_window(local.hour * 60 + local.minute, *window):
            delay = seconds_until_local_time(now, tz, window[1])
            return TimingDecision(False, "quiet hours active", delay, urgency)

    if recent_count >= prefs.max_hourly_notifications:
        return TimingDecision(
            False,
            "hourly notification limit reached",
            seconds_until_next_hour(now),
            urgency,
        )

    if prefs.signal_frequency == "low" and signal_type == SIGNAL_MINOR:
        return TimingDecision(
            False, "low frequency preference drops minor signals", 0, urgency
        )

    volatility = market_conditions.get("volatility")
    if volatility is not None and prefs.high_volatility_pause:
        try:
            volatility = float(volatility)
        except (TypeError, ValueError):
            return TimingDecision(
                False, f"invalid market volatility: {volatility!r}", 0, urgency
            )
        if volatility > prefs.volatility_threshold:
            return TimingDecision(
                False,
                "high volatility pause",
                settings.volatility_pause_seconds,
                urgency,
            )

    return TimingDecision(True, "signal meets sending criteria", 0, urgency)


class SmartTimingGate:
    """Loads gate inputs from the datastore and logs every decision."""

    def __init__(
        self,
        pref_repo: PreferenceRepository,
        notification_repo: NotificationRepository,
        decision_repo: DecisionLogRepository,
        settings: Optional[GateSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pref_repo = pref_repo
        self.notification_repo = notification_repo
        self.decision_repo = decision_repo
        self.settings = settings or GateSettings()
        self.clock = clock

    def evaluate(
        self,
        user_id: int,
        ticker: str,
        signal_type: str = SIGNAL_MAJOR,
        urgency: str = "normal",
        market_conditions: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> TimingDecision:
        """
        Decide for one user and ticker, then record the decision.

        Returns:
            TimingDecision
        """
        now = now or self.clock()
        prefs = self.pref_repo.get_for(user_id, ticker)
        recent = self.notification_repo.count_recent_for_user(user_id, now)

        decision = decide(
            prefs,
            recent,
            now,
            urgency=urgency,
            market_conditions=market_conditions,
            signal_type=signal_type,
            settings=self.settings,
        )

        self.decision_repo.append(
            SmartTimingDecisionLog(
                user_id=user_id,
                ticker=ticker,
                signal_type=signal_type,
                should_send=decision.should_send,
                reason=decision.reason,
                delay_seconds=decision.delay_seconds,
                urgency=decision.urgency,
                timestamp=now,
                market_conditions=dict(market_conditions or {}),
            )
        )

        if decision.should_send:
            logger.debug(f"Gate: send to user {user_id} for {ticker} ({decision.reason})")
        elif decision.delay_seconds > 0:
            logger.info(
                f"Gate: defer user {user_id} {ticker} by {decision.delay_seconds}s "
                f"({decision.reason})"
            )
        else:
            logger.info(f"Gate: drop user {user_id} {ticker} ({decision.reason})")
        return decision
