"""
Signal-to-notification pipeline.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sigalert.config import AppConfig
from sigalert.data.price_feed import PriceQuote, YahooPriceFeed
from sigalert.database.connection import Database
from sigalert.database.models import (
    AlertRule,
    NotificationIntent,
    Signal,
    SmartTimingPreference,
)
from sigalert.database.repository import (
    AlertRuleRepository,
    DecisionLogRepository,
    NotificationRepository,
    PreferenceRepository,
    SignalRepository,
    UserRepository,
)
from sigalert.dispatch.dispatcher import BatchResult, DeliveryDispatcher
from sigalert.dispatch.queue import NotificationQueue
from sigalert.errors import ConcurrencyConflict, NotFoundError, ValidationError
from sigalert.notifiers.base import Notifier, NotifierFactory
from sigalert.realtime.broadcaster import SIGNALS_CHANNEL, Broadcaster
from sigalert.rules.matcher import AlertRuleMatcher
from sigalert.signals.store import SignalStore
from sigalert.timeutil import utcnow
from sigalert.timing.gate import (
    SIGNAL_MAJOR,
    GateSettings,
    SmartTimingGate,
    TimingDecision,
    classify_signal,
    validate_preferences,
)

logger = logging.getLogger(__name__)

CONDITION_LABELS = {
    "price_above": "price at or above",
    "price_below": "price at or below",
    "change_above": "change at or above",
    "change_below": "change at or below",
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"expected true or false: {value!r}")


def _as_clock_time(value: Any) -> Any:
    # None clears the bound; the format is checked with the whole record
    return value


# Fields a user may change, with the conversion applied to each
PREFERENCE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "enabled": _as_bool,
    "quiet_hours_start": _as_clock_time,
    "quiet_hours_end": _as_clock_time,
    "timezone": str,
    "max_hourly_notifications": int,
    "volatility_threshold": float,
    "high_volatility_pause": _as_bool,
    "signal_frequency": lambda value: str(value).lower(),
}


def in_cooldown(rule: AlertRule, now: datetime, cooldown: timedelta) -> bool:
    """True when a repeating rule fired less than ``cooldown`` ago."""
    if rule.one_shot or rule.triggered_at is None or cooldown <= timedelta(0):
        return False
    return now - rule.triggered_at < cooldown


@dataclass
class RuleOutcome:
    """What happened for one matched rule."""

    rule_id: int
    user_id: int
    decision: Optional[TimingDecision]
    queued_ids: list[int] = field(default_factory=list)
    conflict: bool = False


@dataclass
class PipelineResult:
    """Result of handling one signal or quote."""

    signal: Optional[Signal] = None
    outcomes: list[RuleOutcome] = field(default_factory=list)

    @property
    def queued_ids(self) -> list[int]:
        return [i for outcome in self.outcomes for i in outcome.queued_ids]

    @property
    def deferred(self) -> int:
        return sum(
            1
            for o in self.outcomes
            if o.decision and not o.decision.should_send and o.decision.delay_seconds > 0
        )

    @property
    def dropped(self) -> int:
        return sum(1 for o in self.outcomes if o.decision and o.decision.is_drop)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.to_dict() if self.signal else None,
            "matched_rules": len(self.outcomes),
            "notifications_queued": len(self.queued_ids),
            "deferred": self.deferred,
            "dropped": self.dropped,
        }


class SignalAlertApp:
    """Main signal alert application."""

    def __init__(
        self,
        db: Database,
        config: Optional[AppConfig] = None,
        notifiers: Optional[dict[str, Notifier]] = None,
        broadcaster: Optional[Broadcaster] = None,
        price_feed: Optional[YahooPriceFeed] = None,
        market_conditions_provider: Optional[Callable[[str], dict]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the app.

        Args:
            db: Database instance (already initialized)
            config: Application config; defaults apply when omitted
            notifiers: Channel adapters; built from config when omitted
            broadcaster: Realtime fan-out; a fresh one when omitted
            price_feed: Quote source for price rules
            market_conditions_provider: ticker -> {"volatility": ...} for webhooks
            clock: Time source
        """
        self.db = db
        self.config = config or AppConfig()
        self.clock = clock
        self.broadcaster = broadcaster or Broadcaster()
        self.price_feed = price_feed
        self.market_conditions_provider = market_conditions_provider

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.signal_repo = SignalRepository(db)
        self.rule_repo = AlertRuleRepository(db)
        self.pref_repo = PreferenceRepository(db)
        self.notification_repo = NotificationRepository(db)
        self.decision_repo = DecisionLogRepository(db)

        # Initialize services
        dispatcher_cfg = self.config.dispatcher
        timing_cfg = self.config.timing
        self.store = SignalStore(self.signal_repo, clock=clock)
        self.matcher = AlertRuleMatcher(self.rule_repo)
        self.gate = SmartTimingGate(
            self.pref_repo,
            self.notification_repo,
            self.decision_repo,
            settings=GateSettings(
                default_max_hourly_notifications=timing_cfg.default_max_hourly_notifications,
                default_volatility_threshold=timing_cfg.default_volatility_threshold,
                volatility_pause_seconds=timing_cfg.volatility_pause_seconds,
                minor_strategies=list(timing_cfg.minor_strategies),
            ),
            clock=clock,
        )
        self.queue = NotificationQueue(
            db,
            self.notification_repo,
            self.rule_repo,
            max_attempts=dispatcher_cfg.max_attempts,
            clock=clock,
        )
        if notifiers is None:
            notifiers = NotifierFactory.create_all(self.config.channels, self.broadcaster)
        self.dispatcher = DeliveryDispatcher(
            self.queue,
            self.user_repo,
            notifiers,
            backoff_base_seconds=dispatcher_cfg.backoff_base_seconds,
            backoff_cap_seconds=dispatcher_cfg.backoff_cap_seconds,
        )

    def handle_webhook(self, payload: dict[str, Any]) -> PipelineResult:
        """
        Ingest a webhook signal and queue notifications for matching rules.

        Raises:
            ValidationError: If the payload is invalid (nothing is stored)
        """
        signal = self.store.ingest(payload)
        self._broadcast_signal(signal)

        urgency = payload.get("urgency") or "normal"
        market_conditions = self._market_conditions(signal.ticker, payload)
        signal_type = payload.get("signal_type")
        if signal_type:
            signal_type = str(signal_type).strip().lower()
        else:
            signal_type = classify_signal(signal, self.config.timing.minor_strategies)

        result = PipelineResult(signal=signal)
        for rule in self.matcher.match(signal):
            title = f"{signal.action.upper()} Signal: {signal.ticker}"
            message = f"{signal.message} - Price: ${signal.price:,.2f}"
            result.outcomes.append(
                self._trigger(
                    rule,
                    title,
                    message,
                    signal_id=signal.id,
                    signal_type=signal_type,
                    urgency=urgency,
                    market_conditions=market_conditions,
                )
            )

        logger.info(
            f"Signal {signal.id} {signal.ticker}: {len(result.outcomes)} rules matched, "
            f"{len(result.queued_ids)} notifications queued"
        )
        return result

    def check_prices(self, quotes: Iterable[PriceQuote]) -> PipelineResult:
        """
        Evaluate price and change rules against current quotes.

        Repeating rules that fired within the cooldown window are skipped.
        """
        result = PipelineResult()
        now = self.clock()
        cooldown = timedelta(hours=self.config.market_data.alert_cooldown_hours)
        for quote in quotes:
            for rule in self.matcher.match_quote(quote):
                # Check cooldown
                if in_cooldown(rule, now, cooldown):
                    logger.debug(f"Rule {rule.id} fired at {rule.triggered_at}, in cooldown")
                    continue
                label = CONDITION_LABELS.get(rule.condition, rule.condition)
                unit = "%" if rule.condition.startswith("change") else ""
                title = f"Price Alert: {quote.ticker}"
                message = (
                    f"{quote.ticker} {label} {rule.target_value:g}{unit} - "
                    f"Price: ${quote.price:,.2f} ({quote.change_pct:+.2f}%)"
                )
                result.outcomes.append(
                    self._trigger(
                        rule,
                        title,
                        message,
                        signal_id=None,
                        signal_type=SIGNAL_MAJOR,
                        urgency="normal",
                        market_conditions=quote.market_conditions,
                    )
                )
        return result

    def sync_prices(self) -> PipelineResult:
        """Fetch quotes for every ticker with active rules and check them."""
        if self.price_feed is None:
            self.price_feed = YahooPriceFeed(self.config.market_data.lookback_days)
        tickers = self.rule_repo.list_active_tickers()
        if not tickers:
            return PipelineResult()
        quotes = self.price_feed.get_quotes(tickers)
        return self.check_prices(quotes.values())

    def _trigger(
        self,
        rule: AlertRule,
        title: str,
        message: str,
        signal_id: Optional[int],
        signal_type: str,
        urgency: str,
        market_conditions: dict,
    ) -> RuleOutcome:
        """Gate one matched rule and commit its intents."""
        outcome = RuleOutcome(rule_id=rule.id, user_id=rule.user_id, decision=None)
        try:
            user = self.user_repo.get_by_id(rule.user_id)
            channels = user.channels if user and user.channels else ["app"]

            decision = self.gate.evaluate(
                rule.user_id,
                rule.ticker,
                signal_type=signal_type,
                urgency=urgency,
                market_conditions=market_conditions,
            )
            outcome.decision = decision

            intents = [
                NotificationIntent(
                    user_id=rule.user_id,
                    channel=channel,
                    title=title,
                    message=message,
                    signal_id=signal_id,
                    rule_id=rule.id,
                    max_attempts=self.config.dispatcher.max_attempts,
                )
                for channel in channels
            ]
            outcome.queued_ids = self.queue.commit_trigger(rule, intents, decision)
        except ConcurrencyConflict as e:
            logger.info(f"Skipping rule {rule.id}: {e}")
            outcome.conflict = True
        return outcome

    def _broadcast_signal(self, signal: Signal) -> None:
        try:
            self.broadcaster.publish(SIGNALS_CHANNEL, "new_signal", signal.to_dict())
        except Exception as e:
            logger.warning(f"Realtime broadcast failed for signal {signal.id}: {e}")

    def _market_conditions(self, ticker: str, payload: dict[str, Any]) -> dict:
        reported = payload.get("marketConditions") or payload.get("market_conditions")
        if isinstance(reported, dict):
            return reported
        if self.market_conditions_provider is None:
            return {}
        try:
            return self.market_conditions_provider(ticker) or {}
        except Exception as e:
            logger.warning(f"Market conditions unavailable for {ticker}: {e}")
            return {}

    def should_send(
        self,
        user_id: int,
        ticker: str,
        signal_type: str = SIGNAL_MAJOR,
        urgency: str = "normal",
        market_conditions: Optional[dict] = None,
    ) -> TimingDecision:
        """Ad-hoc smart-timing query for one user."""
        return self.gate.evaluate(
            user_id,
            ticker.upper(),
            signal_type=str(signal_type or SIGNAL_MAJOR).lower(),
            urgency=urgency,
            market_conditions=market_conditions,
        )

    def get_preferences(
        self, user_id: int, ticker: Optional[str] = None
    ) -> tuple[SmartTimingPreference, bool]:
        """
        Load the preference record for (user, ticker).

        Returns:
            (preference, is_default); defaults come from the timing config
            when no record exists
        """
        ticker = ticker.upper() if ticker else None
        pref = self.pref_repo.get_exact(user_id, ticker)
        if pref is not None:
            return pref, False
        timing_cfg = self.config.timing
        default = SmartTimingPreference(
            user_id=user_id,
            ticker_symbol=ticker,
            max_hourly_notifications=timing_cfg.default_max_hourly_notifications,
            volatility_threshold=timing_cfg.default_volatility_threshold,
        )
        return default, True

    def update_preferences(
        self, user_id: int, fields: dict[str, Any], ticker: Optional[str] = None
    ) -> SmartTimingPreference:
        """
        Create or update a user's smart-timing preference.

        Unknown keys are ignored. The merged record must pass the same checks
        the gate applies before it is saved.

        Raises:
            ValidationError: If no known field is given or a value is invalid
            NotFoundError: If the user does not exist
        """
        if self.user_repo.get_by_id(user_id) is None:
            raise NotFoundError(f"User not found: {user_id}")
        updates = {k: v for k, v in fields.items() if k in PREFERENCE_FIELDS}
        if not updates:
            raise ValidationError("No valid fields to update")

        pref, _ = self.get_preferences(user_id, ticker)
        for key, value in updates.items():
            try:
                setattr(pref, key, PREFERENCE_FIELDS[key](value))
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid {key}: {value!r}", field=key) from e

        try:
            validate_preferences(pref)
        except ValueError as e:
            raise ValidationError(f"Invalid preferences: {e}") from e

        pref = self.pref_repo.upsert(pref)
        logger.info(f"Saved smart-timing preferences {pref.id} for user {user_id}")
        return pref

    def process_queue(self, limit: Optional[int] = None) -> BatchResult:
        """Deliver due notifications (one poll tick or a forced drain)."""
        return self.dispatcher.process_due(limit or self.config.dispatcher.batch_size)

    def retry_notification(self, intent_id: int) -> NotificationIntent:
        return self.queue.retry(intent_id)

    def maintenance(self) -> dict[str, int]:
        """Release abandoned claims and purge old sent rows."""
        cfg = self.config.dispatcher
        return {
            "released": self.queue.release_stale_claims(cfg.claim_timeout_seconds),
            "purged": self.queue.purge_sent(cfg.retention_days),
        }
