"""
Integration tests.
End-to-end tests for the complete signal-to-notification flow.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from sigalert.app import SignalAlertApp
from sigalert.data.price_feed import PriceQuote
from sigalert.database.models import (
    AlertRule,
    SmartTimingPreference,
    UserProfile,
    PRIORITY_HIGH,
    STATUS_DEFERRED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
)
from sigalert.errors import ValidationError
from sigalert.notifiers.app import AppNotifier
from sigalert.realtime.broadcaster import SIGNALS_CHANNEL, user_channel


@pytest.fixture
def rule(alert_app, user):
    """One-shot rule on BTCUSDT."""
    return alert_app.rule_repo.create(
        AlertRule(user.id, "BTCUSDT", "price_above", 40000), alert_app.clock()
    )


class TestFullSignalFlow:
    """Test the webhook path from ingestion to delivery."""

    def test_signal_to_delivery(self, alert_app, user, rule, btc_payload, broadcaster, clock):
        """Should queue one intent, consume the rule and deliver in-app."""
        signals, notifications = [], []
        broadcaster.subscribe(SIGNALS_CHANNEL, signals.append)
        broadcaster.subscribe(user_channel(user.id), notifications.append)

        result = alert_app.handle_webhook(btc_payload)

        assert result.signal.id is not None
        assert len(result.queued_ids) == 1
        intent = alert_app.queue.get(result.queued_ids[0])
        assert intent.status == STATUS_PENDING
        assert intent.channel == "app"
        assert intent.title == "BUY Signal: BTCUSDT"
        assert intent.message == "EMA cross up - Price: $45,000.00"
        assert intent.signal_id == result.signal.id
        assert intent.visible_after == clock()
        assert alert_app.rule_repo.get_by_id(rule.id).is_active is False
        assert signals[0].event == "new_signal"
        assert signals[0].payload["ticker"] == "BTCUSDT"

        batch = alert_app.process_queue()

        assert batch.sent == 1
        assert alert_app.queue.get(intent.id).status == STATUS_SENT
        assert notifications[0].payload["id"] == intent.id

    def test_one_shot_rule_fires_once(self, alert_app, user, rule, btc_payload):
        alert_app.handle_webhook(btc_payload)
        second = alert_app.handle_webhook(btc_payload)

        assert second.outcomes == []
        assert alert_app.queue.stats()["total"] == 1

    def test_no_matching_rules(self, alert_app, user, rule):
        result = alert_app.handle_webhook({"ticker": "ETHUSDT", "action": "sell", "price": 2500})
        assert result.outcomes == []
        assert result.signal.ticker == "ETHUSDT"

    def test_invalid_payload_stores_nothing(self, alert_app, user, rule, btc_payload):
        """Should reject the signal without side effects."""
        btc_payload["price"] = 0
        with pytest.raises(ValidationError):
            alert_app.handle_webhook(btc_payload)

        assert alert_app.store.list_recent(active_only=False) == []
        assert alert_app.queue.stats()["total"] == 0
        assert alert_app.rule_repo.get_by_id(rule.id).is_active is True

    def test_one_intent_per_enabled_channel(self, alert_app, clock, btc_payload):
        """Should fan out to every channel the user enabled."""
        user = alert_app.user_repo.create(
            UserProfile(email="trader@example.com", channels=["app", "email"]), clock()
        )
        alert_app.rule_repo.create(AlertRule(user.id, "BTCUSDT", "price_above", 1), clock())

        result = alert_app.handle_webhook(btc_payload)

        channels = sorted(alert_app.queue.get(i).channel for i in result.queued_ids)
        assert channels == ["app", "email"]

        # No email adapter is wired in this app
        batch = alert_app.process_queue()
        assert batch.sent == 1
        assert batch.failed == 1


class TestSmartTimingInPipeline:
    """Test gate decisions applied to real signals."""

    def test_volatility_deferral(self, alert_app, user, rule, btc_payload, clock):
        """Should defer by the pause and deliver once it elapses."""
        alert_app.pref_repo.upsert(
            SmartTimingPreference(
                user_id=user.id, high_volatility_pause=True, volatility_threshold=0.1
            )
        )
        btc_payload["marketConditions"] = {"volatility": 0.15}

        result = alert_app.handle_webhook(btc_payload)

        assert result.deferred == 1
        intent = alert_app.queue.get(result.queued_ids[0])
        assert intent.status == STATUS_DEFERRED
        assert intent.visible_after == clock() + timedelta(seconds=1800)
        decisions = alert_app.decision_repo.list_for_user(user.id)
        assert "volatility" in decisions[0].reason
        assert decisions[0].market_conditions == {"volatility": 0.15}

        assert alert_app.process_queue().processed == 0
        clock.advance(1800)
        assert alert_app.process_queue().sent == 1

    def test_market_conditions_provider(self, db, clock, broadcaster, btc_payload):
        """Should ask the provider when the payload carries no conditions."""
        provider = Mock(return_value={"volatility": 0.5})
        app = SignalAlertApp(
            db=db,
            notifiers={"app": AppNotifier(broadcaster)},
            broadcaster=broadcaster,
            market_conditions_provider=provider,
            clock=clock,
        )
        user = app.user_repo.create(UserProfile(), clock())
        app.rule_repo.create(AlertRule(user.id, "BTCUSDT", "price_above", 1), clock())
        app.pref_repo.upsert(SmartTimingPreference(user_id=user.id, high_volatility_pause=True))

        result = app.handle_webhook(btc_payload)

        provider.assert_called_once_with("BTCUSDT")
        assert result.deferred == 1

    def test_quiet_hours_defer_to_morning(self, alert_app, user, rule, btc_payload, clock):
        clock.set(datetime(2024, 1, 15, 23, 0, tzinfo=timezone.utc))
        alert_app.pref_repo.upsert(
            SmartTimingPreference(user_id=user.id, quiet_hours_start=22, quiet_hours_end=7)
        )

        result = alert_app.handle_webhook(btc_payload)

        intent = alert_app.queue.get(result.queued_ids[0])
        assert intent.visible_after == datetime(2024, 1, 16, 7, 0, tzinfo=timezone.utc)

    def test_critical_bypasses_quiet_hours(self, alert_app, user, rule, btc_payload, clock):
        clock.set(datetime(2024, 1, 15, 23, 0, tzinfo=timezone.utc))
        alert_app.pref_repo.upsert(
            SmartTimingPreference(user_id=user.id, quiet_hours_start=22, quiet_hours_end=7)
        )
        btc_payload["urgency"] = "critical"

        result = alert_app.handle_webhook(btc_payload)

        assert alert_app.queue.get(result.queued_ids[0]).status == STATUS_PENDING

    def test_hourly_cap(self, alert_app, user, btc_payload, clock):
        """Should defer the second notification of the hour to the next hour."""
        clock.set(datetime(2024, 1, 15, 12, 15, tzinfo=timezone.utc))
        alert_app.rule_repo.create(
            AlertRule(user.id, "BTCUSDT", "price_above", 1, one_shot=False), clock()
        )
        alert_app.pref_repo.upsert(
            SmartTimingPreference(user_id=user.id, max_hourly_notifications=1)
        )

        first = alert_app.handle_webhook(btc_payload)
        second = alert_app.handle_webhook(btc_payload)

        assert alert_app.queue.get(first.queued_ids[0]).status == STATUS_PENDING
        deferred = alert_app.queue.get(second.queued_ids[0])
        assert deferred.status == STATUS_DEFERRED
        assert deferred.visible_after == datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)

    def test_low_frequency_drops_hold(self, alert_app, user, rule, clock):
        """Should drop minor signals and still consume the one-shot rule."""
        alert_app.pref_repo.upsert(
            SmartTimingPreference(user_id=user.id, signal_frequency="low")
        )

        result = alert_app.handle_webhook({"ticker": "BTCUSDT", "action": "hold", "price": 45000})

        assert result.dropped == 1
        assert result.queued_ids == []
        assert alert_app.queue.stats()["total"] == 0
        assert alert_app.rule_repo.get_by_id(rule.id).is_active is False

    def test_payload_signal_type_is_case_insensitive(self, alert_app, user, rule, btc_payload):
        alert_app.pref_repo.upsert(
            SmartTimingPreference(user_id=user.id, signal_frequency="low")
        )
        btc_payload["signal_type"] = "MINOR"

        result = alert_app.handle_webhook(btc_payload)

        assert result.dropped == 1
        assert alert_app.decision_repo.list_for_user(user.id)[0].signal_type == "minor"


class TestConcurrency:
    """Test duplicate deliveries of the same signal."""

    def test_concurrent_duplicate_webhooks(self, alert_app, user, rule, btc_payload):
        """Should create intents for a one-shot rule exactly once."""
        errors = []
        barrier = threading.Barrier(4)

        def post():
            try:
                barrier.wait()
                alert_app.handle_webhook(dict(btc_payload))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=post) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert alert_app.queue.stats()["total"] == 1
        assert alert_app.rule_repo.get_by_id(rule.id).is_active is False
        assert len(alert_app.store.list_recent()) == 4


class TestRetryFlow:
    """Test failure and manual retry."""

    def test_unconfigured_channel_then_retry(self, alert_app, clock, btc_payload):
        """Should fail with channel not configured and allow a manual retry."""
        user = alert_app.user_repo.create(UserProfile(channels=["email"]), clock())
        alert_app.rule_repo.create(AlertRule(user.id, "BTCUSDT", "price_above", 1), clock())
        result = alert_app.handle_webhook(btc_payload)
        intent_id = result.queued_ids[0]

        alert_app.process_queue()
        failed = alert_app.queue.get(intent_id)
        assert failed.status == STATUS_FAILED
        assert failed.last_error == "channel not configured"

        retried = alert_app.retry_notification(intent_id)
        assert retried.status == STATUS_PENDING
        assert retried.attempts == 1
        assert retried.priority == PRIORITY_HIGH

    def test_maintenance(self, alert_app, user, rule, btc_payload, clock):
        alert_app.handle_webhook(btc_payload)
        alert_app.process_queue()
        clock.advance(31 * 86400)

        assert alert_app.maintenance() == {"released": 0, "purged": 1}


class TestPricePath:
    """Test the market-data sync path."""

    def test_check_prices(self, alert_app, user, clock):
        """Should fire condition rules against quotes, ties included."""
        hit = alert_app.rule_repo.create(
            AlertRule(user.id, "BTCUSDT", "price_above", 50000), clock()
        )
        alert_app.rule_repo.create(AlertRule(user.id, "BTCUSDT", "price_below", 30000), clock())

        result = alert_app.check_prices([PriceQuote("BTCUSDT", 50000.0, change_pct=2.5)])

        assert [o.rule_id for o in result.outcomes] == [hit.id]
        intent = alert_app.queue.get(result.queued_ids[0])
        assert intent.title == "Price Alert: BTCUSDT"
        assert intent.signal_id is None
        assert intent.rule_id == hit.id

    def test_repeating_rule_respects_cooldown(self, alert_app, user, clock):
        """Should fire a repeating rule once per cooldown window."""
        alert_app.rule_repo.create(
            AlertRule(user.id, "BTCUSDT", "price_above", 50000, one_shot=False), clock()
        )
        quote = PriceQuote("BTCUSDT", 60000.0, change_pct=1.0)

        queued = []
        for _ in range(4):
            queued.append(len(alert_app.check_prices([quote]).queued_ids))
            clock.advance(30)

        assert queued == [1, 0, 0, 0]

        clock.advance(24 * 3600)
        assert len(alert_app.check_prices([quote]).queued_ids) == 1

    def test_cooldown_disabled(self, alert_app, user, clock):
        alert_app.config.market_data.alert_cooldown_hours = 0
        alert_app.rule_repo.create(
            AlertRule(user.id, "BTCUSDT", "price_above", 50000, one_shot=False), clock()
        )
        quote = PriceQuote("BTCUSDT", 60000.0)

        alert_app.check_prices([quote])
        clock.advance(30)

        assert len(alert_app.check_prices([quote]).queued_ids) == 1

    def test_sync_prices_uses_feed(self, alert_app, user, clock):
        alert_app.rule_repo.create(AlertRule(user.id, "BTCUSDT", "change_below", -5), clock())
        alert_app.price_feed = Mock()
        alert_app.price_feed.get_quotes.return_value = {
            "BTCUSDT": PriceQuote("BTCUSDT", 40000.0, change_pct=-7.0, volatility=0.02)
        }

        result = alert_app.sync_prices()

        alert_app.price_feed.get_quotes.assert_called_once_with(["BTCUSDT"])
        assert len(result.queued_ids) == 1

    def test_sync_without_rules(self, alert_app):
        alert_app.price_feed = Mock()
        assert alert_app.sync_prices().outcomes == []
        alert_app.price_feed.get_quotes.assert_not_called()


class TestShouldSendQuery:
    def test_manual_query_logs_decision(self, alert_app, user):
        decision = alert_app.should_send(user.id, "btcusdt", urgency="critical")
        assert decision.reason == "critical override"
        assert alert_app.decision_repo.list_for_user(user.id)[0].ticker == "BTCUSDT"
