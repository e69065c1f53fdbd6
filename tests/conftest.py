"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from sigalert.app import SignalAlertApp
from sigalert.database.connection import Database
from sigalert.database.models import UserProfile
from sigalert.notifiers.app import AppNotifier
from sigalert.realtime.broadcaster import Broadcaster

# Monday, midday UTC
FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable time source injected wherever a ``clock`` is accepted."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock():
    """Clock frozen at FIXED_NOW until advanced."""
    return FakeClock(FIXED_NOW)


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def alert_app(db, clock, broadcaster):
    """Pipeline wired to the in-memory database with only in-app delivery."""
    return SignalAlertApp(
        db=db,
        notifiers={"app": AppNotifier(broadcaster)},
        broadcaster=broadcaster,
        clock=clock,
    )


@pytest.fixture
def user(alert_app, clock):
    """A user receiving in-app notifications."""
    return alert_app.user_repo.create(
        UserProfile(email="trader@example.com", channels=["app"]), clock()
    )


@pytest.fixture
def btc_payload():
    """TradingView-style webhook body."""
    return {
        "ticker": "BTCUSDT",
        "action": "buy",
        "price": 45000,
        "timeframe": "4h",
        "strategy": "ema_cross",
        "message": "EMA cross up",
    }
