"""
Delivery dispatcher tests.
Tests for channel resolution, outcome recording and batch processing.
"""

from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from sigalert.database.models import (
    NotificationIntent,
    UserProfile,
    STATUS_DEFERRED,
    STATUS_FAILED,
    STATUS_SENT,
)
from sigalert.database.repository import (
    AlertRuleRepository,
    NotificationRepository,
    UserRepository,
)
from sigalert.dispatch.dispatcher import (
    CHANNEL_NOT_CONFIGURED,
    BatchResult,
    DeliveryDispatcher,
    DeliveryResult,
    backoff,
)
from sigalert.dispatch.queue import NotificationQueue
from sigalert.errors import TransientDeliveryError
from sigalert.notifiers.base import NotificationResult, Notifier
from sigalert.notifiers.telegram import TelegramNotifier
from sigalert.timing.gate import TimingDecision

SEND = TimingDecision(True, "signal meets sending criteria")

OK = NotificationResult(success=True, channel="email")
RETRYABLE = NotificationResult(success=False, channel="email", error="HTTP 503")
PERMANENT = NotificationResult(
    success=False, channel="email", error="HTTP 400", retryable=False
)


@pytest.fixture
def queue(db, clock):
    return NotificationQueue(
        db, NotificationRepository(db), AlertRuleRepository(db), clock=clock
    )


@pytest.fixture
def user(db, clock):
    return UserRepository(db).create(
        UserProfile(email="trader@example.com", channels=["app", "email", "telegram"]),
        clock(),
    )


@pytest.fixture
def email_notifier():
    notifier = Mock(spec=Notifier)
    notifier.send.return_value = OK
    return notifier


@pytest.fixture
def dispatcher(db, queue, email_notifier):
    return DeliveryDispatcher(queue, UserRepository(db), {"email": email_notifier})


def enqueue(queue, user, channel="email"):
    return queue.enqueue(
        NotificationIntent(
            user_id=user.id, channel=channel, title="BUY Signal: BTCUSDT", message="m"
        ),
        SEND,
    )


class TestBackoff:
    """Test exponential backoff."""

    def test_doubles_per_attempt(self):
        assert backoff(0) == 30
        assert backoff(1) == 60
        assert backoff(2) == 120
        assert backoff(3) == 240

    def test_capped(self):
        assert backoff(10) == 3600
        assert backoff(4, base=10, cap=100) == 100


class TestDeliver:
    """Test single-intent delivery."""

    def test_success_marks_sent(self, dispatcher, queue, user, email_notifier, clock):
        """Should deliver to the profile address and mark sent."""
        intent_id = enqueue(queue, user)
        item = queue.dequeue_due(1)[0]

        result = dispatcher.deliver(item)

        assert result.success is True
        email_notifier.send.assert_called_once()
        assert email_notifier.send.call_args[0][1] == "trader@example.com"
        stored = queue.get(intent_id)
        assert stored.status == STATUS_SENT
        assert stored.sent_at == clock()

    def test_retryable_failure_defers(self, dispatcher, queue, user, email_notifier, clock):
        email_notifier.send.return_value = RETRYABLE
        intent_id = enqueue(queue, user)

        result = dispatcher.deliver(queue.dequeue_due(1)[0])

        assert result.status == STATUS_DEFERRED
        stored = queue.get(intent_id)
        assert stored.attempts == 1
        assert stored.last_error == "HTTP 503"
        assert stored.visible_after == clock() + timedelta(seconds=60)

    def test_permanent_failure(self, dispatcher, queue, user, email_notifier):
        """Should not retry provider rejections."""
        email_notifier.send.return_value = PERMANENT
        intent_id = enqueue(queue, user)

        result = dispatcher.deliver(queue.dequeue_due(1)[0])

        assert result.status == STATUS_FAILED
        assert queue.get(intent_id).attempts == 0
        assert queue.get(intent_id).last_error == "HTTP 400"

    def test_missing_destination(self, dispatcher, queue, user):
        """Should fail when the user has no address for the channel."""
        intent_id = enqueue(queue, user, channel="sms")

        result = dispatcher.deliver(queue.dequeue_due(1)[0])

        assert result.status == STATUS_FAILED
        assert result.error == CHANNEL_NOT_CONFIGURED
        assert queue.get(intent_id).last_error == CHANNEL_NOT_CONFIGURED

    def test_missing_adapter(self, dispatcher, queue, db, user, clock):
        """Should fail when no adapter is configured for the channel."""
        user.telegram_chat_id = "123"
        UserRepository(db).update(user)
        intent_id = enqueue(queue, user, channel="telegram")

        dispatcher.deliver(queue.dequeue_due(1)[0])

        assert queue.get(intent_id).status == STATUS_FAILED
        assert queue.get(intent_id).last_error == CHANNEL_NOT_CONFIGURED

    def test_unknown_user(self, dispatcher, queue):
        intent_id = enqueue(queue, UserProfile(id=999))
        dispatcher.deliver(queue.dequeue_due(1)[0])
        assert queue.get(intent_id).last_error == CHANNEL_NOT_CONFIGURED

    def test_transient_error_is_retried(self, dispatcher, queue, user, email_notifier):
        email_notifier.send.side_effect = TransientDeliveryError("connection reset")
        intent_id = enqueue(queue, user)

        dispatcher.deliver(queue.dequeue_due(1)[0])

        stored = queue.get(intent_id)
        assert stored.status == STATUS_DEFERRED
        assert stored.last_error == "connection reset"

    def test_telegram_timeout_is_retried(self, db, queue, clock):
        """Should defer a Telegram send that timed out."""
        user = UserRepository(db).create(
            UserProfile(telegram_chat_id="555", channels=["telegram"]), clock()
        )
        dispatcher = DeliveryDispatcher(
            queue, UserRepository(db), {"telegram": TelegramNotifier("123:ABC")}
        )
        intent_id = enqueue(queue, user, channel="telegram")

        with patch("requests.post") as mock_post:
            mock_post.side_effect = requests.exceptions.Timeout("read timed out")
            dispatcher.deliver(queue.dequeue_due(1)[0])

        stored = queue.get(intent_id)
        assert stored.status == STATUS_DEFERRED
        assert stored.attempts == 1
        assert stored.last_error.startswith("Timeout")
        assert stored.visible_after == clock() + timedelta(seconds=60)

    def test_unexpected_exception_is_recorded(self, dispatcher, queue, user, email_notifier):
        """Should record an adapter crash on the row instead of raising."""
        email_notifier.send.side_effect = KeyError("boom")
        intent_id = enqueue(queue, user)

        result = dispatcher.deliver(queue.dequeue_due(1)[0])

        assert result.status == STATUS_DEFERRED
        assert queue.get(intent_id).last_error.startswith("Unexpected error")

    def test_attempts_exhausted(self, dispatcher, queue, user, email_notifier, clock):
        """Should fail permanently after max attempts."""
        email_notifier.send.return_value = RETRYABLE
        intent_id = enqueue(queue, user)

        for _ in range(3):
            dispatcher.process_due()
            clock.advance(3600)

        stored = queue.get(intent_id)
        assert stored.status == STATUS_FAILED
        assert stored.attempts == 3
        assert email_notifier.send.call_count == 3


class TestProcessDue:
    """Test batch processing."""

    def test_partial_failure(self, dispatcher, queue, user, email_notifier):
        """Should send four and defer one without rolling back the batch."""
        ids = [enqueue(queue, user) for _ in range(5)]
        email_notifier.send.side_effect = [OK, OK, RETRYABLE, OK, OK]

        batch = dispatcher.process_due(10)

        assert batch.processed == 5
        assert batch.sent == 4
        assert batch.deferred == 1
        assert batch.failed == 0
        assert queue.get(ids[2]).status == STATUS_DEFERRED
        assert queue.get(ids[2]).attempts == 1
        assert [queue.get(i).status for i in ids].count(STATUS_SENT) == 4

    def test_error_on_one_row_does_not_stop_batch(self, dispatcher, queue, user):
        ids = [enqueue(queue, user) for _ in range(3)]
        original = dispatcher.deliver

        def flaky(item):
            if item.id == ids[0]:
                raise RuntimeError("database is locked")
            return original(item)

        with patch.object(dispatcher, "deliver", side_effect=flaky):
            batch = dispatcher.process_due(10)

        assert batch.processed == 3
        assert batch.sent == 2

    def test_empty_queue(self, dispatcher):
        assert dispatcher.process_due().to_dict() == {
            "processed": 0,
            "sent": 0,
            "deferred": 0,
            "failed": 0,
        }

    def test_batch_result_counts(self):
        batch = BatchResult()
        batch.add(DeliveryResult(1, "app", STATUS_SENT))
        batch.add(DeliveryResult(2, "app", STATUS_FAILED, "HTTP 400"))
        assert batch.to_dict() == {"processed": 2, "sent": 1, "deferred": 0, "failed": 1}
