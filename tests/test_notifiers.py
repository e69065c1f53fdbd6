"""
Notifier tests.
Tests for in-app, email, Telegram and SMS delivery.
"""

import smtplib
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from sigalert.config import ChannelsConfig, TelegramChannelConfig
from sigalert.database.models import NotificationIntent
from sigalert.errors import TransientDeliveryError
from sigalert.notifiers.app import AppNotifier
from sigalert.notifiers.base import (
    NotificationResult,
    NotifierFactory,
    http_status_retryable,
)
from sigalert.notifiers.email import EmailNotifier
from sigalert.notifiers.sms import MAX_SMS_LENGTH, SmsNotifier
from sigalert.notifiers.telegram import TelegramNotifier
from sigalert.realtime.broadcaster import Broadcaster


@pytest.fixture
def sample_intent():
    """Create sample notification intent."""
    return NotificationIntent(
        id=11,
        user_id=7,
        channel="telegram",
        title="BUY Signal: BTCUSDT",
        message="EMA cross up - Price: $45,000.00",
        signal_id=3,
    )


def response(status_code, json_body=None, text=""):
    mock = Mock()
    mock.status_code = status_code
    mock.ok = 200 <= status_code < 300
    mock.text = text
    mock.headers = {}
    if json_body is None:
        mock.json.side_effect = ValueError("no json")
    else:
        mock.json.return_value = json_body
    return mock


class TestNotificationResult:
    """Test NotificationResult model."""

    def test_success_result(self):
        """Should create success result."""
        result = NotificationResult(success=True, channel="app")
        assert result.success is True
        assert result.error is None
        assert result.retryable is True

    def test_retryable_statuses(self):
        """Should retry timeouts, throttling and server errors only."""
        assert http_status_retryable(500) is True
        assert http_status_retryable(503) is True
        assert http_status_retryable(429) is True
        assert http_status_retryable(408) is True
        assert http_status_retryable(400) is False
        assert http_status_retryable(401) is False
        assert http_status_retryable(404) is False


class TestAppNotifier:
    """Test in-app push."""

    def test_publishes_on_user_channel(self, sample_intent):
        broadcaster = Broadcaster()
        received = []
        broadcaster.subscribe("user:7", received.append)

        result = AppNotifier(broadcaster).send(sample_intent, "7")

        assert result.success is True
        assert result.channel == "app"
        assert received[0].event == "notification"
        assert received[0].payload["title"] == "BUY Signal: BTCUSDT"

    def test_succeeds_without_listeners(self, sample_intent):
        """Should succeed when the user is offline."""
        assert AppNotifier(Broadcaster()).send(sample_intent, "7").success is True


class TestTelegramNotifier:
    """Test Telegram Bot API delivery."""

    @pytest.fixture
    def notifier(self):
        return TelegramNotifier(bot_token="123:ABC")

    def test_send_success(self, notifier: TelegramNotifier, sample_intent):
        """Should post sendMessage with the chat id."""
        with patch("requests.post") as mock_post:
            mock_post.return_value = response(200, {"ok": True})
            result = notifier.send(sample_intent, "555")

        assert result.success is True
        assert result.channel == "telegram"
        url = mock_post.call_args[0][0]
        payload = mock_post.call_args[1]["json"]
        assert url == "https://api.telegram.org/bot123:ABC/sendMessage"
        assert payload["chat_id"] == "555"
        assert "BUY Signal: BTCUSDT" in payload["text"]

    def test_server_error_is_retryable(self, notifier: TelegramNotifier, sample_intent):
        with patch("requests.post") as mock_post:
            mock_post.return_value = response(502, text="Bad Gateway")
            result = notifier.send(sample_intent, "555")

        assert result.success is False
        assert result.retryable is True
        assert "502" in result.error

    def test_bad_request_is_permanent(self, notifier: TelegramNotifier, sample_intent):
        """Should not retry a rejected chat id."""
        with patch("requests.post") as mock_post:
            mock_post.return_value = response(400, text="chat not found")
            result = notifier.send(sample_intent, "555")

        assert result.success is False
        assert result.retryable is False

    def test_rate_limit_short_wait(self, notifier: TelegramNotifier, sample_intent):
        """Should wait retry_after and try once more."""
        limited = response(429, {"ok": False, "parameters": {"retry_after": 1}})
        with patch("requests.post") as mock_post, patch(
            "sigalert.notifiers.telegram.time.sleep"
        ) as mock_sleep:
            mock_post.side_effect = [limited, response(200, {"ok": True})]
            result = notifier.send(sample_intent, "555")

        assert result.success is True
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(1.0)

    def test_rate_limit_long_wait(self, notifier: TelegramNotifier, sample_intent):
        """Should hand long waits back to the queue."""
        limited = response(429, {"ok": False, "parameters": {"retry_after": 30}})
        with patch("requests.post") as mock_post, patch(
            "sigalert.notifiers.telegram.time.sleep"
        ) as mock_sleep:
            mock_post.return_value = limited
            result = notifier.send(sample_intent, "555")

        assert result.success is False
        assert result.retryable is True
        assert mock_post.call_count == 1
        mock_sleep.assert_not_called()

    def test_timeout(self, notifier: TelegramNotifier, sample_intent):
        """Should raise a transient error so the queue retries."""
        with patch("requests.post") as mock_post:
            mock_post.side_effect = requests.exceptions.Timeout("read timed out")
            with pytest.raises(TransientDeliveryError, match="^Timeout"):
                notifier.send(sample_intent, "555")

    def test_connection_error(self, notifier: TelegramNotifier, sample_intent):
        with patch("requests.post") as mock_post:
            mock_post.side_effect = requests.exceptions.ConnectionError("refused")
            with pytest.raises(TransientDeliveryError, match="^Connection error"):
                notifier.send(sample_intent, "555")


class TestSmsNotifier:
    """Test SMS gateway delivery."""

    @pytest.fixture
    def notifier(self):
        return SmsNotifier(
            api_url="https://sms.example.com/Messages.json",
            account_sid="AC123",
            auth_token="secret",
            from_number="+15550000000",
        )

    def test_send_success(self, notifier: SmsNotifier, sample_intent):
        """Should post a form with basic auth."""
        with patch("requests.post") as mock_post:
            mock_post.return_value = response(201)
            result = notifier.send(sample_intent, "+15551112222")

        assert result.success is True
        kwargs = mock_post.call_args[1]
        assert kwargs["data"]["To"] == "+15551112222"
        assert kwargs["data"]["From"] == "+15550000000"
        assert kwargs["data"]["Body"].startswith("BUY Signal: BTCUSDT")
        assert kwargs["auth"] == ("AC123", "secret")

    def test_long_body_truncated(self, notifier: SmsNotifier, sample_intent):
        sample_intent.message = "x" * 1000
        with patch("requests.post") as mock_post:
            mock_post.return_value = response(201)
            notifier.send(sample_intent, "+15551112222")

        body = mock_post.call_args[1]["data"]["Body"]
        assert len(body) == MAX_SMS_LENGTH
        assert body.endswith("...")

    def test_unauthorized_is_permanent(self, notifier: SmsNotifier, sample_intent):
        with patch("requests.post") as mock_post:
            mock_post.return_value = response(401, text="Unauthorized")
            result = notifier.send(sample_intent, "+15551112222")

        assert result.success is False
        assert result.retryable is False

    def test_gateway_timeout_raises(self, notifier: SmsNotifier, sample_intent):
        with patch("requests.post") as mock_post:
            mock_post.side_effect = requests.exceptions.Timeout("gateway slow")
            with pytest.raises(TransientDeliveryError):
                notifier.send(sample_intent, "+15551112222")


class TestEmailNotifier:
    """Test email notifications."""

    @pytest.fixture
    def notifier(self):
        """Create email notifier."""
        return EmailNotifier(
            smtp_host="smtp.gmail.com",
            smtp_port=587,
            smtp_user="test@gmail.com",
            smtp_password="app-password",
            from_address="alerts@example.com",
        )

    def _smtp(self):
        mock_smtp = MagicMock()
        server = mock_smtp.return_value.__enter__.return_value
        return mock_smtp, server

    def test_send_email_success(self, notifier: EmailNotifier, sample_intent):
        """Should send email successfully."""
        mock_smtp, server = self._smtp()
        with patch("smtplib.SMTP", mock_smtp):
            result = notifier.send(sample_intent, "trader@example.com")

        assert result.success is True
        assert result.channel == "email"
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("test@gmail.com", "app-password")
        message = server.send_message.call_args[0][0]
        assert message["Subject"] == "BUY Signal: BTCUSDT"
        assert message["To"] == "trader@example.com"

    def test_no_login_without_user(self, sample_intent):
        notifier = EmailNotifier("localhost", 25, "", "", "alerts@example.com")
        mock_smtp, server = self._smtp()
        with patch("smtplib.SMTP", mock_smtp):
            assert notifier.send(sample_intent, "trader@example.com").success is True
        server.login.assert_not_called()

    def test_authentication_failure_is_permanent(self, notifier: EmailNotifier, sample_intent):
        mock_smtp, server = self._smtp()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with patch("smtplib.SMTP", mock_smtp):
            result = notifier.send(sample_intent, "trader@example.com")

        assert result.success is False
        assert result.retryable is False
        assert "Authentication failed" in result.error

    def test_connection_failure_is_retryable(self, notifier: EmailNotifier, sample_intent):
        """Should retry SMTP connection problems."""
        mock_smtp = MagicMock(side_effect=smtplib.SMTPConnectError(421, b"try later"))
        with patch("smtplib.SMTP", mock_smtp):
            result = notifier.send(sample_intent, "trader@example.com")

        assert result.success is False
        assert result.retryable is True
        assert "SMTP error" in result.error

    def test_html_body_escapes_content(self, notifier: EmailNotifier, sample_intent):
        sample_intent.message = "<script>alert(1)</script>"
        html = notifier._create_html_body(sample_intent)
        assert "<script>" not in html
        assert "&lt;script&gt;" in html


class TestNotifierFactory:
    """Test adapter construction from config."""

    def test_create_all_defaults_to_app_only(self):
        """Should skip channels without credentials."""
        notifiers = NotifierFactory.create_all(ChannelsConfig(), Broadcaster())
        assert set(notifiers) == {"app"}

    def test_create_all_with_telegram(self):
        channels = ChannelsConfig(telegram=TelegramChannelConfig(bot_token="123:ABC"))
        notifiers = NotifierFactory.create_all(channels, Broadcaster())
        assert isinstance(notifiers["telegram"], TelegramNotifier)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            NotifierFactory.create({"type": "pager"})
