"""
Telegram Bot API notifier.
"""

import time
from typing import Any

import requests

from sigalert.database.models import NotificationIntent
from sigalert.errors import TransientDeliveryError
from .base import Notifier, NotificationResult, http_status_retryable

# Longest in-call wait for a 429 before handing the retry to the queue
MAX_INLINE_RETRY_AFTER = 5.0


class TelegramNotifier(Notifier):
    """Sends notifications with the bot ``sendMessage`` method."""

    channel = "telegram"

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10,
    ):
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Bot token issued by BotFather
            api_base: Bot API base URL
            timeout: Request timeout in seconds
        """
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @property
    def send_url(self) -> str:
        return f"{self.api_base}/bot{self.bot_token}/sendMessage"

    def send(self, intent: NotificationIntent, destination: str) -> NotificationResult:
        """
        Send notification to a chat.

        Raises:
            TransientDeliveryError: On timeouts and connection failures
        """
        try:
            payload = self._create_payload(intent, destination)
            response = self._post(payload)

            if response.ok:
                return self.ok()
            return self.failure(
                f"HTTP {response.status_code}: {response.text}",
                retryable=http_status_retryable(response.status_code),
            )

        except requests.exceptions.Timeout as e:
            raise TransientDeliveryError(f"Timeout: {str(e)}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientDeliveryError(f"Connection error: {str(e)}") from e
        except requests.exceptions.RequestException as e:
            return self.failure(str(e))

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        """Send request with rate limit handling."""
        response = requests.post(self.send_url, json=payload, timeout=self.timeout)

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = self._retry_after(response)
            if retry_after <= MAX_INLINE_RETRY_AFTER:
                time.sleep(retry_after)
                response = requests.post(
                    self.send_url, json=payload, timeout=self.timeout
                )

        return response

    def _retry_after(self, response: requests.Response) -> float:
        try:
            body = response.json()
            return float(body.get("parameters", {}).get("retry_after", 1))
        except (ValueError, AttributeError, TypeError):
            return float(response.headers.get("Retry-After", "1"))

    def _create_payload(self, intent: NotificationIntent, chat_id: str) -> dict[str, Any]:
        """Create sendMessage payload."""
        return {
            "chat_id": chat_id,
            "text": f"{intent.title}\n\n{intent.message}",
            "disable_web_page_preview": True,
        }
