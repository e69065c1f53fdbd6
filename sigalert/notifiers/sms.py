"""
SMS notifier for an HTTP gateway (Twilio-style Messages API).
"""

import requests

from sigalert.database.models import NotificationIntent
from sigalert.errors import TransientDeliveryError
from .base import Notifier, NotificationResult, http_status_retryable

# Two concatenated SMS segments
MAX_SMS_LENGTH = 320


class SmsNotifier(Notifier):
    """Posts form-encoded messages to an SMS gateway."""

    channel = "sms"

    def __init__(
        self,
        api_url: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10,
    ):
        """
        Initialize SMS notifier.

        Args:
            api_url: Messages endpoint of the gateway
            account_sid: Basic-auth user
            auth_token: Basic-auth password
            from_number: Sender number in E.164 format
            timeout: Request timeout in seconds
        """
        self.api_url = api_url
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout

    def send(self, intent: NotificationIntent, destination: str) -> NotificationResult:
        """
        Send notification as a text message.

        Raises:
            TransientDeliveryError: On timeouts and connection failures
        """
        try:
            response = requests.post(
                self.api_url,
                data={
                    "From": self.from_number,
                    "To": destination,
                    "Body": self._create_body(intent),
                },
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
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

    def _create_body(self, intent: NotificationIntent) -> str:
        body = f"{intent.title}: {intent.message}"
        if len(body) > MAX_SMS_LENGTH:
            body = body[: MAX_SMS_LENGTH - 3] + "..."
        return body
