"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from sigalert.database.models import NotificationIntent


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None
    retryable: bool = True


def http_status_retryable(status_code: int) -> bool:
    """Provider errors worth retrying: timeouts, throttling and 5xx."""
    return status_code in (408, 429) or status_code >= 500


class Notifier(ABC):
    """Abstract base class for channel adapters."""

    channel: str = ""

    @abstractmethod
    def send(self, intent: NotificationIntent, destination: str) -> NotificationResult:
        """
        Send a single notification.

        Args:
            intent: Queued notification to deliver
            destination: Channel address (email, phone, chat id, user id)

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def failure(self, error: str, retryable: bool = True) -> NotificationResult:
        return NotificationResult(
            success=False, channel=self.channel, error=error, retryable=retryable
        )

    def ok(self) -> NotificationResult:
        return NotificationResult(success=True, channel=self.channel)


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "app":
            from .app import AppNotifier

            return AppNotifier(broadcaster=config["broadcaster"])

        elif notifier_type == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=int(config.get("smtp_port", 587)),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
            )

        elif notifier_type == "sms":
            from .sms import SmsNotifier

            return SmsNotifier(
                api_url=config.get("api_url", ""),
                account_sid=config.get("account_sid", ""),
                auth_token=config.get("auth_token", ""),
                from_number=config.get("from_number", ""),
            )

        elif notifier_type == "telegram":
            from .telegram import TelegramNotifier

            return TelegramNotifier(
                bot_token=config.get("bot_token", ""),
                api_base=config.get("api_base", "https://api.telegram.org"),
            )

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")

    @staticmethod
    def create_all(channels_config, broadcaster) -> dict[str, Notifier]:
        """
        Build adapters for every channel that has credentials.

        Channels without credentials are left out; intents for them fail
        as "channel not configured".
        """
        notifiers: dict[str, Notifier] = {
            "app": NotifierFactory.create({"type": "app", "broadcaster": broadcaster})
        }

        email = channels_config.email
        if email.smtp_host and email.from_address:
            notifiers["email"] = NotifierFactory.create({"type": "email", **vars(email)})

        sms = channels_config.sms
        if sms.api_url and sms.from_number:
            notifiers["sms"] = NotifierFactory.create({"type": "sms", **vars(sms)})

        telegram = channels_config.telegram
        if telegram.bot_token:
            notifiers["telegram"] = NotifierFactory.create(
                {"type": "telegram", **vars(telegram)}
            )

        return notifiers
