"""
In-app notifier: pushes to the user's realtime channel.
"""

from sigalert.database.models import NotificationIntent
from sigalert.realtime.broadcaster import Broadcaster, user_channel
from .base import Notifier, NotificationResult


class AppNotifier(Notifier):
    """Publishes notifications on ``user:<id>``.

    The queue row is the in-app record, so delivery succeeds even when no
    client is currently connected.
    """

    channel = "app"

    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    def send(self, intent: NotificationIntent, destination: str) -> NotificationResult:
        """Publish the notification event."""
        try:
            self.broadcaster.publish(
                user_channel(intent.user_id),
                "notification",
                {
                    "id": intent.id,
                    "title": intent.title,
                    "message": intent.message,
                    "signal_id": intent.signal_id,
                },
            )
        except Exception as e:
            return self.failure(f"Broadcast error: {e}")
        return self.ok()
