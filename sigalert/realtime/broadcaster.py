"""
Best-effort realtime fan-out to live subscribers.

Events are pushed to whoever is subscribed at publish time. Nothing is
stored or retried; a subscriber that is not connected misses the event.
Guaranteed per-user delivery goes through the notification queue instead.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sigalert.timeutil import utcnow

logger = logging.getLogger(__name__)

SIGNALS_CHANNEL = "signals"

Callback = Callable[["BroadcastEvent"], None]


@dataclass
class BroadcastEvent:
    """One event delivered to subscribers."""

    channel: str
    event: str
    payload: dict[str, Any]
    published_at: datetime


def user_channel(user_id: int) -> str:
    """Per-user channel used for in-app notifications."""
    return f"user:{user_id}"


class Subscription:
    """Handle returned by subscribe()."""

    def __init__(self, broadcaster: "Broadcaster", channel: str, callback: Callback):
        self.broadcaster = broadcaster
        self.channel = channel
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.broadcaster._remove(self)
            self.active = False


class Broadcaster:
    """In-process pub/sub keyed by channel name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, channel: str, callback: Callback) -> Subscription:
        """Register a callback for a channel."""
        subscription = Subscription(self, channel, callback)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.channel, None)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def publish(self, channel: str, event: str, payload: dict[str, Any]) -> int:
        """
        Push an event to every current subscriber of a channel.

        Args:
            channel: Channel name
            event: Event name, e.g. "new_signal"
            payload: JSON-serializable event body

        Returns:
            Number of subscribers that received the event
        """
        with self._lock:
            targets = list(self._subscribers.get(channel, []))

        message = BroadcastEvent(
            channel=channel, event=event, payload=payload, published_at=utcnow()
        )
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Subscriber on {channel} failed for {event}: {e}")
        return delivered
