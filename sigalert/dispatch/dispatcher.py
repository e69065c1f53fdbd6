"""
Delivery dispatcher: sends claimed intents over their channel and records
the outcome on the queue row.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sigalert.database.models import (
    NotificationIntent,
    STATUS_DEFERRED,
    STATUS_FAILED,
    STATUS_SENT,
)
from sigalert.database.repository import UserRepository
from sigalert.errors import ConfigurationError, TransientDeliveryError
from sigalert.notifiers.base import Notifier
from .queue import NotificationQueue

logger = logging.getLogger(__name__)

CHANNEL_NOT_CONFIGURED = "channel not configured"


def backoff(attempts: int, base: int = 30, cap: int = 3600) -> int:
    """Exponential backoff: min(2^attempts * base, cap) seconds."""
    return min((2 ** attempts) * base, cap)


@dataclass
class DeliveryResult:
    """Outcome of delivering one intent."""

    intent_id: int
    channel: str
    status: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_SENT


@dataclass
class BatchResult:
    """Summary of one dispatcher run."""

    processed: int = 0
    sent: int = 0
    deferred: int = 0
    failed: int = 0
    results: list[DeliveryResult] = field(default_factory=list)

    def add(self, result: DeliveryResult) -> None:
        self.results.append(result)
        self.processed += 1
        if result.status == STATUS_SENT:
            self.sent += 1
        elif result.status == STATUS_DEFERRED:
            self.deferred += 1
        elif result.status == STATUS_FAILED:
            self.failed += 1

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "deferred": self.deferred,
            "failed": self.failed,
        }


class DeliveryDispatcher:
    """Delivers due notifications one by one; a failure never stops the batch."""

    def __init__(
        self,
        queue: NotificationQueue,
        user_repo: UserRepository,
        notifiers: dict[str, Notifier],
        backoff_base_seconds: int = 30,
        backoff_cap_seconds: int = 3600,
    ):
        """
        Initialize dispatcher.

        Args:
            queue: Notification queue
            user_repo: Profile lookup for destinations
            notifiers: Channel name to adapter
            backoff_base_seconds: Base of the exponential retry delay
            backoff_cap_seconds: Upper bound of the retry delay
        """
        self.queue = queue
        self.user_repo = user_repo
        self.notifiers = notifiers
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds

    def backoff_seconds(self, attempts: int) -> int:
        return backoff(attempts, self.backoff_base_seconds, self.backoff_cap_seconds)

    def _resolve(self, intent: NotificationIntent) -> tuple[Notifier, str]:
        """
        Find the adapter and address for an intent.

        Raises:
            ConfigurationError: If the channel is not set up for the user
        """
        user = self.user_repo.get_by_id(intent.user_id)
        if user is None:
            raise ConfigurationError(f"user {intent.user_id} not found")
        destination = user.destination_for(intent.channel)
        if not destination:
            raise ConfigurationError(f"no {intent.channel} destination")
        notifier = self.notifiers.get(intent.channel)
        if notifier is None:
            raise ConfigurationError(f"no {intent.channel} adapter")
        return notifier, destination

    def deliver(self, intent: NotificationIntent) -> DeliveryResult:
        """
        Deliver one claimed intent and record the outcome.

        Args:
            intent: Intent in processing state

        Returns:
            DeliveryResult with the resulting status
        """
        try:
            notifier, destination = self._resolve(intent)
        except ConfigurationError as e:
            logger.warning(f"Intent {intent.id}: {CHANNEL_NOT_CONFIGURED} ({e})")
            self.queue.mark_failed(intent, CHANNEL_NOT_CONFIGURED)
            return DeliveryResult(intent.id, intent.channel, intent.status, CHANNEL_NOT_CONFIGURED)

        try:
            result = notifier.send(intent, destination)
        except TransientDeliveryError as e:
            self.queue.record_failure(intent, str(e), self.backoff_seconds)
            logger.warning(f"Intent {intent.id}: transient {intent.channel} error: {e}")
            return DeliveryResult(intent.id, intent.channel, intent.status, intent.last_error)
        except Exception as e:
            logger.exception(f"Intent {intent.id}: unexpected {intent.channel} error")
            self.queue.record_failure(intent, f"Unexpected error: {e}", self.backoff_seconds)
            return DeliveryResult(intent.id, intent.channel, intent.status, intent.last_error)

        if result.success:
            self.queue.mark_sent(intent)
            logger.info(f"Intent {intent.id} sent via {intent.channel}")
            return DeliveryResult(intent.id, intent.channel, intent.status)

        if not result.retryable:
            logger.warning(f"Intent {intent.id} failed permanently: {result.error}")
            self.queue.mark_failed(intent, result.error or "delivery rejected")
        else:
            self.queue.record_failure(
                intent, result.error or "delivery failed", self.backoff_seconds
            )
            logger.warning(
                f"Intent {intent.id} attempt {intent.attempts}/{intent.max_attempts} "
                f"failed ({intent.status}): {result.error}"
            )
        return DeliveryResult(intent.id, intent.channel, intent.status, intent.last_error)

    def process_due(self, limit: int = 100) -> BatchResult:
        """
        Claim and deliver up to ``limit`` due intents.

        Returns:
            BatchResult; partial failures are recorded, never raised
        """
        batch = BatchResult()
        for intent in self.queue.due_items(limit):
            try:
                batch.add(self.deliver(intent))
            except Exception as e:
                # Outcome could not be recorded; the row stays claimed until released
                logger.exception(f"Intent {intent.id}: could not record outcome")
                batch.add(DeliveryResult(intent.id, intent.channel, intent.status, str(e)))
        if batch.processed:
            logger.info(
                f"Dispatch batch: {batch.processed} processed, {batch.sent} sent, "
                f"{batch.deferred} deferred, {batch.failed} failed"
            )
        return batch
